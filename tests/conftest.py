"""
pytest configuration for Fab Bridge tests.

No external processes are needed: the exporter is played by a loopback
client that writes a payload in arbitrary chunks, and conversion
collaborators are recording fakes unless a test exercises the real
file-system converters against tmp_path.
"""

import asyncio
import json
import os
import threading
import time
from typing import Any

import pytest

from fab_bridge.converters import MaterialResult, ModelResult, TextureResult
from fab_bridge.importer import Collaborators, ImportConfig


# ─── Payload Builders ─────────────────────────────────────────────────────────

def make_asset(**overrides: Any) -> dict[str, Any]:
    """A typical single-asset export: one mesh and a material with three maps."""
    asset: dict[str, Any] = {
        "id": "rock_01",
        "name": "Mossy Rock",
        "type": "3d",
        "category": "nature",
        "path": "C:\\Fab\\Downloads\\Mossy Rock",
        "meshes": [
            {"file": "C:\\Fab\\Downloads\\Mossy Rock\\rock.fbx", "name": "rock", "format": "fbx"},
        ],
        "materials": [
            {
                "name": "rock_mat",
                "textures": {
                    "albedo": "C:\\Fab\\Downloads\\Mossy Rock\\rock_albedo.png",
                    "normal": "C:\\Fab\\Downloads\\Mossy Rock\\rock_normal.png",
                    "roughness": "C:\\Fab\\Downloads\\Mossy Rock\\rock_roughness.png",
                },
            },
        ],
    }
    asset.update(overrides)
    return asset


def encode(payload: Any) -> bytes:
    return json.dumps(payload).encode("utf-8")


def split_chunks(data: bytes, size: int) -> list[bytes]:
    return [data[i:i + size] for i in range(0, len(data), size)] or [b""]


# ─── Fake Exporter ────────────────────────────────────────────────────────────

async def send_export(
    port: int,
    chunks: list[bytes],
    delay: float = 0.0,
    close_write: bool = False,
    timeout: float = 5.0,
) -> bytes:
    """
    Connect to the bridge, write `chunks` one by one and wait for the
    bridge to close the connection. Returns anything the bridge sent back.
    """
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    try:
        for chunk in chunks:
            writer.write(chunk)
            await writer.drain()
            if delay:
                await asyncio.sleep(delay)
        if close_write:
            writer.write_eof()
        return await asyncio.wait_for(reader.read(), timeout=timeout)
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass


@pytest.fixture
def exporter():
    return send_export


# ─── Recording Collaborators ─────────────────────────────────────────────────

class RecordingCollaborators:
    """
    Fake conversion collaborators. Every call is recorded as
    (step, args) in call order; results point into the destination folder
    without touching the disk. Failures are configured per step.
    """

    def __init__(self):
        self.calls: list[tuple[str, tuple]] = []
        self._lock = threading.Lock()
        self.fail_texture_types: set[str] = set()
        self.raise_on_texture: str | None = None
        self.fail_material = False
        self.raise_on_material = False
        self.fail_models: set[str] = set()
        self.assign_result = True
        self.raise_on_assign = False
        self.delay = 0.0

    def _record(self, step: str, *args) -> None:
        with self._lock:
            self.calls.append((step, args))

    def steps(self) -> list[str]:
        return [step for step, _ in self.calls]

    def convert_texture(self, source: str, output_name: str, folder: str) -> TextureResult:
        self._record("texture", source, output_name, folder)
        if self.delay:
            time.sleep(self.delay)
        if self.raise_on_texture and self.raise_on_texture in output_name:
            raise OSError(f"disk full while copying {source}")
        if any(output_name.endswith(f"_{t}") for t in self.fail_texture_types):
            return TextureResult(success=False, source_path=source, error=f"cannot read {source}")
        dest = os.path.join(folder, f"{output_name}.png")
        return TextureResult(success=True, source_path=source, destination_path=dest)

    def generate_material(self, name: str, slots: dict, folder: str) -> MaterialResult:
        self._record("material", name, dict(slots), folder)
        if self.raise_on_material:
            raise RuntimeError("material writer crashed")
        if self.fail_material:
            return MaterialResult(success=False, error="material template missing")
        return MaterialResult(success=True, material_path=os.path.join(folder, f"{name}.vmat"))

    def convert_model(self, source: str, output_name: str, folder: str) -> ModelResult:
        self._record("model", source, output_name, folder)
        if output_name in self.fail_models:
            return ModelResult(success=False, source_path=source, error=f"unsupported mesh {source}")
        return ModelResult(
            success=True,
            source_path=source,
            destination_path=os.path.join(folder, f"{output_name}.fbx"),
            model_path=os.path.join(folder, f"{output_name}.vmdl"),
        )

    def assign_material(self, model_path: str, material_path: str) -> bool:
        self._record("assign", model_path, material_path)
        if self.raise_on_assign:
            raise ValueError("model document is corrupt")
        return self.assign_result

    def collaborators(self) -> Collaborators:
        return Collaborators(
            convert_texture=self.convert_texture,
            generate_material=self.generate_material,
            convert_model=self.convert_model,
            assign_material=self.assign_material,
        )


@pytest.fixture
def fakes() -> RecordingCollaborators:
    return RecordingCollaborators()


@pytest.fixture
def project(tmp_path) -> str:
    root = tmp_path / "project"
    root.mkdir()
    return str(root)


@pytest.fixture
def import_config(project) -> ImportConfig:
    return ImportConfig(project_root=project)
