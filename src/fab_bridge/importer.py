"""
Fab Bridge — Import Orchestrator

Runs the per-asset import pipeline:

  1. create <project>/<import_folder>/<base_name>/{materials,models}
  2. convert every texture                       (errors prefixed "Texture:")
  3. generate a material from successful textures ("Material:")
  4. convert every mesh source                   ("Model:")
  5. bind each converted model to the material   ("Material assignment:")

A failed step is recorded and later steps still run; only a directory
failure ends an asset early. Collaborators are plain blocking callables and
run in worker threads so the event loop keeps accepting connections.
Imports sharing an output directory are serialized on a per-directory lock.
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Callable

from .assets import Asset, ExportBundle
from .converters import MaterialResult, ModelResult, TextureResult, project_relative_path
from .protocol import ErrorCode

logger = logging.getLogger(__name__)

DEFAULT_IMPORT_FOLDER = "fab_imports"
MATERIALS_FOLDER = "materials"
MODELS_FOLDER = "models"

# Texture type → material slot. The first texture for a slot wins.
MATERIAL_SLOTS = {
    "albedo": "color",
    "diffuse": "color",
    "basecolor": "color",
    "color": "color",
    "normal": "normal",
    "roughness": "roughness",
    "metalness": "metalness",
    "metallic": "metalness",
    "ao": "ao",
    "ambientocclusion": "ao",
    "occlusion": "ao",
    "displacement": "displacement",
    "height": "displacement",
    "opacity": "opacity",
    "translucency": "opacity",
    "alpha": "opacity",
    "emissive": "emissive",
}


class NoProjectContextError(Exception):
    """No project root is configured, so there is nowhere to write output."""
    code = ErrorCode.NO_PROJECT_CONTEXT

    def __init__(self, message: str = "No project context: set a project directory before importing"):
        super().__init__(message)
        self.message = message


# ─── Configuration / Collaborators ───────────────────────────────────────────

@dataclass
class ImportConfig:
    project_root: str | None = None
    import_folder: str = DEFAULT_IMPORT_FOLDER
    convert_textures: bool = True
    create_materials: bool = True
    convert_models: bool = True

    def import_root(self, base_name: str) -> Path:
        if not self.project_root:
            raise NoProjectContextError()
        return Path(self.project_root) / self.import_folder / base_name


@dataclass
class Collaborators:
    convert_texture: Callable[[str, str, str], TextureResult]
    generate_material: Callable[[str, dict[str, str], str], MaterialResult]
    convert_model: Callable[[str, str, str], ModelResult]
    assign_material: Callable[[str, str], bool]


# ─── Results / Events ────────────────────────────────────────────────────────

@dataclass
class ImportResult:
    asset_name: str
    base_name: str = ""
    texture_results: list[TextureResult] = field(default_factory=list)
    model_results: list[ModelResult] = field(default_factory=list)
    material_result: MaterialResult | None = None
    errors: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def success(self) -> bool:
        return (
            any(t.success for t in self.texture_results)
            or any(m.success for m in self.model_results)
            or (self.material_result is not None and self.material_result.success)
        )

    def summary(self) -> str:
        textures = sum(1 for t in self.texture_results if t.success)
        models = sum(1 for m in self.model_results if m.success)
        material = "yes" if self.material_result and self.material_result.success else "no"
        return (
            f"{self.asset_name}: {textures}/{len(self.texture_results)} textures, "
            f"{models}/{len(self.model_results)} models, material: {material}, "
            f"{len(self.errors)} error(s)"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "asset_name": self.asset_name,
            "base_name": self.base_name,
            "success": self.success,
            "timestamp": self.timestamp.isoformat(),
            "textures": [t.to_dict() for t in self.texture_results],
            "models": [m.to_dict() for m in self.model_results],
            "material": self.material_result.to_dict() if self.material_result else None,
            "errors": list(self.errors),
        }


class ImportEventKind:
    STARTED   = "started"
    PROGRESS  = "progress"
    COMPLETED = "completed"


@dataclass(frozen=True)
class ImportEvent:
    kind: str
    asset_name: str
    message: str = ""
    result: ImportResult | None = None


ImportEventHandler = Callable[[ImportEvent], None]


def material_slots(texture_results: list[TextureResult]) -> dict[str, str]:
    """Map successful texture outputs onto material slots by texture type."""
    slots: dict[str, str] = {}
    for tex in texture_results:
        if not tex.success or not tex.relative_path:
            continue
        slot = MATERIAL_SLOTS.get((tex.texture_type or "").lower())
        if slot and slot not in slots:
            slots[slot] = tex.relative_path
    return slots


def _describe(e: BaseException) -> str:
    return str(e) or type(e).__name__


@dataclass
class _RootLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


# ─── Orchestrator ────────────────────────────────────────────────────────────

class ImportOrchestrator:
    """
    Sequences the import steps for one asset, or a bundle one asset at a
    time. Never raises for asset-level failures; `NoProjectContextError` is
    the only exception that escapes `run_import` / `run_import_all`.
    """

    def __init__(
        self,
        config: ImportConfig,
        collaborators: Collaborators,
        on_event: ImportEventHandler | None = None,
    ):
        self.config = config
        self.collaborators = collaborators
        self.on_event = on_event
        self._locks: dict[str, _RootLock] = {}

    async def run_import_all(self, bundle: ExportBundle) -> list[ImportResult]:
        self._require_project()
        logger.info("Importing bundle of %d asset(s)", len(bundle))
        results = []
        for asset in bundle:
            results.append(await self.run_import(asset))
        return results

    async def run_import(self, asset: Asset) -> ImportResult:
        project_root = self._require_project()
        base_name = asset.base_name
        result = ImportResult(asset_name=asset.display_name, base_name=base_name)
        import_root = self.config.import_root(base_name)

        logger.info(
            "Importing %r (id=%s, base=%s, textures=%d, meshes=%d)",
            result.asset_name, asset.id, base_name, len(asset.textures()), len(asset.all_meshes()),
        )
        async with self._exclusive(import_root):
            self._emit(ImportEventKind.STARTED, result.asset_name, f"Importing {result.asset_name}...")
            try:
                await self._run_steps(asset, result, import_root, project_root)
            except Exception as e:
                logger.exception("Unexpected failure importing %s", result.asset_name)
                result.errors.append(_describe(e))

            if result.success:
                logger.info("Import finished: %s", result.summary())
            else:
                logger.error("Import failed: %s", result.summary())
            for error in result.errors:
                logger.warning("  %s", error)
            self._emit(ImportEventKind.COMPLETED, result.asset_name, result.summary(), result)
        return result

    # ─── Steps ────────────────────────────────────────────────────────────────

    async def _run_steps(self, asset: Asset, result: ImportResult, import_root: Path, project_root: str) -> None:
        materials_dir = import_root / MATERIALS_FOLDER
        models_dir = import_root / MODELS_FOLDER
        try:
            for folder in (import_root, materials_dir, models_dir):
                folder.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            result.errors.append(f"Directory: failed to create {import_root}: {e}")
            return

        textures = asset.textures()
        if self.config.convert_textures and textures:
            self._progress(result, f"Converting {len(textures)} texture(s)...")
            for tex in textures:
                tr = await self._convert_texture(tex.path, f"{result.base_name}{tex.suffix}", str(materials_dir))
                tr.texture_type = tex.type
                if tr.success and tr.destination_path:
                    tr.relative_path = project_relative_path(tr.destination_path, project_root)
                else:
                    result.errors.append(f"Texture: {tr.error or f'conversion failed for {tex.path}'}")
                result.texture_results.append(tr)

        if self.config.create_materials and any(t.success for t in result.texture_results):
            self._progress(result, f"Creating material for {result.asset_name}...")
            slots = material_slots(result.texture_results)
            mr = await self._generate_material(result.base_name, slots, str(materials_dir))
            if mr.success and mr.material_path:
                mr.relative_path = project_relative_path(mr.material_path, project_root)
            elif not mr.success:
                result.errors.append(f"Material: {mr.error or 'material generation failed'}")
            result.material_result = mr

        if self.config.convert_models and asset.has_model_input():
            sources = asset.mesh_sources(result.base_name)
            self._progress(result, f"Converting {len(sources)} model(s)...")
            for source in sources:
                model = await self._convert_model(source.path, source.output_name, str(models_dir))
                if model.success and model.model_path:
                    model.relative_path = project_relative_path(model.model_path, project_root)
                elif not model.success:
                    result.errors.append(f"Model: {model.error or f'conversion failed for {source.path}'}")
                result.model_results.append(model)

        material = result.material_result
        converted = [m for m in result.model_results if m.success and m.model_path]
        if material and material.success and material.relative_path and converted:
            self._progress(result, f"Assigning material to {len(converted)} model(s)...")
            for model in converted:
                model.material_assigned = await self._assign_material(
                    result, model.model_path, material.relative_path,
                )

    async def _convert_texture(self, source: str, output_name: str, folder: str) -> TextureResult:
        try:
            return await asyncio.to_thread(self.collaborators.convert_texture, source, output_name, folder)
        except Exception as e:
            logger.exception("Texture conversion raised for %s", source)
            return TextureResult(success=False, source_path=source, error=_describe(e))

    async def _generate_material(self, name: str, slots: dict[str, str], folder: str) -> MaterialResult:
        try:
            return await asyncio.to_thread(self.collaborators.generate_material, name, slots, folder)
        except Exception as e:
            logger.exception("Material generation raised for %s", name)
            return MaterialResult(success=False, error=_describe(e))

    async def _convert_model(self, source: str, output_name: str, folder: str) -> ModelResult:
        try:
            return await asyncio.to_thread(self.collaborators.convert_model, source, output_name, folder)
        except Exception as e:
            logger.exception("Model conversion raised for %s", source)
            return ModelResult(success=False, source_path=source, error=_describe(e))

    async def _assign_material(self, result: ImportResult, model_path: str, material_path: str) -> bool:
        try:
            assigned = await asyncio.to_thread(self.collaborators.assign_material, model_path, material_path)
        except Exception as e:
            logger.exception("Material assignment raised for %s", model_path)
            result.errors.append(f"Material assignment: {_describe(e)}")
            return False
        if not assigned:
            logger.warning("Default material not assigned to %s", model_path)
        return bool(assigned)

    # ─── Helpers ──────────────────────────────────────────────────────────────

    def _require_project(self) -> str:
        if not self.config.project_root:
            raise NoProjectContextError()
        return self.config.project_root

    @asynccontextmanager
    async def _exclusive(self, import_root: Path) -> AsyncIterator[None]:
        """Hold the lock for one import root; the entry is dropped once unused."""
        key = os.path.normcase(os.path.abspath(import_root))
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _RootLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    def _progress(self, result: ImportResult, message: str) -> None:
        logger.info(message)
        self._emit(ImportEventKind.PROGRESS, result.asset_name, message)

    def _emit(self, kind: str, asset_name: str, message: str = "", result: ImportResult | None = None) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(ImportEvent(kind, asset_name, message, result))
        except Exception as e:
            logger.warning("Import event handler failed (non-fatal): %s", e)
