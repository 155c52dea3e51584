"""
Fab Bridge — Configuration

Settings come from environment variables with defaults:

  FABBRIDGE_PORT              Listener port (default: 24981)
  FABBRIDGE_PROJECT_DIR       Project root that receives imports (default: unset)
  FABBRIDGE_IMPORT_FOLDER     Import folder under the project (default: fab_imports)
  FABBRIDGE_CONVERT_TEXTURES  Run the texture step (default: true)
  FABBRIDGE_CREATE_MATERIALS  Run the material step (default: true)
  FABBRIDGE_CONVERT_MODELS    Run the model step (default: true)
  FABBRIDGE_SAVE_JSON         Snapshot every received message (default: false)
  FABBRIDGE_AUTO_START        Start listening when the server starts (default: true)
  FABBRIDGE_IDLE_TIMEOUT      Seconds before a silent connection is dropped (default: 5)
  FABBRIDGE_HISTORY_LIMIT     Import results kept in history (default: 50)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from .importer import DEFAULT_IMPORT_FOLDER, ImportConfig
from .listener import DEFAULT_PORT
from .session import IDLE_TIMEOUT

MIN_PORT = 1024
MAX_PORT = 65535
DEFAULT_HISTORY_LIMIT = 50
SNAPSHOT_FOLDER = "fab_debug"

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


class ConfigError(ValueError):
    """An environment variable holds an unusable value."""


# ─── Validation ──────────────────────────────────────────────────────────────

def validate_port(port: int, allow_ephemeral: bool = False) -> str | None:
    """Return an error string if the port is unusable, else None."""
    if isinstance(port, bool) or not isinstance(port, int):
        return f"port must be an integer, got {port!r}"
    if allow_ephemeral and port == 0:
        return None
    if not MIN_PORT <= port <= MAX_PORT:
        return f"port must be between {MIN_PORT} and {MAX_PORT}, got {port}"
    return None


def validate_import_folder(folder: str) -> str | None:
    """Return an error string if the import folder is unusable, else None."""
    if not folder or not folder.strip():
        return "import folder must not be empty"
    if os.path.isabs(folder) or Path(folder).anchor:
        return f"import folder must be relative to the project, got {folder!r}"
    if ".." in Path(folder.replace("\\", "/")).parts:
        return f"import folder must stay inside the project, got {folder!r}"
    return None


# ─── Parsing ─────────────────────────────────────────────────────────────────

def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean (1/0, true/false, yes/no, on/off), got {raw!r}")


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value


# ─── Config ──────────────────────────────────────────────────────────────────

@dataclass
class BridgeConfig:
    port: int = DEFAULT_PORT
    project_root: str | None = None
    import_folder: str = DEFAULT_IMPORT_FOLDER
    convert_textures: bool = True
    create_materials: bool = True
    convert_models: bool = True
    save_json: bool = False
    auto_start: bool = True
    idle_timeout: float = IDLE_TIMEOUT
    history_limit: int = DEFAULT_HISTORY_LIMIT

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "BridgeConfig":
        env = os.environ if env is None else env

        port = _env_int(env, "FABBRIDGE_PORT", DEFAULT_PORT)
        err = validate_port(port)
        if err:
            raise ConfigError(f"FABBRIDGE_PORT: {err}")

        import_folder = env.get("FABBRIDGE_IMPORT_FOLDER", "").strip() or DEFAULT_IMPORT_FOLDER
        err = validate_import_folder(import_folder)
        if err:
            raise ConfigError(f"FABBRIDGE_IMPORT_FOLDER: {err}")

        history_limit = _env_int(env, "FABBRIDGE_HISTORY_LIMIT", DEFAULT_HISTORY_LIMIT)
        if history_limit < 1:
            raise ConfigError(f"FABBRIDGE_HISTORY_LIMIT must be at least 1, got {history_limit}")

        return cls(
            port=port,
            project_root=env.get("FABBRIDGE_PROJECT_DIR", "").strip() or None,
            import_folder=import_folder,
            convert_textures=_env_bool(env, "FABBRIDGE_CONVERT_TEXTURES", True),
            create_materials=_env_bool(env, "FABBRIDGE_CREATE_MATERIALS", True),
            convert_models=_env_bool(env, "FABBRIDGE_CONVERT_MODELS", True),
            save_json=_env_bool(env, "FABBRIDGE_SAVE_JSON", False),
            auto_start=_env_bool(env, "FABBRIDGE_AUTO_START", True),
            idle_timeout=_env_float(env, "FABBRIDGE_IDLE_TIMEOUT", IDLE_TIMEOUT),
            history_limit=history_limit,
        )

    def import_config(self) -> ImportConfig:
        return ImportConfig(
            project_root=self.project_root,
            import_folder=self.import_folder,
            convert_textures=self.convert_textures,
            create_materials=self.create_materials,
            convert_models=self.convert_models,
        )

    @property
    def snapshot_folder(self) -> str | None:
        """Where received messages are saved when save_json is set."""
        if not self.project_root:
            return None
        return os.path.join(self.project_root, SNAPSHOT_FOLDER)

    def to_dict(self) -> dict:
        return dict(self.__dict__)
