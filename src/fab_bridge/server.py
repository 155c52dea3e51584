"""
Fab Bridge — FastMCP Server

Control surface for the bridge: listener status and lifecycle, import
history, and offline inspection/import of saved export files. The
listener runs inside the server's event loop for the server's lifetime.
"""

from __future__ import annotations

import functools
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

from mcp.server.fastmcp import FastMCP

from .assets import Asset, ExportBundle
from .bridge import FabBridge
from .config import BridgeConfig, validate_port
from .debug import get_debugger, init_debugger
from .importer import NoProjectContextError
from .protocol import ErrorCode, ParseError, loads, normalize

# ─── Logging ──────────────────────────────────────────────────────────────────
# Nothing may be written to stdout (it carries the stdio transport). File
# logging is set up by the debug module; stderr is a last-resort fallback
# for startup errors before debug init.

logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
    handlers=[logging.StreamHandler(sys.stderr)],
)
logger = logging.getLogger(__name__)

# ─── Debug Infrastructure ─────────────────────────────────────────────────────

try:
    _dbg = init_debugger()
    logger.info("Debug infrastructure initialized, logs: %s", _dbg.log_dir)
except OSError as _e:
    _dbg = None
    logger.warning("Debug init failed (%s), running without file logging", _e)

# ─── Bridge Singleton ─────────────────────────────────────────────────────────

_bridge: FabBridge | None = None


def _get_bridge() -> FabBridge:
    global _bridge
    if _bridge is None:
        _bridge = FabBridge(BridgeConfig.from_env())
    return _bridge


@asynccontextmanager
async def bridge_lifespan(server: FastMCP) -> AsyncIterator[dict[str, Any]]:
    """Start the listener with the server (when auto_start) and stop it on exit."""
    bridge = _get_bridge()
    if bridge.config.auto_start:
        await bridge.start()
    try:
        yield {"bridge": bridge}
    finally:
        await bridge.stop()
        await bridge.wait_for_imports()


# ─── MCP Server ───────────────────────────────────────────────────────────────

mcp = FastMCP(
    name="fab-bridge",
    instructions=(
        "Receives asset exports from the Fab launcher on a loopback port and imports "
        "their textures, materials and models into the configured game project. "
        "Use bridge_status to check the listener and import_history for results."
    ),
    lifespan=bridge_lifespan,
)


def _error(code: str, message: str) -> dict[str, Any]:
    return {"status": "error", "error_code": code, "message": message}


def _read_export(filepath: str) -> tuple[ExportBundle | None, dict[str, Any] | None]:
    """Load and normalize a saved export file. Returns (bundle, error_result)."""
    path = Path(filepath)
    if not path.is_file():
        return None, _error(ErrorCode.FILE_NOT_FOUND, f"Export file not found: {filepath}")
    try:
        raw = path.read_text(encoding="utf-8-sig")
    except (OSError, UnicodeDecodeError) as e:
        return None, _error(ErrorCode.INVALID_PARAMS, f"Could not read {filepath}: {e}")
    try:
        return normalize(loads(raw)), None
    except ParseError as e:
        return None, _error(e.code, e.message)


def _describe_asset(asset: Asset) -> dict[str, Any]:
    return {
        "id": asset.id,
        "display_name": asset.display_name,
        "base_name": asset.base_name,
        "type": asset.type,
        "textures": [
            {"path": t.path, "type": t.type, "suffix": t.suffix, "linear": t.is_linear}
            for t in asset.textures()
        ],
        "models": [
            {"path": m.path, "output_name": m.output_name, "origin": m.origin}
            for m in asset.mesh_sources()
        ],
    }


# ─── Decorator shorthand ──────────────────────────────────────────────────────

def _tool_dec():
    dbg = get_debugger()
    if dbg:
        return dbg.tool_decorator()

    def _noop(f):
        @functools.wraps(f)
        async def wrapper(*a, **kw):
            return await f(*a, **kw)
        return wrapper
    return _noop


# ─── Tool 1: bridge_status ────────────────────────────────────────────────────

@mcp.tool()
@_tool_dec()
async def bridge_status(events: int = 10) -> dict[str, Any]:
    """
    Report the listener state and bridge counters.

    Args:
        events: Number of most recent status events to include. Default 10.

    Returns:
        listener (running, port, connection counts), project settings,
        counters, recent status events and per-tool performance.
    """
    bridge = _get_bridge()
    st = bridge.get_status()
    history = bridge.status.export_report()["history"]
    st["recent_events"] = history[-events:] if events > 0 else []
    if not bridge.is_running:
        st["note"] = "Listener is stopped. Use manage_bridge(action='start') to accept exports."
    dbg = get_debugger()
    if dbg:
        st["performance"] = dbg.performance_report()
    return {"status": "success", **st}


# ─── Tool 2: manage_bridge ────────────────────────────────────────────────────

@mcp.tool()
@_tool_dec()
async def manage_bridge(action: str, port: int | None = None) -> dict[str, Any]:
    """
    Start, stop or restart the exporter listener.

    Args:
        action: One of "start", "stop", "restart".
        port: Port to listen on (1024-65535). Default: the configured port.

    Returns:
        running and port after the action.
    """
    if action not in ("start", "stop", "restart"):
        return _error(
            ErrorCode.INVALID_PARAMS,
            f"Invalid action {action!r}. Must be 'start', 'stop', or 'restart'.",
        )
    if port is not None:
        err = validate_port(port)
        if err:
            return _error(ErrorCode.INVALID_PARAMS, err)

    bridge = _get_bridge()

    if action == "stop":
        await bridge.stop()
        return {"status": "success", "running": False, "port": None}

    if action == "start":
        if bridge.is_running:
            return _error(
                ErrorCode.ALREADY_RUNNING,
                f"Listener is already running on port {bridge.listener.port}. Use action='restart'.",
            )
        started = await bridge.start(port)
    else:
        started = await bridge.restart(port)

    if not started:
        return _error(ErrorCode.CONNECTION_ERROR, bridge.listener.last_error or "Listener failed to start")
    return {"status": "success", "running": True, "port": bridge.listener.port}


# ─── Tool 3: import_history ───────────────────────────────────────────────────

@mcp.tool()
@_tool_dec()
async def import_history(limit: int = 10, clear: bool = False) -> dict[str, Any]:
    """
    Return recent import results, newest first.

    Args:
        limit: Maximum number of results. Default 10.
        clear: Clear the history after reading it. Default False.

    Returns:
        imports (asset name, success, texture/model/material results, errors).
    """
    if limit < 1:
        return _error(ErrorCode.INVALID_PARAMS, f"limit must be at least 1, got {limit}")

    status = _get_bridge().status
    imports = [r.to_dict() for r in status.import_history(limit)]
    if clear:
        status.clear_import_history()
    return {"status": "success", "count": len(imports), "imports": imports, "cleared": clear}


# ─── Tool 4: inspect_export ───────────────────────────────────────────────────

@mcp.tool()
@_tool_dec()
async def inspect_export(filepath: str) -> dict[str, Any]:
    """
    Parse a saved export JSON file and describe its assets without importing.

    Args:
        filepath: Path to an export file (e.g. a fab_export_*.json snapshot).

    Returns:
        assets with display name, base name, textures (type, suffix) and
        model sources.
    """
    bundle, error = _read_export(filepath)
    if error:
        return error
    assets = [_describe_asset(a) for a in bundle]
    return {"status": "success", "asset_count": len(assets), "assets": assets}


# ─── Tool 5: import_export_file ───────────────────────────────────────────────

@mcp.tool()
@_tool_dec()
async def import_export_file(filepath: str) -> dict[str, Any]:
    """
    Run the import pipeline on a saved export JSON file.

    Args:
        filepath: Path to an export file (e.g. a fab_export_*.json snapshot).

    Returns:
        one import result per asset, plus overall success.
    """
    bundle, error = _read_export(filepath)
    if error:
        return error

    bridge = _get_bridge()
    try:
        results = await bridge.orchestrator.run_import_all(bundle)
    except NoProjectContextError as e:
        return _error(e.code, e.message)

    return {
        "status": "success",
        "success": any(r.success for r in results),
        "results": [r.to_dict() for r in results],
    }


# ─── Entrypoint ───────────────────────────────────────────────────────────────

def main() -> None:
    """Run the MCP server (stdio transport)."""
    dbg = get_debugger()
    if dbg:
        dbg.logger.info("Fab Bridge MCP server starting")
    else:
        logger.info("Fab Bridge MCP server starting (no file logging)")
    mcp.run()


if __name__ == "__main__":
    main()
