"""
Fab Bridge — Debug Infrastructure

File logging for the bridge process, a JSON-lines record of MCP tool calls
and asset imports, timing samples, and optional snapshots of every
received export message.

CRITICAL: the MCP control surface talks over stdio. Any writes to stdout
corrupt the transport, so this module logs to files only.

Configuration via environment variables:
  FABBRIDGE_LOG_DIR    Log directory (default: /tmp/fab_bridge_debug)
  FABBRIDGE_LOG_LEVEL  DEBUG enables verbose mode; anything else is lean
                       (default: INFO → lean)
"""

from __future__ import annotations

import functools
import json
import logging
import os
import time
import traceback
from collections import defaultdict, deque
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from .importer import ImportResult

# ─── Configuration ────────────────────────────────────────────────────────────

_DEFAULT_LOG_DIR = "/tmp/fab_bridge_debug"
_LOG_DIR = os.environ.get("FABBRIDGE_LOG_DIR", _DEFAULT_LOG_DIR)
_LEAN = os.environ.get("FABBRIDGE_LOG_LEVEL", "INFO").upper() != "DEBUG"

LOGGER_NAME = "fab_bridge"
LOG_FILE = "fab_bridge.log"
PERF_SAMPLES = 100
_ARG_PREVIEW = 200


def _attach_file_log(log_dir: str, lean: bool) -> logging.Logger:
    """Point the `fab_bridge` logger hierarchy at <log_dir>/fab_bridge.log."""
    os.makedirs(log_dir, exist_ok=True)
    log = logging.getLogger(LOGGER_NAME)
    log.setLevel(logging.DEBUG)
    log.propagate = False  # stdout carries the MCP transport

    for h in log.handlers[:]:
        log.removeHandler(h)
        h.close()

    handler = RotatingFileHandler(
        os.path.join(log_dir, LOG_FILE), maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
    )
    handler.setLevel(logging.INFO if lean else logging.DEBUG)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-8s %(name)s  %(message)s"))
    log.addHandler(handler)
    return log


def _short(value: Any) -> Any:
    if isinstance(value, str) and len(value) > _ARG_PREVIEW:
        return value[:_ARG_PREVIEW] + "..."
    return value


# ─── Debugger ─────────────────────────────────────────────────────────────────

class BridgeDebugger:
    """
    Records what the bridge does, for after-the-fact diagnosis.

    LEAN (default) logs failures in full and one line per tool call or
    import. VERBOSE (FABBRIDGE_LOG_LEVEL=DEBUG) also writes every tool call
    and import to the op-log and lets per-chunk session logging through.
    """

    def __init__(self, log_dir: str = _LOG_DIR, lean: bool = _LEAN):
        self.log_dir = log_dir
        self.lean = lean
        self.op_log_path = os.path.join(log_dir, f"operations_{datetime.now():%Y%m%d}.json")
        self._samples: dict[str, deque[float]] = defaultdict(lambda: deque(maxlen=PERF_SAMPLES))
        self._calls = 0
        self._failures = 0
        self._started = time.monotonic()
        self.logger = _attach_file_log(log_dir, lean)
        self.logger.info(
            "Debug logging ready (%s), logs: %s", "LEAN" if lean else "VERBOSE", log_dir,
        )

    # ─── Records ──────────────────────────────────────────────────────────────

    def log_tool_call(
        self,
        tool: str,
        arguments: dict[str, Any],
        duration: float,
        error: BaseException | None = None,
    ) -> None:
        """Record one MCP tool invocation."""
        self._count(tool, duration, failed=error is not None)
        ms = duration * 1000
        if error is None:
            self.logger.log(logging.DEBUG if self.lean else logging.INFO, "tool %s ok in %.0fms", tool, ms)
        else:
            self.logger.error("tool %s raised after %.0fms: %s", tool, ms, error)

        if error is None and self.lean:
            return
        entry: dict[str, Any] = {
            "kind": "tool",
            "name": tool,
            "ok": error is None,
            "duration_ms": round(ms, 2),
            "args": {k: _short(v) for k, v in arguments.items()},
        }
        if error is not None:
            entry["error"] = str(error)
            entry["traceback"] = "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            )
        self._append(entry)

    def log_import(self, result: "ImportResult", duration: float | None = None) -> None:
        """Record one finished asset import."""
        self._count("import_asset", duration, failed=not result.success)
        if result.success:
            self.logger.info("import %s: %s", result.base_name, result.summary())
        else:
            self.logger.error("import %s failed: %s", result.base_name, "; ".join(result.errors))

        if result.success and not result.errors and self.lean:
            return
        self._append({
            "kind": "import",
            "name": f"import:{result.base_name or result.asset_name}",
            "asset": result.asset_name,
            "ok": result.success,
            "duration_ms": round(duration * 1000, 2) if duration is not None else None,
            "textures": sum(1 for t in result.texture_results if t.success),
            "models": sum(1 for m in result.model_results if m.success),
            "material": bool(result.material_result and result.material_result.success),
            "errors": list(result.errors),
        })

    def _count(self, name: str, duration: float | None, failed: bool) -> None:
        self._calls += 1
        if failed:
            self._failures += 1
        if duration is not None:
            self._samples[name].append(duration)

    def _append(self, entry: dict[str, Any]) -> None:
        entry = {"ts": datetime.now().isoformat(), **entry}
        try:
            with open(self.op_log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except OSError as e:
            self.logger.warning("Could not write op-log: %s", e)

    # ─── Performance ──────────────────────────────────────────────────────────

    def performance_report(self) -> dict[str, Any]:
        """Timing per tool / import (last PERF_SAMPLES samples each) plus totals."""
        report: dict[str, Any] = {
            "_summary": {
                "total_calls": self._calls,
                "total_errors": self._failures,
                "uptime_s": round(time.monotonic() - self._started, 1),
                "log_dir": self.log_dir,
                "mode": "LEAN" if self.lean else "VERBOSE",
            }
        }
        for name, samples in self._samples.items():
            if not samples:
                continue
            ms = [s * 1000 for s in samples]
            report[name] = {
                "count": len(ms),
                "avg_ms": round(sum(ms) / len(ms), 2),
                "min_ms": round(min(ms), 2),
                "max_ms": round(max(ms), 2),
                "last_ms": round(ms[-1], 2),
            }
        return report

    # ─── Decorator ────────────────────────────────────────────────────────────

    def tool_decorator(self) -> Callable[[Callable], Callable]:
        """
        Wrap an async MCP tool so every call is timed and recorded:

            @mcp.tool()
            @get_debugger().tool_decorator()
            async def bridge_status() -> dict:
                ...
        """
        def decorator(func: Callable) -> Callable:
            @functools.wraps(func)
            async def wrapper(*args, **kwargs):
                t0 = time.monotonic()
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    self.log_tool_call(func.__name__, kwargs, time.monotonic() - t0, e)
                    raise
                self.log_tool_call(func.__name__, kwargs, time.monotonic() - t0)
                return result

            return wrapper
        return decorator


# ─── Message Snapshots ────────────────────────────────────────────────────────

class MessageSnapshotter:
    """
    Saves each received export message as fab_export_<timestamp>.json in
    `folder`. Valid JSON is pretty-printed; anything else is written as
    received. Pass an instance as a session's `dump_message`.
    """

    def __init__(self, folder: str):
        self.folder = folder
        self.last_path: str | None = None
        self._log = logging.getLogger(__name__)

    def __call__(self, raw: str, context: dict[str, Any] | None = None) -> str:
        os.makedirs(self.folder, exist_ok=True)
        path = os.path.join(self.folder, f"fab_export_{datetime.now():%Y%m%d_%H%M%S_%f}.json")

        try:
            text = json.dumps(json.loads(raw), indent=2, ensure_ascii=False)
        except (ValueError, RecursionError):
            text = raw

        with open(path, "w", encoding="utf-8") as f:
            f.write(text)
        self.last_path = path
        self._log.info("Saved export snapshot to %s (%s)", path, (context or {}).get("peer", "local"))
        return path


# ─── Singleton ────────────────────────────────────────────────────────────────

_debugger: BridgeDebugger | None = None


def init_debugger(log_dir: str = _LOG_DIR, lean: bool = _LEAN) -> BridgeDebugger:
    """Initialize the global debugger. Call once at startup."""
    global _debugger
    _debugger = BridgeDebugger(log_dir=log_dir, lean=lean)
    return _debugger


def get_debugger() -> BridgeDebugger | None:
    """Return the global debugger, or None if not yet initialized."""
    return _debugger
