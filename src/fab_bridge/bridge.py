"""
Fab Bridge — Service

Wires the listener to the import orchestrator and the status channel.
Each received bundle is imported on its own task so the listener keeps
accepting connections while an import runs.

Run standalone with `fab-bridge` (Ctrl-C to stop).
"""

from __future__ import annotations

import asyncio
import logging
import sys
import time
from typing import Any

from .assets import ExportBundle
from .config import BridgeConfig, ConfigError, validate_port
from .converters import default_collaborators
from .debug import MessageSnapshotter, get_debugger, init_debugger
from .importer import (
    Collaborators,
    ImportEvent,
    ImportEventKind,
    ImportOrchestrator,
    ImportResult,
    NoProjectContextError,
)
from .listener import Listener
from .status import StatusChannel

logger = logging.getLogger(__name__)


class FabBridge:
    def __init__(
        self,
        config: BridgeConfig | None = None,
        collaborators: Collaborators | None = None,
        status: StatusChannel | None = None,
    ):
        self.config = config or BridgeConfig()
        self.status = status or StatusChannel(self.config.history_limit)
        self.collaborators = collaborators or default_collaborators(self.config.project_root)
        self.orchestrator = ImportOrchestrator(
            self.config.import_config(), self.collaborators, on_event=self._on_import_event,
        )
        self.snapshotter: MessageSnapshotter | None = None
        self.listener = Listener(
            on_bundle=self._on_bundle,
            status=self.status,
            dump_message=self._dump_message,
            idle_timeout=self.config.idle_timeout,
        )
        self._imports: set[asyncio.Task] = set()
        self._import_started: dict[str, float] = {}

    # ─── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self, port: int | None = None) -> bool:
        port = self.config.port if port is None else port
        err = validate_port(port, allow_ephemeral=True)
        if err:
            raise ConfigError(err)
        if not self.config.project_root:
            logger.warning("No project directory configured; imports will fail until one is set")
        return await self.listener.start(port)

    async def stop(self) -> None:
        await self.listener.stop()

    async def restart(self, port: int | None = None) -> bool:
        await self.stop()
        return await self.start(port)

    @property
    def is_running(self) -> bool:
        return self.listener.is_running

    # ─── Imports ──────────────────────────────────────────────────────────────

    def _on_bundle(self, bundle: ExportBundle) -> None:
        task = asyncio.get_running_loop().create_task(self.import_bundle(bundle))
        self._imports.add(task)
        task.add_done_callback(self._imports.discard)

    async def import_bundle(self, bundle: ExportBundle) -> list[ImportResult]:
        """Import every asset in the bundle, reporting on the status channel."""
        try:
            results = await self.orchestrator.run_import_all(bundle)
        except NoProjectContextError as e:
            self.status.error(e.message)
            return []
        return results

    async def wait_for_imports(self) -> None:
        """Wait for every dispatched import task to finish."""
        while self._imports:
            await asyncio.gather(*list(self._imports), return_exceptions=True)

    def _on_import_event(self, event: ImportEvent) -> None:
        if event.kind == ImportEventKind.STARTED:
            self._import_started[event.asset_name] = time.monotonic()
            self.status.importing(event.asset_name)
        elif event.kind == ImportEventKind.PROGRESS:
            self.status.progress(event.message)
        elif event.kind == ImportEventKind.COMPLETED and event.result is not None:
            self.status.record_import(event.result)
            started = self._import_started.pop(event.asset_name, None)
            dbg = get_debugger()
            if dbg:
                dbg.log_import(event.result, time.monotonic() - started if started else None)

    def _dump_message(self, raw: str, context: dict[str, Any]) -> None:
        if not self.config.save_json:
            return
        folder = self.config.snapshot_folder
        if folder is None:
            logger.warning("save_json is set but there is no project directory to save into")
            return
        if self.snapshotter is None or self.snapshotter.folder != folder:
            self.snapshotter = MessageSnapshotter(folder)
        self.snapshotter(raw, context)

    # ─── Status ───────────────────────────────────────────────────────────────

    def get_status(self) -> dict[str, Any]:
        return {
            "listener": self.listener.status_dict(),
            "project_root": self.config.project_root,
            "import_folder": self.config.import_folder,
            "imports_in_progress": len(self._imports),
            **self.status.get_status(),
        }


# ─── Entrypoint ───────────────────────────────────────────────────────────────

async def _serve(bridge: FabBridge) -> None:
    if not await bridge.start():
        raise SystemExit(bridge.listener.last_error or "Listener failed to start")
    try:
        await asyncio.Event().wait()
    finally:
        await bridge.stop()
        await bridge.wait_for_imports()


def main() -> None:
    """Run the listener without the MCP server."""
    try:
        config = BridgeConfig.from_env()
    except ConfigError as e:
        print(f"fab-bridge: {e}", file=sys.stderr)
        raise SystemExit(2)

    dbg = init_debugger()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    bridge = FabBridge(config)
    bridge.status.subscribe(lambda event: print(f"[{event.kind}] {event.text}", file=sys.stderr))
    dbg.logger.info("Fab Bridge starting on port %d (project: %s)", config.port, config.project_root)

    try:
        asyncio.run(_serve(bridge))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
