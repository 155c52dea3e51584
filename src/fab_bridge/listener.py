"""
Fab Bridge — Loopback Listener

Binds 127.0.0.1 and runs one ConnectionSession per accepted connection.
Sessions run concurrently with each other and with the accept loop.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .session import IDLE_TIMEOUT, BundleHandler, ConnectionSession, MessageDump
from .status import StatusChannel

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 24981


class Listener:
    """
    Server socket lifecycle for the exporter connection.

    `start()` on a running listener is a no-op returning False. `stop()`
    closes the listening socket so no further connections are accepted;
    sessions already accepted finish their message-or-timeout cycle.
    """

    def __init__(
        self,
        on_bundle: BundleHandler | None = None,
        status: StatusChannel | None = None,
        dump_message: MessageDump | None = None,
        idle_timeout: float = IDLE_TIMEOUT,
        host: str = DEFAULT_HOST,
    ):
        self.on_bundle = on_bundle
        self.status = status or StatusChannel()
        self.dump_message = dump_message
        self.idle_timeout = idle_timeout
        self.host = host
        self.last_error: str | None = None
        self._server: asyncio.AbstractServer | None = None
        self._sessions: set[asyncio.Task] = set()
        self._connection_count = 0

    # ─── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self, port: int = DEFAULT_PORT) -> bool:
        if self._server is not None:
            logger.warning("Listener already running on port %s", self.port)
            return False

        try:
            self._server = await asyncio.start_server(self._handle, self.host, port)
        except OSError as e:
            self.last_error = f"Failed to start server on port {port}: {e}"
            logger.error(self.last_error)
            self.status.error(self.last_error)
            return False

        self.last_error = None
        logger.info("Listening on %s:%d", self.host, self.port)
        self.status.listening(self.port)
        return True

    async def stop(self) -> None:
        if self._server is None:
            return
        server, self._server = self._server, None
        server.close()
        await server.wait_closed()
        logger.info("Listener stopped")
        self.status.stopped()

    async def wait_for_sessions(self) -> None:
        """Wait until every accepted session has closed."""
        if self._sessions:
            await asyncio.gather(*self._sessions, return_exceptions=True)

    # ─── State ────────────────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> int | None:
        """Actually bound port (differs from the requested one for port 0)."""
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    @property
    def connection_count(self) -> int:
        return self._connection_count

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    def status_dict(self) -> dict[str, Any]:
        return {
            "running": self.is_running,
            "host": self.host,
            "port": self.port,
            "connection_count": self._connection_count,
            "active_sessions": self.active_sessions,
            "last_error": self.last_error,
        }

    # ─── Connections ──────────────────────────────────────────────────────────

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._connection_count += 1
        task = asyncio.current_task()
        if task is not None:
            self._sessions.add(task)
        try:
            session = ConnectionSession(
                reader,
                writer,
                on_bundle=self.on_bundle,
                status=self.status,
                dump_message=self.dump_message,
                idle_timeout=self.idle_timeout,
            )
            self.status.client_connected(session.peer)
            await session.run()
        finally:
            if task is not None:
                self._sessions.discard(task)
