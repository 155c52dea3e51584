"""
Fab Bridge — Connection Session

Owns one accepted exporter connection:

  accepted → receiving → (message_complete | idle_timeout | error) → closed

Bytes are decoded incrementally (a multibyte character may be split across
reads) and fed to the MessageFramer. The first complete message is
normalized and handed to the caller; the connection is then closed without
waiting for more. A peer that connects and goes quiet is dropped after the
idle timeout.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from datetime import datetime
from typing import Any, Callable

from .assets import ExportBundle
from .framing import MessageFramer
from .protocol import ErrorCode, ParseError, loads, normalize, preview
from .status import StatusChannel

logger = logging.getLogger(__name__)

IDLE_TIMEOUT = 5.0                  # seconds without data before closing
RECEIVE_BUFFER_SIZE = 1024 * 1024   # bytes per read

BundleHandler = Callable[[ExportBundle], None]
MessageDump = Callable[[str, dict[str, Any]], None]


class SessionState:
    ACCEPTED         = "accepted"
    RECEIVING        = "receiving"
    MESSAGE_COMPLETE = "message_complete"
    IDLE_TIMEOUT     = "idle_timeout"
    ERROR            = "error"
    CLOSED           = "closed"


class ConnectionSession:
    """
    One message per connection. `run()` never raises for peer or payload
    problems; they end the session and are reported on the status channel.

    `outcome` keeps the terminal state reached before closing, and
    `error_code` the matching ErrorCode when the session ended in error.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        on_bundle: BundleHandler | None = None,
        status: StatusChannel | None = None,
        dump_message: MessageDump | None = None,
        idle_timeout: float = IDLE_TIMEOUT,
    ):
        self._reader = reader
        self._writer = writer
        self.on_bundle = on_bundle
        self.status = status or StatusChannel()
        self.dump_message = dump_message
        self.idle_timeout = idle_timeout
        self.peer = writer.get_extra_info("peername")

        self.state = SessionState.ACCEPTED
        self.outcome: str | None = None
        self.error_code: str | None = None
        self.bytes_received = 0
        self.message: str | None = None
        self.bundle: ExportBundle | None = None

        self._framer = MessageFramer()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    async def run(self) -> ExportBundle | None:
        self.state = SessionState.RECEIVING
        try:
            raw = await self._receive()
            if raw is not None:
                self.state = SessionState.MESSAGE_COMPLETE
                self._deliver(raw)
        finally:
            await self._close()
        return self.bundle

    # ─── Receiving ────────────────────────────────────────────────────────────

    async def _receive(self) -> str | None:
        while True:
            try:
                chunk = await asyncio.wait_for(
                    self._reader.read(RECEIVE_BUFFER_SIZE),
                    timeout=self.idle_timeout,
                )
            except asyncio.TimeoutError:
                self._fail(
                    SessionState.IDLE_TIMEOUT,
                    ErrorCode.IDLE_TIMEOUT,
                    f"Connection idle for {self.idle_timeout:g}s, closing",
                )
                return None
            except (ConnectionError, OSError) as e:
                self._fail(SessionState.ERROR, ErrorCode.CONNECTION_ERROR, f"Connection error: {e}")
                return None

            if not chunk:
                if self.bytes_received:
                    self._fail(
                        SessionState.ERROR,
                        ErrorCode.CONNECTION_ERROR,
                        f"Connection closed after {self.bytes_received} bytes without a complete message",
                    )
                else:
                    logger.debug("Peer %s closed without sending data", self.peer)
                    self.outcome = SessionState.CLOSED
                return None

            self.bytes_received += len(chunk)
            logger.debug("Received %d bytes (%d total)", len(chunk), self.bytes_received)

            message = self._framer.feed(self._decoder.decode(chunk))
            if message is not None:
                self.message = message
                logger.info("Complete message received (%d chars)", len(message))
                return message

    # ─── Delivery ─────────────────────────────────────────────────────────────

    def _deliver(self, raw: str) -> None:
        self.outcome = SessionState.MESSAGE_COMPLETE

        if self.dump_message is not None:
            context = {"peer": self.peer, "received_at": datetime.now().isoformat()}
            try:
                self.dump_message(raw, context)
            except Exception as e:
                logger.warning("Message snapshot failed (non-fatal): %s", e)

        try:
            bundle = normalize(loads(raw))
        except ParseError as e:
            logger.error("Dropping message [%s]: %s | %s", e.code, e.message, preview(raw))
            self._fail(SessionState.ERROR, e.code, f"Parse error: {e.message}")
            return

        self.bundle = bundle
        self.status.received(len(bundle))
        if self.on_bundle is None:
            return
        try:
            self.on_bundle(bundle)
        except Exception as e:
            logger.exception("Bundle handler failed")
            self._fail(SessionState.ERROR, ErrorCode.COLLABORATOR_FAILURE, f"Error handling import: {e}")

    def _fail(self, outcome: str, code: str, text: str) -> None:
        self.state = outcome
        self.outcome = outcome
        self.error_code = code
        self.status.error(text)

    async def _close(self) -> None:
        if self.outcome is None:
            self.outcome = self.state
        self.state = SessionState.CLOSED
        try:
            self._writer.close()
            await self._writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug("Error while closing connection from %s: %s", self.peer, e)
        logger.debug("Session from %s closed (%s)", self.peer, self.outcome)
