"""
Fab Bridge — Status Channel

Human-readable status reporting for the bridge: listening, client
connected, importing, per-step progress, success/failure summaries and
error text. Observers subscribe with a callback; every event is also kept
in a bounded history together with counters and a bounded, newest-first
import history for diagnostic export.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from .importer import ImportResult

logger = logging.getLogger(__name__)

_MAX_HISTORY = 50   # events and import results kept


class StatusKind:
    LISTENING        = "listening"
    STOPPED          = "stopped"
    CLIENT_CONNECTED = "client_connected"
    RECEIVED         = "received"
    IMPORTING        = "importing"
    PROGRESS         = "progress"
    SUCCESS          = "success"
    FAILURE          = "failure"
    ERROR            = "error"


@dataclass(frozen=True)
class StatusEvent:
    kind: str
    text: str
    ts: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "text": self.text, "ts": self.ts}


StatusCallback = Callable[[StatusEvent], None]


class StatusChannel:
    """
    Fan-out of status events to subscribers, plus bounded history.

    Subscriber exceptions are logged and never reach the emitter, so a
    broken observer cannot take down a session or an import.
    """

    def __init__(self, history_limit: int = _MAX_HISTORY):
        self._subscribers: list[StatusCallback] = []
        self._history: deque[StatusEvent] = deque(maxlen=history_limit)
        self._imports: deque["ImportResult"] = deque(maxlen=history_limit)
        self.started_at: float = time.monotonic()
        self.current: StatusEvent = StatusEvent(StatusKind.STOPPED, "Stopped")

        # Counters
        self.connections = 0
        self.messages_received = 0
        self.errors = 0
        self.imports_succeeded = 0
        self.imports_failed = 0

    # ─── Subscription ─────────────────────────────────────────────────────────

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        """Register an observer. Returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # ─── Emitting ─────────────────────────────────────────────────────────────

    def emit(self, kind: str, text: str) -> StatusEvent:
        event = StatusEvent(kind, text)
        self.current = event
        self._history.append(event)

        if kind == StatusKind.CLIENT_CONNECTED:
            self.connections += 1
        elif kind == StatusKind.RECEIVED:
            self.messages_received += 1
        elif kind == StatusKind.ERROR:
            self.errors += 1

        level = logging.WARNING if kind == StatusKind.ERROR else logging.INFO
        logger.log(level, "[%s] %s", kind, text)

        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.warning("Status subscriber failed (non-fatal): %s", e)
        return event

    def listening(self, port: int) -> StatusEvent:
        return self.emit(StatusKind.LISTENING, f"Listening on port {port}")

    def stopped(self) -> StatusEvent:
        return self.emit(StatusKind.STOPPED, "Stopped")

    def client_connected(self, peer: Any = None) -> StatusEvent:
        text = f"Client connected from {peer[0]}:{peer[1]}" if peer else "Client connected"
        return self.emit(StatusKind.CLIENT_CONNECTED, text)

    def received(self, asset_count: int) -> StatusEvent:
        return self.emit(StatusKind.RECEIVED, f"Received {asset_count} asset(s)")

    def importing(self, asset_name: str) -> StatusEvent:
        return self.emit(StatusKind.IMPORTING, f"Importing: {asset_name}")

    def progress(self, text: str) -> StatusEvent:
        return self.emit(StatusKind.PROGRESS, text)

    def error(self, text: str) -> StatusEvent:
        return self.emit(StatusKind.ERROR, text)

    # ─── Import History ───────────────────────────────────────────────────────

    def record_import(self, result: "ImportResult") -> StatusEvent:
        self._imports.appendleft(result)
        if result.success:
            self.imports_succeeded += 1
            summary = f"Imported: {result.asset_name}"
            if result.errors:
                summary += f" ({len(result.errors)} error(s))"
            return self.emit(StatusKind.SUCCESS, summary)
        self.imports_failed += 1
        return self.emit(StatusKind.FAILURE, f"Failed: {result.asset_name}")

    def import_history(self, limit: int | None = None) -> list["ImportResult"]:
        """Newest first."""
        items = list(self._imports)
        return items if limit is None else items[:limit]

    def clear_import_history(self) -> None:
        self._imports.clear()

    # ─── Status / Export ──────────────────────────────────────────────────────

    @property
    def uptime_s(self) -> float:
        return round(time.monotonic() - self.started_at, 1)

    def get_status(self) -> dict[str, Any]:
        return {
            "state": self.current.kind,
            "message": self.current.text,
            "connections": self.connections,
            "messages_received": self.messages_received,
            "errors": self.errors,
            "imports_succeeded": self.imports_succeeded,
            "imports_failed": self.imports_failed,
            "uptime_s": self.uptime_s,
        }

    def export_report(self) -> dict[str, Any]:
        """Full diagnostic report including event history."""
        return {
            **self.get_status(),
            "history": [e.to_dict() for e in self._history],
        }
