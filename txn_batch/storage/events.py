"""
EventSink implementations and best-effort publication.

Events are notifications, never part of a job's outcome: ``publish_safely``
logs and swallows any sink failure so a broken sink cannot fail an import.
"""

from __future__ import annotations

import threading
from typing import Any

from txn_batch.storage.ports import EventSink
from txn_kernel.logging_config import get_logger

logger = get_logger("batch.events")

IMPORT_STARTED = "import.started"
IMPORT_PROGRESS = "import.progress"
IMPORT_COMPLETED = "import.completed"
IMPORT_FAILED = "import.failed"
IMPORT_CANCELLED = "import.cancelled"


class NullEventSink:
    """Discards every event."""

    def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        return None


class LoggingEventSink:
    """Writes each event as a structured log line."""

    def __init__(self, logger_name: str = "batch.events.sink") -> None:
        self._logger = get_logger(logger_name)

    def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        self._logger.info(
            "event_published",
            extra={"event_type": event_type, "payload": payload},
        )


class RecordingEventSink:
    """Keeps published events in order.  For tests."""

    def __init__(self) -> None:
        self._events: list[tuple[str, dict[str, Any]]] = []
        self._lock = threading.Lock()

    def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self._events.append((event_type, dict(payload)))

    @property
    def events(self) -> list[tuple[str, dict[str, Any]]]:
        with self._lock:
            return list(self._events)

    def types(self) -> list[str]:
        return [event_type for event_type, _ in self.events]


def publish_safely(sink: EventSink, event_type: str, payload: dict[str, Any]) -> None:
    """Publish; a failing sink is logged, never raised."""
    try:
        sink.publish(event_type, payload)
    except Exception:
        logger.warning(
            "event_publish_failed",
            extra={"event_type": event_type},
            exc_info=True,
        )
