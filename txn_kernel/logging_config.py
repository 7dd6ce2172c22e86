"""
Structured JSON logging for the import pipeline.

Contract:
    Every pipeline module logs through ``get_logger(name)`` with a
    snake_case event name as the message and structured fields in
    ``extra``.  ``StructuredFormatter`` renders one JSON object per line.

    Run-scoped fields (the job being imported, the worker running it) live
    in ``LogContext`` and are merged into every record emitted while they
    are bound, so a worker thread's records can be filtered by ``job_id``
    without every call site repeating it.

Failure modes:
    - Values json cannot encode natively (UUID, datetime, date, Decimal,
      Path) are rendered as strings; anything else falls back to ``str()``.
"""

__all__ = [
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from typing import Any, TextIO

_LOGGER_PREFIX = "txn_kernel"

# ---------------------------------------------------------------------------
# Run context
# ---------------------------------------------------------------------------

_context: ContextVar[Mapping[str, str]] = ContextVar("txn_log_context", default={})


class LogContext:
    """Context-local fields merged into every record.

    Fields are stored per thread (and per asyncio task), so a worker that
    binds ``job_id`` never leaks it into another worker's records.
    """

    FIELDS = ("job_id", "worker", "correlation_id", "source_filename")

    @classmethod
    def set(cls, **fields: str | None) -> None:
        """Set known fields; None values and unknown names are ignored."""
        _context.set({**_context.get(), **cls._known(fields)})

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return dict(_context.get())

    @classmethod
    def clear(cls) -> None:
        _context.set({})

    @classmethod
    @contextmanager
    def bind(cls, **fields: str | None) -> Iterator[None]:
        """Bind fields for the duration of a ``with`` block."""
        token = _context.set({**_context.get(), **cls._known(fields)})
        try:
            yield
        finally:
            _context.reset(token)

    @classmethod
    def _known(cls, fields: Mapping[str, str | None]) -> dict[str, str]:
        return {k: v for k, v in fields.items() if k in cls.FIELDS and v is not None}


# ---------------------------------------------------------------------------
# Formatter
# ---------------------------------------------------------------------------

_RESERVED: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record: ts, level, logger, thread, message, fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        payload.update(_context.get())

        for key, value in vars(record).items():
            if key not in _RESERVED and key not in payload:
                payload[key] = value

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(self._exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default)

    @staticmethod
    def _exception_fields(exc: BaseException) -> dict[str, Any]:
        # Pipeline errors carry a ``code`` and their constructor arguments
        # as public attributes; both are surfaced as exc_* fields.
        fields: dict[str, Any] = {
            "exc_type": type(exc).__name__,
            "exc_message": str(exc),
        }
        code = getattr(exc, "code", None)
        if code is not None:
            fields["exc_code"] = code
        for name, value in vars(exc).items():
            if not name.startswith("_") and name not in ("args", "code"):
                fields[f"exc_{name}"] = value
        return fields


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``txn_kernel`` hierarchy, e.g. ``txn_kernel.batch.executor``."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_configured = False
_configure_lock = threading.Lock()


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: TextIO | None = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach a JSON handler to the ``txn_kernel`` logger.

    Only the first call has an effect.  Records do not propagate to the
    root logger, so an application's own handlers never see them twice.
    """
    global _configured
    with _configure_lock:
        if _configured:
            return
        _configured = True

    target = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    target.setFormatter(StructuredFormatter())

    pipeline_logger = logging.getLogger(_LOGGER_PREFIX)
    pipeline_logger.setLevel(level)
    pipeline_logger.propagate = False
    pipeline_logger.addHandler(target)


def reset_logging() -> None:
    """Undo ``configure_logging`` (tests only)."""
    global _configured
    with _configure_lock:
        _configured = False
    pipeline_logger = logging.getLogger(_LOGGER_PREFIX)
    for h in list(pipeline_logger.handlers):
        pipeline_logger.removeHandler(h)
    pipeline_logger.setLevel(logging.NOTSET)
    pipeline_logger.propagate = True
