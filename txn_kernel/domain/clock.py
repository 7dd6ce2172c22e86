"""
Clock -- injectable source of the current time.

Every timestamp the pipeline records (job created/started/finished, lease
acquired/heartbeat) comes from a Clock passed in at construction, never
from ``datetime.now()`` at the call site.  Lease staleness is therefore
testable by moving a DeterministicClock forward instead of sleeping.

All instants are timezone-aware UTC; the persistence layer rejects naive
datetimes.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

DEFAULT_TEST_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        """Current instant, timezone-aware UTC."""


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """Clock that only moves when told to.

    Safe to read from worker and sweeper threads while a test advances it.

    Raises:
        ValueError: If given a naive datetime.
    """

    def __init__(self, start: datetime | None = None):
        self._now = self._require_aware(start or DEFAULT_TEST_TIME)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float = 1.0) -> datetime:
        """Move forward and return the new instant."""
        if seconds < 0:
            raise ValueError("a clock cannot move backwards")
        with self._lock:
            self._now += timedelta(seconds=seconds)
            return self._now

    def set_time(self, instant: datetime) -> None:
        instant = self._require_aware(instant)
        with self._lock:
            self._now = instant

    @staticmethod
    def _require_aware(instant: datetime) -> datetime:
        if instant.tzinfo is None or instant.utcoffset() is None:
            raise ValueError(f"naive datetime not allowed: {instant!r}")
        return instant.astimezone(timezone.utc)
