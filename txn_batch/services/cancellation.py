"""Cooperative cancellation token shared by the scheduler and one executor run."""

from __future__ import annotations

import threading


class CancellationToken:
    """Set once by the canceller; polled by the executor at checkpoints."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason
