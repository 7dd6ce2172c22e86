"""
JobScheduler -- bounded worker pool dispatching import jobs.

Contract:
    ``submit(job_id)`` queues a job (FIFO) for the next free worker and
    returns immediately.  ``cancel(job_id)`` dequeues a queued job, signals
    a running one, or cancels an untracked job directly through the state
    machine.  ``start()`` / ``stop()`` manage the worker threads.

Architecture: txn_batch/services.  Owns the LeaseManager and hands it to
    every BatchExecutor it creates (one executor per worker thread).

Invariants enforced:
    - A job id is queued or running at most once (AlreadyScheduledError).
    - At most ``max_workers`` runs are active at a time; the rest wait in
      submission order.
    - Graceful shutdown: ``stop()`` lets running runs finish and leaves
      queued jobs PENDING (recoverable with ``LeaseRecoverySweeper``).
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Callable
from uuid import UUID

from txn_batch.domain.state_machine import JobStateMachine
from txn_batch.domain.types import CancelOutcome
from txn_batch.services.cancellation import CancellationToken
from txn_batch.services.executor import BatchExecutor
from txn_batch.services.lease import InMemoryLeaseManager, LeaseManager
from txn_batch.storage.ports import JobRepository
from txn_kernel.domain.clock import Clock, SystemClock
from txn_kernel.exceptions import (
    AlreadyRunningError,
    AlreadyScheduledError,
    InvalidTransitionError,
    JobNotFoundError,
)
from txn_kernel.logging_config import get_logger

logger = get_logger("batch.scheduler")

DEFAULT_CANCEL_REASON = "cancelled by request"


class JobScheduler:
    """Thread-pool dispatcher for import jobs.

    Contract:
        - ``submit()`` / ``cancel()`` / ``is_scheduled()`` are thread-safe.
        - ``wait_idle()`` blocks until nothing is queued or running.

    Non-goals:
        - NOT a distributed queue: the queue lives in this process.
        - Does NOT preempt a run; cancellation is observed at checkpoints.
    """

    def __init__(
        self,
        executor_factory: Callable[[LeaseManager], BatchExecutor],
        job_repository: JobRepository,
        lease_manager: LeaseManager | None = None,
        max_workers: int = 4,
        clock: Clock | None = None,
    ):
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self._executor_factory = executor_factory
        self._jobs = job_repository
        self._clock = clock or SystemClock()
        self._lease_manager = lease_manager or InMemoryLeaseManager(self._clock)
        self._max_workers = max_workers

        self._cond = threading.Condition()
        self._queue: deque[UUID] = deque()
        self._queued: set[UUID] = set()
        self._running: dict[UUID, CancellationToken] = {}
        self._stopping = False
        self._workers: list[threading.Thread] = []

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def submit(self, job_id: UUID) -> None:
        """Queue a job for execution.

        Raises:
            AlreadyScheduledError: If the job is already queued or running.
        """
        with self._cond:
            if job_id in self._queued or job_id in self._running:
                raise AlreadyScheduledError(str(job_id))
            self._queue.append(job_id)
            self._queued.add(job_id)
            depth = len(self._queue)
            self._cond.notify()
        logger.info("job_submitted", extra={"job_id": str(job_id), "queue_depth": depth})

    def cancel(self, job_id: UUID, reason: str | None = None) -> CancelOutcome:
        """Cancel a queued, running or untracked job.

        Raises:
            JobNotFoundError: If the job is unknown.
            InvalidTransitionError: If the job is already terminal.
        """
        reason = reason or DEFAULT_CANCEL_REASON
        with self._cond:
            token = self._running.get(job_id)
            if token is not None:
                token.cancel(reason)
                outcome = CancelOutcome.SIGNALLED
            elif job_id in self._queued:
                self._queue.remove(job_id)
                self._queued.discard(job_id)
                self._cond.notify_all()
                outcome = CancelOutcome.DEQUEUED
            else:
                outcome = CancelOutcome.CANCELLED

        if outcome != CancelOutcome.SIGNALLED:
            job = self._jobs.get(job_id)
            JobStateMachine(job, self._jobs, self._clock).cancel(reason)

        logger.info(
            "job_cancel_requested",
            extra={"job_id": str(job_id), "outcome": outcome.value, "reason": reason},
        )
        return outcome

    def is_scheduled(self, job_id: UUID) -> bool:
        with self._cond:
            return job_id in self._queued or job_id in self._running

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until nothing is queued or running.  False on timeout."""
        with self._cond:
            return self._cond.wait_for(
                lambda: not self._queue and not self._running, timeout=timeout,
            )

    def start(self) -> None:
        """Start the worker threads.  No-op if already running."""
        with self._cond:
            if any(t.is_alive() for t in self._workers):
                return
            self._stopping = False
            self._workers = [
                threading.Thread(
                    target=self._worker_loop,
                    args=(self._executor_factory(self._lease_manager),),
                    name=f"import-worker-{i}",
                    daemon=True,
                )
                for i in range(self._max_workers)
            ]
        for worker in self._workers:
            worker.start()
        logger.info("scheduler_started", extra={"max_workers": self._max_workers})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for workers to finish their current run.

        Args:
            timeout: Max seconds to wait for each worker thread.
        """
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
        for worker in self._workers:
            if worker.is_alive():
                worker.join(timeout=timeout)
        with self._cond:
            left_queued = len(self._queue)
        logger.info("scheduler_stopped", extra={"queued_jobs": left_queued})

    @property
    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._workers)

    @property
    def lease_manager(self) -> LeaseManager:
        return self._lease_manager

    @property
    def queue_depth(self) -> int:
        with self._cond:
            return len(self._queue)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _worker_loop(self, executor: BatchExecutor) -> None:
        """Take jobs in FIFO order until stopped."""
        while True:
            with self._cond:
                while not self._queue and not self._stopping:
                    self._cond.wait()
                if self._stopping:
                    return
                job_id = self._queue.popleft()
                self._queued.discard(job_id)
                token = CancellationToken()
                self._running[job_id] = token

            try:
                self._run_one(executor, job_id, token)
            finally:
                with self._cond:
                    self._running.pop(job_id, None)
                    self._cond.notify_all()

    def _run_one(self, executor: BatchExecutor, job_id: UUID, token: CancellationToken) -> None:
        try:
            result = executor.execute(job_id, cancel_token=token)
            logger.info(
                "job_run_finished",
                extra={
                    "job_id": str(job_id),
                    "status": result.status.value,
                    "duration_ms": result.duration_ms,
                },
            )
        except AlreadyRunningError as exc:
            logger.warning("job_already_running", extra={"job_id": str(job_id), "owner": exc.owner})
        except (InvalidTransitionError, JobNotFoundError) as exc:
            logger.warning("job_not_runnable", extra={"job_id": str(job_id), "error_code": exc.code})
        except Exception:
            logger.exception("job_run_crashed", extra={"job_id": str(job_id)})
