"""
LeaseRecoverySweeper -- reclaims execution leases whose run went silent.

Contract:
    ``tick()`` finds leases whose heartbeat is older than
    ``lease_timeout_seconds``, reclaims each one, and resolves its job:
    a job stranded in PROCESSING is marked FAILED ("execution lease
    expired"); a job still PENDING is submitted to the scheduler again.
    ``requeue_pending()`` submits every PENDING job the scheduler is not
    tracking (used after a restart, when the in-process queue was lost).
    ``start()`` / ``stop()`` run ``tick()`` on a background thread.

Architecture: txn_batch/services.  Polling loop in the same shape as the
    job scheduler's; mutations go through JobStateMachine only.

Invariants enforced:
    - A lease heartbeated after it was found stale is not reclaimed.
    - PROCESSING is never revisited: an expired run's job is failed, not
      restarted.
"""

from __future__ import annotations

import threading

from txn_batch.domain.state_machine import JobStateMachine
from txn_batch.domain.types import ExecutionLease, ImportJobStatus
from txn_batch.services.lease import LeaseManager
from txn_batch.services.scheduler import JobScheduler
from txn_batch.storage.ports import JobRepository
from txn_kernel.domain.clock import Clock, SystemClock
from txn_kernel.exceptions import (
    AlreadyScheduledError,
    ConcurrentModificationError,
    InvalidTransitionError,
    JobNotFoundError,
)
from txn_kernel.logging_config import get_logger

logger = get_logger("batch.recovery")

LEASE_EXPIRED_REASON = "execution lease expired"


class LeaseRecoverySweeper:
    """Background sweep of stale execution leases.

    Non-goals:
        - Does NOT kill the silent run; that run notices at its next
          checkpoint (heartbeat refused, job already terminal) and stops.
    """

    def __init__(
        self,
        lease_manager: LeaseManager,
        job_repository: JobRepository,
        scheduler: JobScheduler,
        clock: Clock | None = None,
        lease_timeout_seconds: float = 300.0,
        sweep_interval_seconds: float = 60.0,
    ):
        self._leases = lease_manager
        self._jobs = job_repository
        self._scheduler = scheduler
        self._clock = clock or SystemClock()
        self._lease_timeout = lease_timeout_seconds
        self._sweep_interval = sweep_interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> int:
        """Reclaim stale leases once (public for testing).

        Returns the number of leases reclaimed.
        """
        try:
            stale = self._leases.find_stale(self._clock.now(), self._lease_timeout)
        except Exception:
            logger.exception("lease_sweep_failed")
            return 0

        reclaimed = 0
        for lease in stale:
            if self._stop_event.is_set():
                break
            try:
                if not self._leases.reclaim(lease):
                    continue
                reclaimed += 1
                self._resolve(lease)
            except Exception:
                logger.exception(
                    "lease_recovery_failed",
                    extra={"job_id": str(lease.job_id)},
                )
        return reclaimed

    def requeue_pending(self) -> int:
        """Submit PENDING jobs the scheduler is not tracking.  Returns the count."""
        submitted = 0
        for job in self._jobs.list_by_status(ImportJobStatus.PENDING):
            if self._scheduler.is_scheduled(job.job_id):
                continue
            try:
                self._scheduler.submit(job.job_id)
                submitted += 1
            except AlreadyScheduledError:
                continue
        if submitted:
            logger.info("pending_jobs_requeued", extra={"count": submitted})
        return submitted

    def start(self) -> None:
        """Start the sweep loop in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="lease-recovery-sweeper",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "lease_sweeper_started",
            extra={
                "sweep_interval": self._sweep_interval,
                "lease_timeout": self._lease_timeout,
            },
        )

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the sweep loop to exit."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("lease_sweeper_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("lease_sweep_exception")
            self._stop_event.wait(timeout=self._sweep_interval)

    def _resolve(self, lease: ExecutionLease) -> None:
        extra = {"job_id": str(lease.job_id), "owner": lease.owner}
        try:
            job = self._jobs.get(lease.job_id)
        except JobNotFoundError:
            logger.warning("stale_lease_without_job", extra=extra)
            return

        if job.status == ImportJobStatus.PROCESSING:
            try:
                JobStateMachine(job, self._jobs, self._clock).fail(LEASE_EXPIRED_REASON)
            except (ConcurrentModificationError, InvalidTransitionError):
                logger.info("stale_lease_job_moved_on", extra=extra)
                return
            logger.warning("stale_lease_job_failed", extra=extra)
        elif job.status == ImportJobStatus.PENDING:
            try:
                self._scheduler.submit(job.job_id)
            except AlreadyScheduledError:
                return
            logger.warning("stale_lease_job_redispatched", extra=extra)
        else:
            logger.info(
                "stale_lease_released",
                extra={**extra, "status": job.status.value},
            )
