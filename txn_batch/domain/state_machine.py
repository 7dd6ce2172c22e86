"""
JobStateMachine -- the only writer of import job state.

Contract:
    Wraps the caller's ImportJob snapshot and a JobRepository.  Every
    operation validates the transition, builds the next snapshot with
    ``version + 1`` and persists it via
    ``repository.compare_and_swap(new_job, expected_version=held_version)``.

Transitions:
    PENDING    -> PROCESSING   start()
    PENDING    -> CANCELLED    cancel()
    PROCESSING -> COMPLETED    complete() with failed_rows == 0
    PROCESSING -> FAILED       complete() with failed_rows > 0, or fail()
    PROCESSING -> CANCELLED    cancel()
    COMPLETED, FAILED and CANCELLED are terminal.

Invariants:
    - PENDING and PROCESSING are never revisited.
    - Counters never decrease; ``total_rows`` once set never changes;
      ``processed_rows + failed_rows <= total_rows`` once it is known.
    - ``finished_at`` is set iff the status is terminal.
    - ``error_summary`` is non-empty only when FAILED.

Failure modes:
    - InvalidTransitionError: operation illegal from the current status.
    - ProgressRegressionError: counters regress or exceed the total.
    - ConcurrentModificationError: the stored version moved on; the held
      snapshot is unchanged and the caller may ``reload()`` and retry.
"""

from __future__ import annotations

from dataclasses import replace
from typing import TYPE_CHECKING, Iterable

from txn_batch.domain.types import ImportJob, ImportJobStatus, JobErrorItem
from txn_kernel.domain.clock import Clock, SystemClock
from txn_kernel.exceptions import InvalidTransitionError, ProgressRegressionError
from txn_kernel.logging_config import get_logger

if TYPE_CHECKING:
    from txn_batch.storage.ports import JobRepository

logger = get_logger("batch.state_machine")

ALLOWED_TRANSITIONS: dict[ImportJobStatus, frozenset[ImportJobStatus]] = {
    ImportJobStatus.PENDING: frozenset({
        ImportJobStatus.PROCESSING,
        ImportJobStatus.CANCELLED,
    }),
    ImportJobStatus.PROCESSING: frozenset({
        ImportJobStatus.COMPLETED,
        ImportJobStatus.FAILED,
        ImportJobStatus.CANCELLED,
    }),
    ImportJobStatus.COMPLETED: frozenset(),
    ImportJobStatus.FAILED: frozenset(),
    ImportJobStatus.CANCELLED: frozenset(),
}


def can_transition(current: ImportJobStatus, target: ImportJobStatus) -> bool:
    """Pure check against the transition graph."""
    return target in ALLOWED_TRANSITIONS[current]


class JobStateMachine:
    """Validated, versioned mutations of one import job."""

    def __init__(
        self,
        job: ImportJob,
        repository: JobRepository,
        clock: Clock | None = None,
    ) -> None:
        self._job = job
        self._repository = repository
        self._clock = clock or SystemClock()

    @property
    def job(self) -> ImportJob:
        """The last snapshot this machine read or wrote."""
        return self._job

    @property
    def status(self) -> ImportJobStatus:
        return self._job.status

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def start(self) -> ImportJob:
        self._require(ImportJobStatus.PROCESSING, "start")
        return self._commit(replace(
            self._job,
            status=ImportJobStatus.PROCESSING,
            started_at=self._clock.now(),
        ))

    def record_progress(
        self,
        processed: int,
        failed: int,
        total: int | None = None,
    ) -> ImportJob:
        """Persist new counters.  Unchanged counters are not written."""
        job = self._job
        if job.status != ImportJobStatus.PROCESSING:
            raise InvalidTransitionError(
                str(job.job_id), job.status.value, "record progress",
            )
        if processed < job.processed_rows or failed < job.failed_rows:
            raise self._regression(
                f"counters cannot decrease (processed {job.processed_rows}->{processed}, "
                f"failed {job.failed_rows}->{failed})"
            )
        if total is not None and job.total_rows is not None and total != job.total_rows:
            raise self._regression(
                f"total_rows already set to {job.total_rows}, got {total}"
            )

        new_total = job.total_rows if job.total_rows is not None else total
        if new_total is not None and processed + failed > new_total:
            raise self._regression(
                f"processed {processed} + failed {failed} exceeds total {new_total}"
            )

        if (processed, failed, new_total) == (job.processed_rows, job.failed_rows, job.total_rows):
            return job

        return self._commit(replace(
            job,
            processed_rows=processed,
            failed_rows=failed,
            total_rows=new_total,
        ))

    def complete(self, error_summary: Iterable[JobErrorItem] = ()) -> ImportJob:
        """Finish the run: COMPLETED if no row failed, else FAILED."""
        job = self._job
        target = ImportJobStatus.FAILED if job.failed_rows > 0 else ImportJobStatus.COMPLETED
        self._require(target, "complete")

        total = job.total_rows
        if total is None:
            total = job.processed_rows + job.failed_rows

        summary: tuple[JobErrorItem, ...] = ()
        reason = None
        if target == ImportJobStatus.FAILED:
            summary = tuple(error_summary)
            reason = f"{job.failed_rows} of {total} row(s) failed"

        return self._commit(replace(
            job,
            status=target,
            total_rows=total,
            error_summary=summary,
            failure_reason=reason,
            finished_at=self._clock.now(),
        ))

    def fail(self, reason: str, error_summary: Iterable[JobErrorItem] = ()) -> ImportJob:
        """Job-fatal failure.  The reason is itemized first as a row 0 entry."""
        self._require(ImportJobStatus.FAILED, "fail")
        summary = (JobErrorItem(row_number=0, reason=reason),) + tuple(error_summary)
        return self._commit(replace(
            self._job,
            status=ImportJobStatus.FAILED,
            error_summary=summary,
            failure_reason=reason,
            finished_at=self._clock.now(),
        ))

    def cancel(self, reason: str | None = None) -> ImportJob:
        self._require(ImportJobStatus.CANCELLED, "cancel")
        return self._commit(replace(
            self._job,
            status=ImportJobStatus.CANCELLED,
            failure_reason=reason,
            finished_at=self._clock.now(),
        ))

    def reload(self) -> ImportJob:
        """Replace the held snapshot with the stored one."""
        self._job = self._repository.get(self._job.job_id)
        return self._job

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _require(self, target: ImportJobStatus, operation: str) -> None:
        if not can_transition(self._job.status, target):
            raise InvalidTransitionError(
                str(self._job.job_id), self._job.status.value, operation,
            )

    def _regression(self, detail: str) -> ProgressRegressionError:
        return ProgressRegressionError(
            str(self._job.job_id), self._job.status.value, detail,
        )

    def _commit(self, new_job: ImportJob) -> ImportJob:
        expected = self._job.version
        new_job = replace(new_job, version=expected + 1)
        self._repository.compare_and_swap(new_job, expected_version=expected)
        if new_job.status != self._job.status:
            logger.info(
                "import_job_transition",
                extra={
                    "job_id": str(new_job.job_id),
                    "from_status": self._job.status.value,
                    "to_status": new_job.status.value,
                    "version": new_job.version,
                },
            )
        self._job = new_job
        return new_job
