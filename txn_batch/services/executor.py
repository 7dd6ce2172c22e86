"""
BatchExecutor -- runs one import job: decode, transform, persist in batches.

Contract:
    ``execute(job_id, cancel_token=None)`` performs exactly one run of a
    PENDING job and returns an ImportRunResult.  Rows are processed in file
    order; successes are persisted in batches of ``batch_size``, each batch
    atomically; row errors are counted and itemized up to a cap.

Architecture: txn_batch/services.  Imports from txn_batch.domain,
    txn_batch.storage (ports and events), txn_ingestion and txn_kernel.

Checkpoints:
    After each persisted batch, and after every ``batch_size`` rows read
    without a flush, the executor records progress, heartbeats the lease
    and checks the cancellation token.  Progress is only ever recorded for
    committed rows, so a status read mid-run never counts buffered rows.
    The token is also checked once, right after the job starts and before
    the source is opened.

Invariants enforced:
    - The execution lease is held for the whole run and released on every
      exit path.
    - Batch N+1 is never persisted before batch N.
    - Cancellation discards the uncommitted buffer; committed batches stay.
    - All timestamps come from the injected Clock.

Failure modes:
    - AlreadyRunningError: another run holds the lease.  Nothing changes.
    - JobNotFoundError / InvalidTransitionError: the job is unknown or not
      PENDING.  Raised after the lease is released; nothing changes.
    - Storage and source decode errors: job FAILED ("infrastructure
      error"), returned as a result.
    - Batch persistence errors after all retries: job FAILED
      ("persistence error"), returned as a result.
    - Any other exception: job FAILED best effort, then re-raised.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable
from uuid import UUID, uuid4

from txn_batch.domain.state_machine import JobStateMachine
from txn_batch.domain.types import (
    ExecutionLease,
    ImportJob,
    ImportRunResult,
    JobErrorItem,
)
from txn_batch.services.cancellation import CancellationToken
from txn_batch.services.lease import LeaseManager
from txn_batch.storage.events import (
    IMPORT_CANCELLED,
    IMPORT_COMPLETED,
    IMPORT_FAILED,
    IMPORT_PROGRESS,
    IMPORT_STARTED,
    NullEventSink,
    publish_safely,
)
from txn_batch.storage.ports import (
    EventSink,
    FileStorage,
    JobRepository,
    TransactionRepository,
)
from txn_config.schema import PipelineConfig
from txn_ingestion.codecs import codec_for
from txn_ingestion.domain.transformer import TransactionTransformer
from txn_ingestion.domain.types import RowError, Transaction
from txn_kernel.domain.clock import Clock, SystemClock
from txn_kernel.exceptions import (
    BatchPersistenceError,
    ConcurrentModificationError,
    IngestionError,
    StorageError,
)
from txn_kernel.logging_config import LogContext, get_logger

logger = get_logger("batch.executor")

LEASE_LOST_REASON = "execution lease lost"


@dataclass
class _RunState:
    """Mutable counters of one run.  Never shared between threads."""

    processed: int = 0
    failed: int = 0
    rows_read: int = 0
    rows_since_checkpoint: int = 0
    batches: int = 0
    buffer: list[Transaction] = field(default_factory=list)
    summary: list[JobErrorItem] = field(default_factory=list)


class _RunStopped(Exception):
    """The job reached a terminal state outside this run; stop quietly."""

    def __init__(self, job: ImportJob):
        self.job = job
        super().__init__(f"Import job {job.job_id} is {job.status.value}")


class BatchExecutor:
    """Single-run import engine.

    Contract:
        - ``execute()`` runs one job to a terminal state, or stops early on
          cancellation or when the job is finished elsewhere.
        - One executor may run many jobs sequentially; each call keeps its
          state on the stack.

    Non-goals:
        - Does NOT queue or schedule -- that is the scheduler's job.
        - Does NOT retry the whole job; only batch inserts are retried.
    """

    def __init__(
        self,
        job_repository: JobRepository,
        transaction_repository: TransactionRepository,
        file_storage: FileStorage,
        lease_manager: LeaseManager,
        config: PipelineConfig | None = None,
        transformer: TransactionTransformer | None = None,
        clock: Clock | None = None,
        event_sink: EventSink | None = None,
        owner: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._jobs = job_repository
        self._transactions = transaction_repository
        self._storage = file_storage
        self._leases = lease_manager
        self._config = config or PipelineConfig()
        self._transformer = transformer or TransactionTransformer(self._config.transform)
        self._clock = clock or SystemClock()
        self._events = event_sink or NullEventSink()
        self._owner = owner or f"executor-{uuid4()}"
        self._sleep = sleep
        self._codec_options = self._config.codec_options()

    # -------------------------------------------------------------------------
    # Execute
    # -------------------------------------------------------------------------

    def execute(
        self,
        job_id: UUID,
        cancel_token: CancellationToken | None = None,
    ) -> ImportRunResult:
        """Run one PENDING job to completion, failure or cancellation.

        Raises:
            AlreadyRunningError: If another run holds the job's lease.
            JobNotFoundError: If job_id does not exist.
            InvalidTransitionError: If the job is not PENDING.
        """
        start_time = time.monotonic()
        token = cancel_token or CancellationToken()

        lease = self._leases.acquire(job_id, self._owner)
        try:
            with LogContext.bind(job_id=str(job_id), worker=self._owner):
                return self._run(job_id, lease, token, start_time)
        finally:
            self._release(lease)

    # -------------------------------------------------------------------------
    # Internal: run
    # -------------------------------------------------------------------------

    def _run(
        self,
        job_id: UUID,
        lease: ExecutionLease,
        token: CancellationToken,
        start_time: float,
    ) -> ImportRunResult:
        machine = JobStateMachine(self._jobs.get(job_id), self._jobs, self._clock)
        job = machine.start()

        logger.info(
            "import_job_started",
            extra={
                "source_filename": job.filename,
                "source_format": job.source_format,
                "batch_size": self._config.batch_size,
            },
        )
        publish_safely(self._events, IMPORT_STARTED, self._payload(job))

        run = _RunState()
        try:
            return self._process(machine, lease, token, run, start_time)
        except _RunStopped as stopped:
            logger.warning(
                "import_job_changed_externally",
                extra={"status": stopped.job.status.value},
            )
            return self._result(stopped.job, run, start_time)
        except Exception as exc:
            self._fail_best_effort(machine, run, f"unexpected error: {exc}")
            raise

    def _process(
        self,
        machine: JobStateMachine,
        lease: ExecutionLease,
        token: CancellationToken,
        run: _RunState,
        start_time: float,
    ) -> ImportRunResult:
        job = machine.job
        batch_size = self._config.batch_size

        # cancelled before the first row is read
        if token.is_cancelled:
            self._cancel(machine, token, run)
            return self._result(machine.job, run, start_time)

        try:
            codec = codec_for(job.source_format, self._codec_options.get(job.source_format))
            stream = self._storage.open_read(job.file_handle)
        except (StorageError, IngestionError) as exc:
            return self._fail(machine, run, f"infrastructure error: {exc}", start_time)

        try:
            with stream:
                for decoded in codec.iter_rows(stream):
                    run.rows_read += 1
                    run.rows_since_checkpoint += 1

                    if decoded.ok:
                        result = self._transformer.transform(job.job_id, decoded.record)
                        if result.success:
                            run.buffer.append(result.transaction)
                        else:
                            self._record_row_error(run, result.error)
                    else:
                        self._record_row_error(run, decoded.error)

                    if len(run.buffer) >= batch_size:
                        self._flush(machine, run)
                    elif run.rows_since_checkpoint < batch_size:
                        continue

                    if self._checkpoint(machine, lease, token, run):
                        return self._result(machine.job, run, start_time)
        except (StorageError, IngestionError, OSError) as exc:
            return self._fail(machine, run, f"infrastructure error: {exc}", start_time)
        except BatchPersistenceError as exc:
            return self._fail(machine, run, f"persistence error: {exc.reason}", start_time)

        try:
            if run.buffer:
                self._flush(machine, run)
        except BatchPersistenceError as exc:
            return self._fail(machine, run, f"persistence error: {exc.reason}", start_time)

        self._apply(machine, lambda: machine.record_progress(
            run.processed, run.failed, total=run.rows_read,
        ))
        job = self._apply(machine, lambda: machine.complete(tuple(run.summary)))

        event = IMPORT_FAILED if job.failed_rows else IMPORT_COMPLETED
        logger.info(
            "import_job_completed",
            extra={
                "status": job.status.value,
                "total_rows": job.total_rows,
                "processed_rows": job.processed_rows,
                "failed_rows": job.failed_rows,
                "batches": run.batches,
                "duration_ms": self._elapsed_ms(start_time),
            },
        )
        publish_safely(self._events, event, self._payload(job))
        return self._result(job, run, start_time)

    # -------------------------------------------------------------------------
    # Internal: rows, batches, checkpoints
    # -------------------------------------------------------------------------

    def _record_row_error(self, run: _RunState, error: RowError) -> None:
        run.failed += 1
        if len(run.summary) < self._config.error_summary_cap:
            run.summary.append(JobErrorItem(row_number=error.row_number, reason=error.reason))

    def _flush(self, machine: JobStateMachine, run: _RunState) -> None:
        """Persist the buffer with retry; counters move only after commit."""
        batch = list(run.buffer)
        self._persist(machine.job.job_id, batch)
        run.buffer.clear()
        run.processed += len(batch)
        run.batches += 1
        logger.info(
            "batch_persisted",
            extra={
                "batch_number": run.batches,
                "rows": len(batch),
                "first_row": batch[0].row_number,
                "last_row": batch[-1].row_number,
            },
        )

    def _persist(self, job_id: UUID, batch: list[Transaction]) -> None:
        """insert_batch with exponential backoff between attempts."""
        attempts = self._config.persist_max_attempts
        delay = self._config.persist_backoff_seconds
        for attempt in range(1, attempts + 1):
            try:
                self._transactions.insert_batch(job_id, batch)
                return
            except BatchPersistenceError as exc:
                if attempt >= attempts:
                    logger.error(
                        "batch_persist_exhausted",
                        extra={"attempts": attempts, "rows": len(batch), "reason": exc.reason},
                    )
                    raise
                logger.warning(
                    "batch_persist_retry",
                    extra={
                        "attempt": attempt,
                        "delay_seconds": delay,
                        "rows": len(batch),
                        "reason": exc.reason,
                    },
                )
                self._sleep(delay)
                delay *= self._config.persist_backoff_multiplier

    def _checkpoint(
        self,
        machine: JobStateMachine,
        lease: ExecutionLease,
        token: CancellationToken,
        run: _RunState,
    ) -> bool:
        """Record progress, heartbeat, check cancellation.  True means stop."""
        run.rows_since_checkpoint = 0
        job = self._apply(machine, lambda: machine.record_progress(run.processed, run.failed))
        publish_safely(self._events, IMPORT_PROGRESS, self._payload(job))

        if self._leases.heartbeat(lease) is None:
            logger.error("execution_lease_lost", extra={"owner": lease.owner})
            run.buffer.clear()
            self._apply(machine, lambda: machine.fail(LEASE_LOST_REASON, tuple(run.summary)))
            publish_safely(self._events, IMPORT_FAILED, self._payload(machine.job))
            return True

        if token.is_cancelled:
            self._cancel(machine, token, run)
            return True
        return False

    def _cancel(self, machine: JobStateMachine, token: CancellationToken, run: _RunState) -> None:
        """Discard the uncommitted buffer and move the job to CANCELLED."""
        discarded = len(run.buffer)
        run.buffer.clear()
        job = self._apply(machine, lambda: machine.cancel(token.reason))
        logger.info(
            "import_job_cancelled",
            extra={
                "processed_rows": job.processed_rows,
                "failed_rows": job.failed_rows,
                "discarded_rows": discarded,
                "reason": token.reason,
            },
        )
        publish_safely(self._events, IMPORT_CANCELLED, self._payload(job))

    # -------------------------------------------------------------------------
    # Internal: state writes and failure
    # -------------------------------------------------------------------------

    def _apply(self, machine: JobStateMachine, operation: Callable[[], ImportJob]) -> ImportJob:
        """Run one state-machine write, reloading once on a version conflict.

        Raises _RunStopped when the reloaded job is already terminal.
        """
        try:
            return operation()
        except ConcurrentModificationError:
            job = machine.reload()
            if job.status.is_terminal:
                raise _RunStopped(job) from None
            return operation()

    def _fail(
        self,
        machine: JobStateMachine,
        run: _RunState,
        reason: str,
        start_time: float,
    ) -> ImportRunResult:
        """Mark the job FAILED with a job-level reason and return the result."""
        run.buffer.clear()
        self._apply(machine, lambda: machine.record_progress(run.processed, run.failed))
        job = self._apply(machine, lambda: machine.fail(reason, tuple(run.summary)))

        logger.error(
            "import_job_failed",
            extra={
                "reason": reason,
                "processed_rows": job.processed_rows,
                "failed_rows": job.failed_rows,
            },
        )
        publish_safely(self._events, IMPORT_FAILED, self._payload(job))
        return self._result(job, run, start_time)

    def _fail_best_effort(self, machine: JobStateMachine, run: _RunState, reason: str) -> None:
        logger.exception("import_job_crashed", extra={"reason": reason})
        try:
            machine.reload()
            if not machine.job.status.is_terminal:
                job = machine.fail(reason, tuple(run.summary))
                publish_safely(self._events, IMPORT_FAILED, self._payload(job))
        except Exception:
            logger.exception("import_job_fail_after_crash_failed")

    def _release(self, lease: ExecutionLease) -> None:
        try:
            if not self._leases.release(lease):
                logger.warning("lease_release_missed", extra={"job_id": str(lease.job_id)})
        except Exception:
            logger.exception("lease_release_failed", extra={"job_id": str(lease.job_id)})

    # -------------------------------------------------------------------------
    # Internal: results
    # -------------------------------------------------------------------------

    @staticmethod
    def _payload(job: ImportJob) -> dict:
        return {
            "job_id": str(job.job_id),
            "status": job.status.value,
            "processed_rows": job.processed_rows,
            "failed_rows": job.failed_rows,
            "total_rows": job.total_rows,
        }

    @staticmethod
    def _elapsed_ms(start_time: float) -> int:
        return int((time.monotonic() - start_time) * 1000)

    def _result(self, job: ImportJob, run: _RunState, start_time: float) -> ImportRunResult:
        return ImportRunResult(
            job_id=job.job_id,
            status=job.status,
            total_rows=job.total_rows,
            processed_rows=job.processed_rows,
            failed_rows=job.failed_rows,
            batches_committed=run.batches,
            failure_reason=job.failure_reason,
            started_at=job.started_at,
            finished_at=job.finished_at,
            duration_ms=self._elapsed_ms(start_time),
            error_summary=job.error_summary,
        )
