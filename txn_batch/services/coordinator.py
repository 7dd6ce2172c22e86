"""
ImportCoordinator -- the inbound face of the pipeline.

Contract:
    ``submit(file_bytes, filename)`` stores the file, creates a PENDING job
    and dispatches it, returning the job id before any row is processed.
    ``get_status(job_id)`` returns the last committed snapshot.
    ``cancel(job_id)`` delegates to the scheduler.
    ``list_transactions(job_id)`` reads back persisted rows in row order.

Failure modes:
    - UnsupportedFormatError: filename extension has no codec; nothing stored.
    - StorageUnavailableError: the file could not be stored; no job created.
    - JobNotFoundError: unknown job id on any query.
"""

from __future__ import annotations

from uuid import UUID, uuid4

from txn_batch.domain.types import (
    CancelOutcome,
    ImportJob,
    ImportJobSnapshot,
    ImportJobStatus,
)
from txn_batch.services.scheduler import JobScheduler
from txn_batch.storage.ports import FileStorage, JobRepository, TransactionRepository
from txn_ingestion.codecs import detect_format
from txn_ingestion.domain.types import Transaction
from txn_kernel.domain.clock import Clock, SystemClock
from txn_kernel.exceptions import AlreadyScheduledError
from txn_kernel.logging_config import get_logger

logger = get_logger("batch.coordinator")


class ImportCoordinator:
    """Submit, query and cancel import jobs."""

    def __init__(
        self,
        job_repository: JobRepository,
        transaction_repository: TransactionRepository,
        file_storage: FileStorage,
        scheduler: JobScheduler,
        clock: Clock | None = None,
    ):
        self._jobs = job_repository
        self._transactions = transaction_repository
        self._storage = file_storage
        self._scheduler = scheduler
        self._clock = clock or SystemClock()

    def submit(self, file_bytes: bytes, filename: str) -> UUID:
        """Store the file, create a PENDING job and dispatch it.

        Raises:
            UnsupportedFormatError: If the filename has no supported extension.
            StorageUnavailableError: If the file cannot be stored.
        """
        source_format = detect_format(filename)
        handle = self._storage.put(file_bytes)

        job = self._jobs.create(ImportJob(
            job_id=uuid4(),
            file_handle=handle,
            filename=filename,
            source_format=source_format,
            status=ImportJobStatus.PENDING,
            created_at=self._clock.now(),
        ))

        try:
            self._scheduler.submit(job.job_id)
        except AlreadyScheduledError:
            logger.info("import_already_in_flight", extra={"job_id": str(job.job_id)})

        logger.info(
            "import_submitted",
            extra={
                "job_id": str(job.job_id),
                "source_filename": filename,
                "source_format": source_format,
                "size_bytes": len(file_bytes),
            },
        )
        return job.job_id

    def get_status(self, job_id: UUID) -> ImportJobSnapshot:
        """Raises JobNotFoundError for an unknown id."""
        return ImportJobSnapshot.from_job(self._jobs.get(job_id))

    def cancel(self, job_id: UUID, reason: str | None = None) -> CancelOutcome:
        return self._scheduler.cancel(job_id, reason)

    def list_transactions(self, job_id: UUID) -> tuple[Transaction, ...]:
        self._jobs.get(job_id)
        return self._transactions.list_for_job(job_id)
