"""
Typed exception hierarchy for the transaction import pipeline.

Every error has a typed class, a machine-readable ``code`` class attribute,
and structured attributes. Callers catch by type and read fields, never
parse messages:

    try:
        coordinator.get_status(job_id)
    except JobNotFoundError as e:
        respond(404, code=e.code, job_id=e.job_id)

Row-level problems (undecodable rows, invalid field values) are NOT
exceptions. They are data (``txn_ingestion.domain.types.RowError``) and
flow through the pipeline as values.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    TxnImportError (base)
    |
    +-- JobError
    |   +-- JobNotFoundError
    |   +-- InvalidTransitionError
    |       +-- ProgressRegressionError
    |
    +-- ConcurrencyError
    |   +-- ConcurrentModificationError
    |   +-- AlreadyRunningError
    |   +-- AlreadyScheduledError
    |
    +-- StorageError
    |   +-- StorageUnavailableError
    |   +-- FileHandleNotFoundError
    |
    +-- PersistenceError
    |   +-- BatchPersistenceError
    |
    +-- IngestionError
        +-- UnsupportedFormatError
        +-- SourceDecodeError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                      | When Raised
-------------|---------------------------|------------------------------------------
Job          | JOB_NOT_FOUND             | Job id unknown to the repository
             | INVALID_TRANSITION        | Operation illegal in the current status
             | PROGRESS_REGRESSION       | Counters decrease or exceed total_rows
-------------|---------------------------|------------------------------------------
Concurrency  | CONCURRENT_MODIFICATION   | Stale version on compare-and-swap
             | ALREADY_RUNNING           | Execution lease held by another run
             | ALREADY_SCHEDULED         | Job id already queued or running
-------------|---------------------------|------------------------------------------
Storage      | STORAGE_UNAVAILABLE       | File store cannot be reached / written
             | FILE_HANDLE_NOT_FOUND     | No stored blob for the handle
-------------|---------------------------|------------------------------------------
Persistence  | BATCH_PERSISTENCE_FAILED  | Atomic batch insert failed
-------------|---------------------------|------------------------------------------
Ingestion    | UNSUPPORTED_FORMAT        | Filename extension has no RowCodec
             | SOURCE_DECODE_FAILED      | Source container unreadable (not a row)
"""

from __future__ import annotations


class TxnImportError(Exception):
    """
    Base exception for all import pipeline errors.

    All subclasses must have a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "TXN_IMPORT_ERROR"


# Job-related exceptions


class JobError(TxnImportError):
    """Base exception for import job errors."""

    code: str = "JOB_ERROR"


class JobNotFoundError(JobError):
    """Import job with the given id does not exist."""

    code: str = "JOB_NOT_FOUND"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Import job not found: {job_id}")


class InvalidTransitionError(JobError):
    """Requested operation is not legal from the job's current status."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, job_id: str, current_status: str, operation: str):
        self.job_id = job_id
        self.current_status = current_status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} import job {job_id} in status {current_status}"
        )


class ProgressRegressionError(InvalidTransitionError):
    """Progress counters would decrease or exceed the known total."""

    code: str = "PROGRESS_REGRESSION"

    def __init__(self, job_id: str, current_status: str, detail: str):
        self.detail = detail
        super().__init__(job_id, current_status, "record progress")
        self.args = (f"Invalid progress for import job {job_id}: {detail}",)


# Concurrency-related exceptions


class ConcurrencyError(TxnImportError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class ConcurrentModificationError(ConcurrencyError):
    """Optimistic version check failed: the job was modified by another writer."""

    code: str = "CONCURRENT_MODIFICATION"

    def __init__(self, job_id: str, expected_version: int):
        self.job_id = job_id
        self.expected_version = expected_version
        super().__init__(
            f"Import job {job_id} was modified concurrently "
            f"(expected version {expected_version})"
        )


class AlreadyRunningError(ConcurrencyError):
    """Execution lease for the job is held by another run."""

    code: str = "ALREADY_RUNNING"

    def __init__(self, job_id: str, owner: str | None = None):
        self.job_id = job_id
        self.owner = owner
        msg = f"Import job {job_id} is already running"
        if owner:
            msg += f" (lease owner {owner})"
        super().__init__(msg)


class AlreadyScheduledError(ConcurrencyError):
    """Job id is already queued or running in the scheduler."""

    code: str = "ALREADY_SCHEDULED"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Import job {job_id} is already scheduled")


# Storage-related exceptions


class StorageError(TxnImportError):
    """Base exception for file storage errors."""

    code: str = "STORAGE_ERROR"


class StorageUnavailableError(StorageError):
    """File storage could not be reached, read, or written."""

    code: str = "STORAGE_UNAVAILABLE"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"File storage unavailable: {reason}")


class FileHandleNotFoundError(StorageError):
    """No stored file exists for the given handle."""

    code: str = "FILE_HANDLE_NOT_FOUND"

    def __init__(self, handle: str):
        self.handle = handle
        super().__init__(f"No stored file for handle: {handle}")


# Persistence-related exceptions


class PersistenceError(TxnImportError):
    """Base exception for record persistence errors."""

    code: str = "PERSISTENCE_ERROR"


class BatchPersistenceError(PersistenceError):
    """An atomic batch insert of transactions failed."""

    code: str = "BATCH_PERSISTENCE_FAILED"

    def __init__(self, job_id: str, batch_size: int, reason: str):
        self.job_id = job_id
        self.batch_size = batch_size
        self.reason = reason
        super().__init__(
            f"Failed to persist batch of {batch_size} row(s) "
            f"for import job {job_id}: {reason}"
        )


# Ingestion-related exceptions


class IngestionError(TxnImportError):
    """Base exception for source file errors that are not row-level."""

    code: str = "INGESTION_ERROR"


class UnsupportedFormatError(IngestionError):
    """No RowCodec is registered for the file's format."""

    code: str = "UNSUPPORTED_FORMAT"

    def __init__(self, filename: str, supported: tuple[str, ...]):
        self.filename = filename
        self.supported = supported
        super().__init__(
            f"Unsupported file format for {filename!r}. "
            f"Supported: {', '.join(supported)}"
        )


class SourceDecodeError(IngestionError):
    """The source container itself cannot be read (e.g. corrupt workbook)."""

    code: str = "SOURCE_DECODE_FAILED"

    def __init__(self, source_format: str, reason: str):
        self.source_format = source_format
        self.reason = reason
        super().__init__(f"Cannot read {source_format} source: {reason}")
