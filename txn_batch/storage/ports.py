"""
Collaborator protocols consumed by the import pipeline.

Contract:
    ``FileStorage``            -- content-addressable blob store.
    ``JobRepository``          -- transactional, versioned job store.
    ``TransactionRepository``  -- atomic per-call batch insert of parsed rows.
    ``EventSink``              -- best-effort notification channel.

Architecture:
    txn_batch/storage.  Implementations live beside this module
    (``file_storage``, ``repositories``, ``memory``, ``events``); services
    depend only on these protocols.

Failure modes:
    - FileStorage raises StorageUnavailableError / FileHandleNotFoundError.
    - JobRepository raises JobNotFoundError / ConcurrentModificationError.
    - TransactionRepository raises BatchPersistenceError; a failed
      ``insert_batch`` leaves no row of that batch behind.
    - EventSink may raise anything; callers go through ``publish_safely``.
"""

from __future__ import annotations

from typing import Any, BinaryIO, Protocol, Sequence, runtime_checkable
from uuid import UUID

from txn_batch.domain.types import ImportJob, ImportJobStatus
from txn_ingestion.domain.types import Transaction


@runtime_checkable
class FileStorage(Protocol):
    """Stores uploaded files and hands back readable byte streams."""

    def put(self, data: bytes) -> str:
        """Store ``data`` and return its handle.  Same bytes, same handle."""
        ...

    def open_read(self, handle: str) -> BinaryIO:
        """Open a stored file for reading.  The caller closes the stream."""
        ...


@runtime_checkable
class JobRepository(Protocol):
    """Versioned persistence of ImportJob snapshots."""

    def create(self, job: ImportJob) -> ImportJob:
        ...

    def get(self, job_id: UUID) -> ImportJob:
        ...

    def compare_and_swap(self, job: ImportJob, expected_version: int) -> ImportJob:
        """Write ``job`` only if the stored version equals ``expected_version``."""
        ...

    def list_by_status(self, status: ImportJobStatus) -> tuple[ImportJob, ...]:
        """Jobs in ``status``, oldest first."""
        ...


@runtime_checkable
class TransactionRepository(Protocol):
    """Batch persistence of parsed transactions."""

    def insert_batch(self, job_id: UUID, records: Sequence[Transaction]) -> int:
        """Insert all records atomically; returns the number inserted."""
        ...

    def list_for_job(self, job_id: UUID) -> tuple[Transaction, ...]:
        """All persisted transactions for a job, in row order."""
        ...


@runtime_checkable
class EventSink(Protocol):
    """Fire-and-forget event publication."""

    def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        ...
