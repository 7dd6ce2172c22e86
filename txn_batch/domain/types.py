"""
txn_batch.domain.types -- Pure frozen dataclasses for import jobs.

ZERO I/O.  Frozen dataclasses with enum status fields and tuples for
immutable collections.

Invariants enforced:
    - Snapshots are immutable; every change produces a new ImportJob with
      ``version + 1`` (see JobStateMachine).
    - ``error_summary`` is a tuple, bounded by the executor.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID


# =============================================================================
# Status enums
# =============================================================================


class ImportJobStatus(str, Enum):
    """Import job lifecycle status."""

    PENDING = "pending"  # Created, file stored, not yet started
    PROCESSING = "processing"  # Executor run in progress
    COMPLETED = "completed"  # Every row persisted
    FAILED = "failed"  # Row errors or a job-fatal error
    CANCELLED = "cancelled"  # Cancelled before or during execution

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ImportJobStatus.COMPLETED,
    ImportJobStatus.FAILED,
    ImportJobStatus.CANCELLED,
})


class CancelOutcome(str, Enum):
    """What a cancel request did."""

    DEQUEUED = "dequeued"  # Removed from the queue and cancelled
    SIGNALLED = "signalled"  # Running; cancellation observed at next checkpoint
    CANCELLED = "cancelled"  # Not tracked by the scheduler; cancelled directly


# =============================================================================
# Job DTOs
# =============================================================================


@dataclass(frozen=True)
class JobErrorItem:
    """One itemized reason a job failed.  ``row_number == 0`` is job-level."""

    row_number: int
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"row_number": self.row_number, "reason": self.reason}


@dataclass(frozen=True)
class ImportJob:
    """Immutable snapshot of an import job.

    ``version`` is the optimistic-concurrency token: every persisted
    mutation increments it and is written only if the stored version still
    equals the one the writer read.
    """

    job_id: UUID
    file_handle: str
    filename: str
    source_format: str  # "csv" | "xlsx"
    status: ImportJobStatus
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    total_rows: int | None = None
    processed_rows: int = 0
    failed_rows: int = 0
    error_summary: tuple[JobErrorItem, ...] = ()
    failure_reason: str | None = None
    version: int = 1


@dataclass(frozen=True)
class ImportJobSnapshot:
    """Read model returned by ``ImportCoordinator.get_status``."""

    job_id: UUID
    status: ImportJobStatus
    processed_rows: int
    failed_rows: int
    total_rows: int | None
    error_summary: tuple[JobErrorItem, ...]
    failure_reason: str | None
    created_at: datetime
    started_at: datetime | None
    finished_at: datetime | None

    @classmethod
    def from_job(cls, job: ImportJob) -> ImportJobSnapshot:
        return cls(
            job_id=job.job_id,
            status=job.status,
            processed_rows=job.processed_rows,
            failed_rows=job.failed_rows,
            total_rows=job.total_rows,
            error_summary=job.error_summary,
            failure_reason=job.failure_reason,
            created_at=job.created_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
        )

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready dict for transport adapters."""

        def iso(value: datetime | None) -> str | None:
            return value.isoformat() if value is not None else None

        return {
            "job_id": str(self.job_id),
            "status": self.status.value,
            "processed_rows": self.processed_rows,
            "failed_rows": self.failed_rows,
            "total_rows": self.total_rows,
            "error_summary": [item.to_dict() for item in self.error_summary],
            "failure_reason": self.failure_reason,
            "created_at": iso(self.created_at),
            "started_at": iso(self.started_at),
            "finished_at": iso(self.finished_at),
        }


@dataclass(frozen=True)
class ImportRunResult:
    """Immutable result of one executor run.  Returned by ``BatchExecutor.execute()``."""

    job_id: UUID
    status: ImportJobStatus
    total_rows: int | None
    processed_rows: int
    failed_rows: int
    batches_committed: int = 0
    failure_reason: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: int = 0
    error_summary: tuple[JobErrorItem, ...] = field(default_factory=tuple)


# =============================================================================
# Execution lease
# =============================================================================


@dataclass(frozen=True)
class ExecutionLease:
    """Per-job mutual-exclusion token held for the whole of one executor run.

    ``token`` identifies one acquisition: heartbeat and release only act on
    the lease they were given, so a holder whose lease was reclaimed cannot
    disturb the next holder.
    """

    job_id: UUID
    owner: str
    token: UUID
    acquired_at: datetime
    heartbeat_at: datetime
