"""
ORM models for import pipeline persistence.

Contract:
    ImportJobModel, TransactionModel and ExecutionLeaseModel persist job
    state, parsed transactions and per-job execution leases.  Each has
    ``to_dto()`` / ``from_dto()`` round-trip methods.

Architecture: txn_batch/models. Imports from txn_kernel.db.base only.

Invariants enforced:
    - ``version`` on ImportJobModel is the compare-and-swap token; only
      repositories write it, always as ``expected + 1``.
    - ``(import_job_id, row_number)`` is UNIQUE on TransactionModel: a row
      is persisted at most once per job.
    - ``job_id`` is UNIQUE on ExecutionLeaseModel: at most one lease per job.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    JSON,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from txn_kernel.db.base import Base, DecimalString, TimestampMixin, UTCDateTime, UUIDString

if TYPE_CHECKING:
    from txn_batch.domain.types import ExecutionLease, ImportJob
    from txn_ingestion.domain.types import Transaction


class ImportJobModel(TimestampMixin, Base):
    """Persistent import job record."""

    __tablename__ = "import_jobs"

    __table_args__ = (
        Index("ix_import_jobs_status", "status"),
        Index("ix_import_jobs_created_at", "created_at"),
    )

    file_handle: Mapped[str] = mapped_column(String(200), nullable=False)
    filename: Mapped[str] = mapped_column(String(500), nullable=False)
    source_format: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    total_rows: Mapped[int | None] = mapped_column(Integer, nullable=True)
    processed_rows: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_rows: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_summary: Mapped[list | None] = mapped_column(JSON, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    def to_dto(self) -> ImportJob:
        from txn_batch.domain.types import ImportJob, ImportJobStatus, JobErrorItem

        return ImportJob(
            job_id=self.id,
            file_handle=self.file_handle,
            filename=self.filename,
            source_format=self.source_format,
            status=ImportJobStatus(self.status),
            created_at=self.created_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
            total_rows=self.total_rows,
            processed_rows=self.processed_rows,
            failed_rows=self.failed_rows,
            error_summary=tuple(
                JobErrorItem(row_number=item["row_number"], reason=item["reason"])
                for item in (self.error_summary or ())
            ),
            failure_reason=self.failure_reason,
            version=self.version,
        )

    @classmethod
    def from_dto(cls, dto: ImportJob) -> ImportJobModel:
        model = cls(id=dto.job_id, created_at=dto.created_at)
        model.apply_dto(dto)
        return model

    def apply_dto(self, dto: ImportJob) -> None:
        """Copy every mutable field of ``dto`` onto this row."""
        for key, value in self.values_from_dto(dto).items():
            setattr(self, key, value)

    @staticmethod
    def values_from_dto(dto: ImportJob) -> dict:
        """Column values for ``dto``, excluding id and created_at."""
        return {
            "file_handle": dto.file_handle,
            "filename": dto.filename,
            "source_format": dto.source_format,
            "status": dto.status.value,
            "started_at": dto.started_at,
            "finished_at": dto.finished_at,
            "total_rows": dto.total_rows,
            "processed_rows": dto.processed_rows,
            "failed_rows": dto.failed_rows,
            "error_summary": [item.to_dict() for item in dto.error_summary] or None,
            "failure_reason": dto.failure_reason,
            "version": dto.version,
        }


class TransactionModel(Base):
    """One parsed transaction row.  Immutable after insert."""

    __tablename__ = "import_transactions"

    __table_args__ = (
        UniqueConstraint("import_job_id", "row_number", name="uq_import_transactions_job_row"),
        Index("ix_import_transactions_date", "transaction_date"),
    )

    import_job_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("import_jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    row_number: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(DecimalString(), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    def to_dto(self) -> Transaction:
        from txn_ingestion.domain.types import Transaction

        return Transaction(
            import_job_id=self.import_job_id,
            row_number=self.row_number,
            transaction_date=self.transaction_date,
            amount=Decimal(self.amount).quantize(Decimal("0.01")),
            description=self.description,
            category=self.category,
            currency=self.currency,
        )

    @classmethod
    def from_dto(cls, dto: Transaction) -> TransactionModel:
        return cls(
            import_job_id=dto.import_job_id,
            row_number=dto.row_number,
            transaction_date=dto.transaction_date,
            amount=dto.amount,
            description=dto.description,
            category=dto.category,
            currency=dto.currency,
        )


class ExecutionLeaseModel(Base):
    """Execution lease row: present while a run holds the job."""

    __tablename__ = "execution_leases"

    __table_args__ = (
        Index("ix_execution_leases_heartbeat_at", "heartbeat_at"),
    )

    job_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False, unique=True)
    owner: Mapped[str] = mapped_column(String(200), nullable=False)
    token: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    heartbeat_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    def to_dto(self) -> ExecutionLease:
        from txn_batch.domain.types import ExecutionLease

        return ExecutionLease(
            job_id=self.job_id,
            owner=self.owner,
            token=self.token,
            acquired_at=self.acquired_at,
            heartbeat_at=self.heartbeat_at,
        )

    @classmethod
    def from_dto(cls, dto: ExecutionLease) -> ExecutionLeaseModel:
        return cls(
            job_id=dto.job_id,
            owner=dto.owner,
            token=dto.token,
            acquired_at=dto.acquired_at,
            heartbeat_at=dto.heartbeat_at,
        )
