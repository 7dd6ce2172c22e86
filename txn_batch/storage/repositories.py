"""
SQLAlchemy repositories for import jobs and transactions.

Contract:
    Each public method runs in its own ``session_scope`` (commit or
    rollback), so repositories are safe to share between worker threads:
    sessions are never shared.

Invariants enforced:
    - compare_and_swap is a single conditional UPDATE
      (``WHERE id = :id AND version = :expected``); a zero rowcount is
      either JobNotFoundError or ConcurrentModificationError.
    - insert_batch is one transaction: all rows of the batch or none.
"""

from __future__ import annotations

from typing import Callable, Sequence
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from txn_batch.domain.types import ImportJob, ImportJobStatus
from txn_batch.models import ImportJobModel, TransactionModel
from txn_ingestion.domain.types import Transaction
from txn_kernel.db.engine import session_scope
from txn_kernel.exceptions import (
    BatchPersistenceError,
    ConcurrentModificationError,
    JobNotFoundError,
)
from txn_kernel.logging_config import get_logger

logger = get_logger("batch.repositories")


class SqlAlchemyJobRepository:
    """Versioned ImportJob persistence on the ``import_jobs`` table."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def create(self, job: ImportJob) -> ImportJob:
        with session_scope(self._session_factory) as session:
            session.add(ImportJobModel.from_dto(job))
        logger.info(
            "import_job_created",
            extra={
                "job_id": str(job.job_id),
                "source_filename": job.filename,
                "source_format": job.source_format,
            },
        )
        return job

    def get(self, job_id: UUID) -> ImportJob:
        with session_scope(self._session_factory) as session:
            model = session.get(ImportJobModel, job_id)
            if model is None:
                raise JobNotFoundError(str(job_id))
            return model.to_dto()

    def list_by_status(self, status: ImportJobStatus) -> tuple[ImportJob, ...]:
        """Jobs in ``status``, oldest first."""
        with session_scope(self._session_factory) as session:
            rows = session.scalars(
                select(ImportJobModel)
                .where(ImportJobModel.status == status.value)
                .order_by(ImportJobModel.created_at, ImportJobModel.id)
            ).all()
            return tuple(row.to_dto() for row in rows)

    def compare_and_swap(self, job: ImportJob, expected_version: int) -> ImportJob:
        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(ImportJobModel)
                .where(
                    ImportJobModel.id == job.job_id,
                    ImportJobModel.version == expected_version,
                )
                .values(**ImportJobModel.values_from_dto(job))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return job

            exists = session.scalar(
                select(ImportJobModel.id).where(ImportJobModel.id == job.job_id)
            )
        if exists is None:
            raise JobNotFoundError(str(job.job_id))
        raise ConcurrentModificationError(str(job.job_id), expected_version)


class SqlAlchemyTransactionRepository:
    """Atomic batch inserts on the ``import_transactions`` table."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def insert_batch(self, job_id: UUID, records: Sequence[Transaction]) -> int:
        if not records:
            return 0
        try:
            with session_scope(self._session_factory) as session:
                session.add_all(TransactionModel.from_dto(r) for r in records)
        except SQLAlchemyError as exc:
            raise BatchPersistenceError(str(job_id), len(records), str(exc)) from exc
        return len(records)

    def list_for_job(self, job_id: UUID) -> tuple[Transaction, ...]:
        with session_scope(self._session_factory) as session:
            rows = session.scalars(
                select(TransactionModel)
                .where(TransactionModel.import_job_id == job_id)
                .order_by(TransactionModel.row_number)
            ).all()
            return tuple(row.to_dto() for row in rows)
