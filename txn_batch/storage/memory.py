"""
In-memory JobRepository and TransactionRepository.

Same contracts as the SQLAlchemy repositories, guarded by one lock each.
Used by tests and ``ImportOrchestrator.in_memory()``.
"""

from __future__ import annotations

import threading
from collections import Counter
from typing import Sequence
from uuid import UUID

from txn_batch.domain.types import ImportJob, ImportJobStatus
from txn_ingestion.domain.types import Transaction
from txn_kernel.exceptions import (
    BatchPersistenceError,
    ConcurrentModificationError,
    JobNotFoundError,
)


class InMemoryJobRepository:
    """Dict of job_id -> ImportJob with compare-and-swap under a lock."""

    def __init__(self) -> None:
        self._jobs: dict[UUID, ImportJob] = {}
        self._lock = threading.Lock()

    def create(self, job: ImportJob) -> ImportJob:
        with self._lock:
            if job.job_id in self._jobs:
                raise ValueError(f"Import job already exists: {job.job_id}")
            self._jobs[job.job_id] = job
        return job

    def get(self, job_id: UUID) -> ImportJob:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(str(job_id))
        return job

    def list_by_status(self, status: ImportJobStatus) -> tuple[ImportJob, ...]:
        with self._lock:
            jobs = [j for j in self._jobs.values() if j.status == status]
        return tuple(sorted(jobs, key=lambda j: (j.created_at, str(j.job_id))))

    def compare_and_swap(self, job: ImportJob, expected_version: int) -> ImportJob:
        with self._lock:
            current = self._jobs.get(job.job_id)
            if current is None:
                raise JobNotFoundError(str(job.job_id))
            if current.version != expected_version:
                raise ConcurrentModificationError(str(job.job_id), expected_version)
            self._jobs[job.job_id] = job
        return job


class InMemoryTransactionRepository:
    """Per-job row lists; a batch with a duplicate row number inserts nothing."""

    def __init__(self) -> None:
        self._rows: dict[UUID, dict[int, Transaction]] = {}
        self._lock = threading.Lock()

    def insert_batch(self, job_id: UUID, records: Sequence[Transaction]) -> int:
        if not records:
            return 0
        with self._lock:
            existing = self._rows.setdefault(job_id, {})
            counts = Counter(r.row_number for r in records)
            duplicates = sorted(n for n, c in counts.items() if c > 1 or n in existing)
            if duplicates:
                raise BatchPersistenceError(
                    str(job_id), len(records), f"duplicate row numbers {duplicates}",
                )
            for record in records:
                existing[record.row_number] = record
        return len(records)

    def list_for_job(self, job_id: UUID) -> tuple[Transaction, ...]:
        with self._lock:
            rows = self._rows.get(job_id, {})
            return tuple(rows[n] for n in sorted(rows))
