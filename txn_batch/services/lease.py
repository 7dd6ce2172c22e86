"""
Execution leases: at most one executor run per job id.

Contract:
    ``acquire(job_id, owner)`` returns a new ExecutionLease or raises
    AlreadyRunningError when any lease for the job exists.
    ``heartbeat(lease)`` refreshes ``heartbeat_at`` and returns the new
    lease, or None when the lease is no longer held (it was reclaimed).
    ``release(lease)`` drops the lease if still held by that acquisition.
    ``find_stale(now, timeout_seconds)`` lists leases whose heartbeat is
    older than the timeout.
    ``reclaim(lease)`` drops a stale lease only if it has not been
    heartbeated since it was found; returns whether it was dropped.

Invariants enforced:
    - Leases are matched by ``(job_id, token)``: a run whose lease was
      reclaimed can neither refresh nor release its successor's lease.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Protocol, runtime_checkable
from uuid import UUID, uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from txn_batch.domain.types import ExecutionLease
from txn_batch.models import ExecutionLeaseModel
from txn_kernel.db.engine import session_scope
from txn_kernel.domain.clock import Clock, SystemClock
from txn_kernel.exceptions import AlreadyRunningError
from txn_kernel.logging_config import get_logger

logger = get_logger("batch.lease")


@runtime_checkable
class LeaseManager(Protocol):
    """Per-job mutual exclusion for executor runs."""

    def acquire(self, job_id: UUID, owner: str) -> ExecutionLease:
        ...

    def heartbeat(self, lease: ExecutionLease) -> ExecutionLease | None:
        ...

    def release(self, lease: ExecutionLease) -> bool:
        ...

    def find_stale(self, now: datetime, timeout_seconds: float) -> tuple[ExecutionLease, ...]:
        ...

    def reclaim(self, lease: ExecutionLease) -> bool:
        ...


class InMemoryLeaseManager:
    """Leases in a dict guarded by a lock.  Scope: one process."""

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._leases: dict[UUID, ExecutionLease] = {}
        self._lock = threading.Lock()

    def acquire(self, job_id: UUID, owner: str) -> ExecutionLease:
        with self._lock:
            held = self._leases.get(job_id)
            if held is not None:
                raise AlreadyRunningError(str(job_id), held.owner)
            now = self._clock.now()
            lease = ExecutionLease(
                job_id=job_id, owner=owner, token=uuid4(),
                acquired_at=now, heartbeat_at=now,
            )
            self._leases[job_id] = lease
        logger.debug("lease_acquired", extra={"job_id": str(job_id), "owner": owner})
        return lease

    def heartbeat(self, lease: ExecutionLease) -> ExecutionLease | None:
        with self._lock:
            held = self._leases.get(lease.job_id)
            if held is None or held.token != lease.token:
                return None
            refreshed = replace(held, heartbeat_at=self._clock.now())
            self._leases[lease.job_id] = refreshed
            return refreshed

    def release(self, lease: ExecutionLease) -> bool:
        with self._lock:
            held = self._leases.get(lease.job_id)
            if held is None or held.token != lease.token:
                return False
            del self._leases[lease.job_id]
        logger.debug("lease_released", extra={"job_id": str(lease.job_id)})
        return True

    def find_stale(self, now: datetime, timeout_seconds: float) -> tuple[ExecutionLease, ...]:
        cutoff = now - timedelta(seconds=timeout_seconds)
        with self._lock:
            return tuple(
                lease for lease in self._leases.values()
                if lease.heartbeat_at < cutoff
            )

    def reclaim(self, lease: ExecutionLease) -> bool:
        with self._lock:
            held = self._leases.get(lease.job_id)
            if held is None or held != lease:
                return False
            del self._leases[lease.job_id]
        return True

    def is_held(self, job_id: UUID) -> bool:
        with self._lock:
            return job_id in self._leases


class SqlAlchemyLeaseManager:
    """Leases as rows of ``execution_leases``; UNIQUE(job_id) is the lock."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    def acquire(self, job_id: UUID, owner: str) -> ExecutionLease:
        now = self._clock.now()
        lease = ExecutionLease(
            job_id=job_id, owner=owner, token=uuid4(),
            acquired_at=now, heartbeat_at=now,
        )
        try:
            with session_scope(self._session_factory) as session:
                session.add(ExecutionLeaseModel.from_dto(lease))
        except IntegrityError:
            with session_scope(self._session_factory) as session:
                holder = session.scalar(
                    select(ExecutionLeaseModel.owner)
                    .where(ExecutionLeaseModel.job_id == job_id)
                )
            raise AlreadyRunningError(str(job_id), holder) from None
        logger.debug("lease_acquired", extra={"job_id": str(job_id), "owner": owner})
        return lease

    def heartbeat(self, lease: ExecutionLease) -> ExecutionLease | None:
        now = self._clock.now()
        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(ExecutionLeaseModel)
                .where(
                    ExecutionLeaseModel.job_id == lease.job_id,
                    ExecutionLeaseModel.token == lease.token,
                )
                .values(heartbeat_at=now)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount != 1:
            return None
        return replace(lease, heartbeat_at=now)

    def release(self, lease: ExecutionLease) -> bool:
        with session_scope(self._session_factory) as session:
            result = session.execute(
                delete(ExecutionLeaseModel)
                .where(
                    ExecutionLeaseModel.job_id == lease.job_id,
                    ExecutionLeaseModel.token == lease.token,
                )
                .execution_options(synchronize_session=False)
            )
        released = result.rowcount == 1
        if released:
            logger.debug("lease_released", extra={"job_id": str(lease.job_id)})
        return released

    def find_stale(self, now: datetime, timeout_seconds: float) -> tuple[ExecutionLease, ...]:
        cutoff = now - timedelta(seconds=timeout_seconds)
        with session_scope(self._session_factory) as session:
            rows = session.scalars(
                select(ExecutionLeaseModel)
                .where(ExecutionLeaseModel.heartbeat_at < cutoff)
                .order_by(ExecutionLeaseModel.heartbeat_at)
            ).all()
            return tuple(row.to_dto() for row in rows)

    def reclaim(self, lease: ExecutionLease) -> bool:
        with session_scope(self._session_factory) as session:
            result = session.execute(
                delete(ExecutionLeaseModel)
                .where(
                    ExecutionLeaseModel.job_id == lease.job_id,
                    ExecutionLeaseModel.token == lease.token,
                    ExecutionLeaseModel.heartbeat_at == lease.heartbeat_at,
                )
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1
