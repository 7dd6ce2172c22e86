"""Services for the import pipeline (execution, scheduling, recovery, coordination)."""

from txn_batch.services.cancellation import CancellationToken
from txn_batch.services.coordinator import ImportCoordinator
from txn_batch.services.executor import BatchExecutor
from txn_batch.services.lease import (
    InMemoryLeaseManager,
    LeaseManager,
    SqlAlchemyLeaseManager,
)
from txn_batch.services.recovery import LeaseRecoverySweeper
from txn_batch.services.scheduler import JobScheduler

__all__ = [
    "BatchExecutor",
    "CancellationToken",
    "ImportCoordinator",
    "InMemoryLeaseManager",
    "JobScheduler",
    "LeaseManager",
    "LeaseRecoverySweeper",
    "SqlAlchemyLeaseManager",
]
