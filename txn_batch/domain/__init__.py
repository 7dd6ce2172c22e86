"""
txn_batch.domain -- Pure types and the job state machine.

Types are frozen dataclasses with ZERO I/O; the state machine performs its
writes only through the JobRepository it is given.
"""

from txn_batch.domain.state_machine import (
    ALLOWED_TRANSITIONS,
    JobStateMachine,
    can_transition,
)
from txn_batch.domain.types import (
    TERMINAL_STATUSES,
    CancelOutcome,
    ExecutionLease,
    ImportJob,
    ImportJobSnapshot,
    ImportJobStatus,
    ImportRunResult,
    JobErrorItem,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "CancelOutcome",
    "ExecutionLease",
    "ImportJob",
    "ImportJobSnapshot",
    "ImportJobStatus",
    "ImportRunResult",
    "JobErrorItem",
    "JobStateMachine",
    "TERMINAL_STATUSES",
    "can_transition",
]
