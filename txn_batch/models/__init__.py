"""
txn_batch.models -- ORM models for import pipeline persistence.

Architecture: txn_batch/models. Imports from txn_kernel.db.base only.
"""

from txn_batch.models.imports import (
    ExecutionLeaseModel,
    ImportJobModel,
    TransactionModel,
)

__all__ = [
    "ExecutionLeaseModel",
    "ImportJobModel",
    "TransactionModel",
]
