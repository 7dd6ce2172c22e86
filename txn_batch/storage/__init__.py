"""
txn_batch.storage -- Collaborator ports and their implementations.

Architecture: txn_batch/storage.  Services depend on ``ports``; the
orchestrator chooses SQLAlchemy or in-memory implementations.
"""

from txn_batch.storage.events import (
    LoggingEventSink,
    NullEventSink,
    RecordingEventSink,
    publish_safely,
)
from txn_batch.storage.file_storage import InMemoryFileStorage, LocalFileStorage
from txn_batch.storage.memory import InMemoryJobRepository, InMemoryTransactionRepository
from txn_batch.storage.ports import (
    EventSink,
    FileStorage,
    JobRepository,
    TransactionRepository,
)
from txn_batch.storage.repositories import (
    SqlAlchemyJobRepository,
    SqlAlchemyTransactionRepository,
)

__all__ = [
    "EventSink",
    "FileStorage",
    "InMemoryFileStorage",
    "InMemoryJobRepository",
    "InMemoryTransactionRepository",
    "JobRepository",
    "LocalFileStorage",
    "LoggingEventSink",
    "NullEventSink",
    "RecordingEventSink",
    "SqlAlchemyJobRepository",
    "SqlAlchemyTransactionRepository",
    "TransactionRepository",
    "publish_safely",
]
