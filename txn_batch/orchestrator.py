"""
ImportOrchestrator -- DI container for the import pipeline.

Contract:
    Wires repositories, file storage, lease manager, transformer,
    BatchExecutor factory, JobScheduler, LeaseRecoverySweeper and
    ImportCoordinator.  Single place where all pipeline dependencies are
    composed.

Architecture: txn_batch (top-level).  The canonical entry point for
    configuring and running imports.

Invariants enforced:
    - Clock injection: every service receives the same Clock.
    - One LeaseManager per orchestrator, owned by the scheduler and shared
      with the recovery sweeper.
"""

from __future__ import annotations

import time
from typing import Callable

from sqlalchemy.orm import Session

from txn_batch.services.coordinator import ImportCoordinator
from txn_batch.services.executor import BatchExecutor
from txn_batch.services.lease import (
    InMemoryLeaseManager,
    LeaseManager,
    SqlAlchemyLeaseManager,
)
from txn_batch.services.recovery import LeaseRecoverySweeper
from txn_batch.services.scheduler import JobScheduler
from txn_batch.storage.events import NullEventSink
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
from txn_config import get_active_config
from txn_config.schema import PipelineConfig
from txn_ingestion.domain.transformer import TransactionTransformer
from txn_kernel.db.engine import build_engine, create_tables, make_session_factory
from txn_kernel.domain.clock import Clock, SystemClock
from txn_kernel.logging_config import get_logger

logger = get_logger("batch.orchestrator")


class ImportOrchestrator:
    """DI container for the import pipeline.

    Contract:
        - ``from_config()`` wires SQLAlchemy persistence and file storage.
        - ``in_memory()`` wires in-memory collaborators (tests, demos).
        - ``start()`` / ``stop()`` manage the worker pool and sweeper.
        - ``create_executor()`` returns a BatchExecutor for ad-hoc runs.

    Non-goals:
        - Does NOT start anything automatically -- caller decides.
    """

    def __init__(
        self,
        config: PipelineConfig,
        job_repository: JobRepository,
        transaction_repository: TransactionRepository,
        file_storage: FileStorage,
        lease_manager: LeaseManager,
        clock: Clock | None = None,
        event_sink: EventSink | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._jobs = job_repository
        self._transactions = transaction_repository
        self._storage = file_storage
        self._lease_manager = lease_manager
        self._clock = clock or SystemClock()
        self._events = event_sink or NullEventSink()
        self._sleep = sleep
        self._transformer = TransactionTransformer(config.transform)

        self._scheduler = JobScheduler(
            executor_factory=self.create_executor,
            job_repository=job_repository,
            lease_manager=lease_manager,
            max_workers=config.max_workers,
            clock=self._clock,
        )
        self._sweeper = LeaseRecoverySweeper(
            lease_manager=lease_manager,
            job_repository=job_repository,
            scheduler=self._scheduler,
            clock=self._clock,
            lease_timeout_seconds=config.lease_timeout_seconds,
            sweep_interval_seconds=config.sweep_interval_seconds,
        )
        self._coordinator = ImportCoordinator(
            job_repository=job_repository,
            transaction_repository=transaction_repository,
            file_storage=file_storage,
            scheduler=self._scheduler,
            clock=self._clock,
        )

    # -------------------------------------------------------------------------
    # Factories
    # -------------------------------------------------------------------------

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig | None = None,
        session_factory: Callable[[], Session] | None = None,
        storage: FileStorage | None = None,
        clock: Clock | None = None,
        event_sink: EventSink | None = None,
    ) -> ImportOrchestrator:
        """Create a fully wired orchestrator backed by SQLAlchemy.

        Args:
            config: Pipeline configuration.  If None, ``get_active_config()``.
            session_factory: Optional session factory.  If None, an engine is
                built from ``config.database_url`` and the tables created.
            storage: Optional file storage.  If None, a LocalFileStorage at
                ``config.storage_root``.
            clock: Optional clock for deterministic testing.
            event_sink: Optional event sink (default: discard).

        Raises:
            ValueError: If neither a session factory nor ``database_url``,
                or neither a storage nor ``storage_root``, is available.
        """
        config = config or get_active_config()

        if session_factory is None:
            if not config.database_url:
                raise ValueError("database_url is required when no session_factory is given")
            engine = build_engine(config.database_url)
            create_tables(engine)
            session_factory = make_session_factory(engine)

        if storage is None:
            if not config.storage_root:
                raise ValueError("storage_root is required when no storage is given")
            storage = LocalFileStorage(config.storage_root)

        effective_clock = clock or SystemClock()
        logger.info(
            "orchestrator_configured",
            extra={"backend": "sqlalchemy", "max_workers": config.max_workers},
        )
        return cls(
            config=config,
            job_repository=SqlAlchemyJobRepository(session_factory),
            transaction_repository=SqlAlchemyTransactionRepository(session_factory),
            file_storage=storage,
            lease_manager=SqlAlchemyLeaseManager(session_factory, clock=effective_clock),
            clock=effective_clock,
            event_sink=event_sink,
        )

    @classmethod
    def in_memory(
        cls,
        config: PipelineConfig | None = None,
        clock: Clock | None = None,
        event_sink: EventSink | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> ImportOrchestrator:
        """Create an orchestrator with in-memory collaborators."""
        effective_clock = clock or SystemClock()
        return cls(
            config=config or PipelineConfig(),
            job_repository=InMemoryJobRepository(),
            transaction_repository=InMemoryTransactionRepository(),
            file_storage=InMemoryFileStorage(),
            lease_manager=InMemoryLeaseManager(effective_clock),
            clock=effective_clock,
            event_sink=event_sink,
            sleep=sleep,
        )

    # -------------------------------------------------------------------------
    # Executor
    # -------------------------------------------------------------------------

    def create_executor(self, lease_manager: LeaseManager | None = None) -> BatchExecutor:
        """Create a BatchExecutor wired with the orchestrator's dependencies."""
        return BatchExecutor(
            job_repository=self._jobs,
            transaction_repository=self._transactions,
            file_storage=self._storage,
            lease_manager=lease_manager or self._lease_manager,
            config=self._config,
            transformer=self._transformer,
            clock=self._clock,
            event_sink=self._events,
            sleep=self._sleep,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start workers, requeue PENDING jobs left from a previous process, start the sweeper."""
        self._scheduler.start()
        self._sweeper.requeue_pending()
        self._sweeper.start()

    def stop(self, timeout: float = 30.0) -> None:
        self._sweeper.stop(timeout=timeout)
        self._scheduler.stop(timeout=timeout)

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def config(self) -> PipelineConfig:
        return self._config

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def coordinator(self) -> ImportCoordinator:
        return self._coordinator

    @property
    def scheduler(self) -> JobScheduler:
        return self._scheduler

    @property
    def sweeper(self) -> LeaseRecoverySweeper:
        return self._sweeper

    @property
    def job_repository(self) -> JobRepository:
        return self._jobs

    @property
    def transaction_repository(self) -> TransactionRepository:
        return self._transactions

    @property
    def file_storage(self) -> FileStorage:
        return self._storage

    @property
    def lease_manager(self) -> LeaseManager:
        return self._lease_manager
