"""
Engine and session construction for pipeline persistence.

Contract:
    ``build_engine(url)`` returns an Engine usable from several worker
    threads at once.  ``make_session_factory(engine)`` returns the
    sessionmaker every repository and lease manager is built with.
    ``session_scope(factory)`` wraps one unit of work.

Architecture: txn_kernel/db.  ``create_tables`` imports txn_batch.models so
    the metadata is complete; nothing else here reaches outward.

Invariants enforced:
    - Sessions use expire_on_commit=False: repositories convert rows to
      DTOs after commit without a reload.
    - session_scope() commits on normal exit and rolls back on any
      exception, which is re-raised.
    - SQLite connections enforce foreign keys and wait on a locked
      database instead of failing immediately; file databases use WAL so
      readers (status polls) do not block the writing worker.
"""

from collections.abc import Callable, Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from txn_kernel.logging_config import get_logger

logger = get_logger("db.engine")

SQLITE_BUSY_TIMEOUT_MS = 5000

_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


def build_engine(database_url: str, echo: bool = False, pool_size: int = 10) -> Engine:
    """Create an engine for ``database_url``.

    In-memory SQLite gets one connection shared by every thread
    (StaticPool); otherwise each thread would see its own empty database.
    """
    if not database_url.startswith("sqlite"):
        engine = create_engine(
            database_url, echo=echo, pool_size=pool_size, pool_pre_ping=True,
        )
    else:
        in_memory = database_url in _MEMORY_URLS
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if in_memory:
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, echo=echo, **kwargs)
        _install_sqlite_pragmas(engine, wal=not in_memory)

    logger.info(
        "engine_built",
        extra={"dialect": engine.dialect.name, "pool": type(engine.pool).__name__},
    )
    return engine


def _install_sqlite_pragmas(engine: Engine, wal: bool) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
            if wal:
                cursor.execute("PRAGMA journal_mode=WAL")
        finally:
            cursor.close()


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def session_scope(session_factory: Callable[[], Session]) -> Iterator[Session]:
    """One unit of work: commit on success, rollback and re-raise on error."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.debug("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables(engine: Engine) -> None:
    """Create every pipeline table that does not exist yet."""
    from txn_kernel.db.base import Base
    import txn_batch.models  # noqa: F401  (registers ORM tables)

    Base.metadata.create_all(engine)


def drop_tables(engine: Engine) -> None:
    from txn_kernel.db.base import Base

    Base.metadata.drop_all(engine)
