"""
Pytest configuration and shared fixtures for the import pipeline tests.

Database tests run against in-memory SQLite (StaticPool, one shared
connection) built through ``txn_kernel.db.engine.build_engine``.  Nothing
here needs an external server.
"""

import json
import logging
import threading
from datetime import datetime, timezone
from io import StringIO
from uuid import uuid4

import pytest

from txn_batch.domain.types import ImportJob, ImportJobStatus
from txn_kernel.db.engine import (
    build_engine,
    create_tables,
    drop_tables,
    make_session_factory,
)
from txn_kernel.domain.clock import DeterministicClock
from txn_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)


# =============================================================================
# Logging fixtures
# =============================================================================


LOGGER_ROOT = "txn_kernel"


@pytest.fixture(autouse=True, scope="session")
def _json_logging_to_buffer():
    """Route pipeline logs to a throwaway buffer instead of stderr."""
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _no_leftover_run_context():
    LogContext.clear()
    yield
    LogContext.clear()


class _JsonRecords(logging.Handler):
    """Keeps every formatted record, parsed back into a dict."""

    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.setFormatter(StructuredFormatter())
        self.records: list[dict] = []
        self._guard = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        parsed = json.loads(self.format(record))
        with self._guard:
            self.records.append(parsed)

    def snapshot(self) -> list[dict]:
        with self._guard:
            return list(self.records)


@pytest.fixture
def captured_logs():
    """Pipeline log records (as dicts) emitted during the test, from any thread.

    Call the fixture value to get the records seen so far::

        executor.execute(job_id)
        assert any(r["message"] == "import_job_completed" for r in captured_logs())
    """
    sink = _JsonRecords()
    pipeline_logger = logging.getLogger(LOGGER_ROOT)
    saved_level = pipeline_logger.level
    pipeline_logger.setLevel(logging.DEBUG)
    pipeline_logger.addHandler(sink)
    yield sink.snapshot
    pipeline_logger.removeHandler(sink)
    pipeline_logger.setLevel(saved_level)


# =============================================================================
# Clock fixtures
# =============================================================================


@pytest.fixture
def deterministic_clock():
    """Clock fixed at 2024-01-01T12:00:00Z; advance it explicitly."""
    return DeterministicClock(datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine():
    """In-memory SQLite engine with every pipeline table created."""
    eng = build_engine("sqlite://")
    create_tables(eng)
    yield eng
    drop_tables(eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


# =============================================================================
# Domain fixtures
# =============================================================================


@pytest.fixture
def make_job(deterministic_clock):
    """Build a PENDING ImportJob snapshot (not persisted)."""

    def _make(**overrides) -> ImportJob:
        values = dict(
            job_id=uuid4(),
            file_handle="0" * 64,
            filename="statement.csv",
            source_format="csv",
            status=ImportJobStatus.PENDING,
            created_at=deterministic_clock.now(),
        )
        values.update(overrides)
        return ImportJob(**values)

    return _make
