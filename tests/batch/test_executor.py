"""
Tests for txn_batch.services.executor -- one import run end to end.

Validates batching, checkpoints, row-error accounting, cancellation,
persistence retry, lease handling and job-fatal failures.

Uses the in-memory repositories, file storage and lease manager; SQL
persistence is covered in test_repositories.py and test_orchestrator.py.
The concurrent-dispatch tests also run against SQL leases on a file database.
"""

import threading
from io import BytesIO
from uuid import uuid4

import openpyxl
import pytest

from txn_batch.domain.state_machine import JobStateMachine
from txn_batch.domain.types import ImportJob, ImportJobStatus, JobErrorItem
from txn_batch.services.cancellation import CancellationToken
from txn_batch.services.executor import LEASE_LOST_REASON, BatchExecutor
from txn_batch.services.lease import InMemoryLeaseManager, SqlAlchemyLeaseManager
from txn_batch.storage.events import (
    IMPORT_CANCELLED,
    IMPORT_COMPLETED,
    IMPORT_FAILED,
    IMPORT_PROGRESS,
    IMPORT_STARTED,
    RecordingEventSink,
)
from txn_batch.storage.file_storage import InMemoryFileStorage
from txn_batch.storage.memory import InMemoryJobRepository, InMemoryTransactionRepository
from txn_batch.storage.repositories import SqlAlchemyJobRepository
from txn_config.schema import PipelineConfig
from txn_ingestion.domain.transformer import TransactionTransformer
from txn_kernel.db.engine import build_engine, create_tables, make_session_factory
from txn_kernel.exceptions import (
    AlreadyRunningError,
    BatchPersistenceError,
    InvalidTransitionError,
    JobNotFoundError,
)

HEADER = "Date,Description,Amount"


# =============================================================================
# Test collaborators
# =============================================================================


class FlakyTransactionRepository(InMemoryTransactionRepository):
    """Fails the first ``failures`` insert attempts."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    def insert_batch(self, job_id, records):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise BatchPersistenceError(str(job_id), len(records), "deadlock detected")
        return super().insert_batch(job_id, records)


class FailingAfterTransactionRepository(InMemoryTransactionRepository):
    """Accepts the first ``successes`` batches, then fails every insert."""

    def __init__(self, successes: int):
        super().__init__()
        self.successes = successes
        self.calls = 0

    def insert_batch(self, job_id, records):
        self.calls += 1
        if self.calls > self.successes:
            raise BatchPersistenceError(str(job_id), len(records), "disk full")
        return super().insert_batch(job_id, records)


class HookedTransactionRepository(InMemoryTransactionRepository):
    """Runs ``hook(job_id)`` before the first insert."""

    def __init__(self, hook):
        super().__init__()
        self._hook = hook
        self._fired = False

    def insert_batch(self, job_id, records):
        if not self._fired:
            self._fired = True
            self._hook(job_id)
        return super().insert_batch(job_id, records)


class LostLeaseManager(InMemoryLeaseManager):
    """Heartbeats are always refused, as if the lease had been reclaimed."""

    def heartbeat(self, lease):
        return None


class ExplodingTransformer:
    def transform(self, job_id, record):
        raise RuntimeError("transformer bug")


class CancelOnRowTransformer(TransactionTransformer):
    """Cancels ``token`` while transforming row ``row_number``."""

    def __init__(self, token, row_number):
        super().__init__()
        self._token = token
        self._row_number = row_number

    def transform(self, job_id, record):
        if record.row_number == self._row_number:
            self._token.cancel()
        return super().transform(job_id, record)


class ExplodingSink:
    def publish(self, event_type, payload):
        raise ConnectionError("broker down")


def _csv(*rows: str) -> bytes:
    return ("\n".join((HEADER,) + rows) + "\n").encode("utf-8")


def _valid_rows(count: int) -> list[str]:
    return [f"2024-01-{i:02d},Item {i},{i}.00" for i in range(1, count + 1)]


# =============================================================================
# Fixtures
# =============================================================================


class Harness:
    """In-memory collaborators plus helpers to create jobs and executors."""

    def __init__(self, clock, config=None, transactions=None, leases=None, event_sink=None):
        self.clock = clock
        self.config = config or PipelineConfig(batch_size=2, persist_backoff_seconds=0.1)
        self.jobs = InMemoryJobRepository()
        self.transactions = transactions or InMemoryTransactionRepository()
        self.storage = InMemoryFileStorage()
        self.leases = leases or InMemoryLeaseManager(clock)
        self.events = event_sink or RecordingEventSink()
        self.sleeps: list[float] = []

    def submit(self, data: bytes, filename: str = "statement.csv", source_format: str = "csv") -> ImportJob:
        return self.jobs.create(ImportJob(
            job_id=uuid4(),
            file_handle=self.storage.put(data),
            filename=filename,
            source_format=source_format,
            status=ImportJobStatus.PENDING,
            created_at=self.clock.now(),
        ))

    def executor(self, **overrides) -> BatchExecutor:
        kwargs = dict(
            job_repository=self.jobs,
            transaction_repository=self.transactions,
            file_storage=self.storage,
            lease_manager=self.leases,
            config=self.config,
            clock=self.clock,
            event_sink=self.events,
            owner="test-executor",
            sleep=self.sleeps.append,
        )
        kwargs.update(overrides)
        return BatchExecutor(**kwargs)


@pytest.fixture
def harness(deterministic_clock):
    return Harness(deterministic_clock)


# =============================================================================
# Successful runs
# =============================================================================


class TestSuccessfulRun:
    def test_all_rows_persisted_in_batches(self, harness):
        job = harness.submit(_csv(*_valid_rows(5)))
        result = harness.executor().execute(job.job_id)

        assert result.status == ImportJobStatus.COMPLETED
        assert (result.total_rows, result.processed_rows, result.failed_rows) == (5, 5, 0)
        assert result.batches_committed == 3
        assert result.error_summary == ()
        assert result.failure_reason is None

        rows = harness.transactions.list_for_job(job.job_id)
        assert [r.row_number for r in rows] == [1, 2, 3, 4, 5]
        assert rows[0].description == "Item 1"

        stored = harness.jobs.get(job.job_id)
        assert stored.status == ImportJobStatus.COMPLETED
        assert stored.started_at is not None
        assert stored.finished_at is not None

    def test_events_in_order(self, harness):
        job = harness.submit(_csv(*_valid_rows(5)))
        harness.executor().execute(job.job_id)

        types = harness.events.types()
        assert types[0] == IMPORT_STARTED
        assert types[-1] == IMPORT_COMPLETED
        assert types.count(IMPORT_PROGRESS) == 2
        final = harness.events.events[-1][1]
        assert final["processed_rows"] == 5
        assert final["status"] == "completed"

    def test_header_only_file_completes_empty(self, harness):
        job = harness.submit(_csv())
        result = harness.executor().execute(job.job_id)
        assert result.status == ImportJobStatus.COMPLETED
        assert result.total_rows == 0
        assert result.batches_committed == 0

    def test_cr_only_line_endings(self, harness):
        job = harness.submit(b"date,amount,description\r2024-01-01,1.00,A\r2024-01-02,2.00,B\r")
        result = harness.executor().execute(job.job_id)

        assert result.status == ImportJobStatus.COMPLETED
        assert (result.total_rows, result.processed_rows) == (2, 2)
        rows = harness.transactions.list_for_job(job.job_id)
        assert [r.description for r in rows] == ["A", "B"]

    def test_empty_file_completes_empty(self, harness):
        job = harness.submit(b"")
        result = harness.executor().execute(job.job_id)
        assert result.status == ImportJobStatus.COMPLETED
        assert result.total_rows == 0

    def test_xlsx_source(self, harness):
        wb = openpyxl.Workbook()
        ws = wb.active
        ws.append(("Transaction Date", "Memo", "Debit", "Credit"))
        ws.append(("2024-03-01", "Groceries", 54.2, None))
        ws.append(("2024-03-02", "Salary", None, 1500))
        buf = BytesIO()
        wb.save(buf)

        job = harness.submit(buf.getvalue(), filename="export.xlsx", source_format="xlsx")
        result = harness.executor().execute(job.job_id)

        assert result.status == ImportJobStatus.COMPLETED
        amounts = [str(r.amount) for r in harness.transactions.list_for_job(job.job_id)]
        assert amounts == ["-54.20", "1500.00"]

    def test_lease_released_after_run(self, harness):
        job = harness.submit(_csv(*_valid_rows(1)))
        harness.executor().execute(job.job_id)
        assert not harness.leases.is_held(job.job_id)

    def test_logs_bound_to_job(self, harness, captured_logs):
        job = harness.submit(_csv(*_valid_rows(3)))
        harness.executor().execute(job.job_id)

        logs = captured_logs()
        started = next(r for r in logs if r["message"] == "import_job_started")
        assert started["job_id"] == str(job.job_id)
        assert started["source_filename"] == "statement.csv"
        assert started["worker"] == "test-executor"
        persisted = [r for r in logs if r["message"] == "batch_persisted"]
        assert [(r["first_row"], r["last_row"]) for r in persisted] == [(1, 2), (3, 3)]

    def test_broken_event_sink_does_not_fail_import(self, deterministic_clock):
        harness = Harness(deterministic_clock, event_sink=ExplodingSink())
        job = harness.submit(_csv(*_valid_rows(3)))
        assert harness.executor().execute(job.job_id).status == ImportJobStatus.COMPLETED


# =============================================================================
# Row errors
# =============================================================================


class TestRowErrors:
    def test_partial_failure_fails_job(self, harness):
        job = harness.submit(_csv(
            "2024-01-01,Coffee,3.50",
            "yesterday,Tea,2.00",
            "2024-01-03,Cake,4.00",
            "2024-01-04,,abc",
            "2024-01-05,Juice,1.00",
        ))
        result = harness.executor().execute(job.job_id)

        assert result.status == ImportJobStatus.FAILED
        assert (result.total_rows, result.processed_rows, result.failed_rows) == (5, 3, 2)
        assert result.failure_reason == "2 of 5 row(s) failed"
        assert [item.row_number for item in result.error_summary] == [2, 4]
        assert "date" in result.error_summary[0].reason
        assert "amount" in result.error_summary[1].reason
        assert "description" in result.error_summary[1].reason
        assert [r.row_number for r in harness.transactions.list_for_job(job.job_id)] == [1, 3, 5]
        assert harness.events.types()[-1] == IMPORT_FAILED

    def test_decode_errors_counted(self, harness):
        job = harness.submit(_csv(
            "2024-01-01,Coffee,3.50",
            ",,",
            "2024-01-03,Cake",
        ))
        result = harness.executor().execute(job.job_id)
        assert result.failed_rows == 2
        reasons = [item.reason for item in result.error_summary]
        assert reasons == ["row is empty", "expected 3 column(s), found 2"]

    def test_error_summary_capped(self, deterministic_clock):
        harness = Harness(deterministic_clock, config=PipelineConfig(batch_size=2, error_summary_cap=2))
        job = harness.submit(_csv(*["bad,row,x"] * 5))
        result = harness.executor().execute(job.job_id)

        assert result.failed_rows == 5
        assert len(result.error_summary) == 2

    def test_progress_counts_committed_rows_only(self, deterministic_clock):
        harness = Harness(deterministic_clock, config=PipelineConfig(batch_size=3))
        job = harness.submit(_csv(
            "2024-01-01,A,1",
            "bad,B,2",
            "2024-01-03,C,3",
            "2024-01-04,D,4",
        ))
        harness.executor().execute(job.job_id)

        progress = [p for t, p in harness.events.events if t == IMPORT_PROGRESS]
        # Checkpoint after 3 rows read: two rows buffered, nothing committed yet
        assert (progress[0]["processed_rows"], progress[0]["failed_rows"]) == (0, 1)


# =============================================================================
# Cancellation
# =============================================================================


class TestCancellation:
    def test_cancel_before_start_reads_nothing(self, harness):
        job = harness.submit(_csv(*_valid_rows(1)))
        token = CancellationToken()
        token.cancel("user request")

        result = harness.executor().execute(job.job_id, cancel_token=token)

        assert result.status == ImportJobStatus.CANCELLED
        assert (result.processed_rows, result.failed_rows) == (0, 0)
        assert result.total_rows is None
        assert result.failure_reason == "user request"
        assert harness.transactions.list_for_job(job.job_id) == ()
        assert harness.events.types() == [IMPORT_STARTED, IMPORT_CANCELLED]
        assert not harness.leases.is_held(job.job_id)

    def test_cancel_observed_at_next_checkpoint(self, deterministic_clock):
        token = CancellationToken()
        harness = Harness(
            deterministic_clock,
            transactions=HookedTransactionRepository(lambda job_id: token.cancel("user request")),
        )
        job = harness.submit(_csv(*_valid_rows(5)))

        result = harness.executor().execute(job.job_id, cancel_token=token)

        assert result.status == ImportJobStatus.CANCELLED
        assert result.processed_rows == 2
        assert result.failure_reason == "user request"
        assert len(harness.transactions.list_for_job(job.job_id)) == 2
        assert harness.events.types()[-1] == IMPORT_CANCELLED

    def test_cancel_during_run_keeps_committed_batches(self, deterministic_clock):
        token = CancellationToken()
        harness = Harness(
            deterministic_clock,
            config=PipelineConfig(batch_size=3),
            transactions=HookedTransactionRepository(lambda job_id: token.cancel()),
        )
        job = harness.submit(_csv(*_valid_rows(3), "bad,x,1", *_valid_rows(2)))

        result = harness.executor().execute(job.job_id, cancel_token=token)

        assert result.status == ImportJobStatus.CANCELLED
        assert result.processed_rows == 3
        assert [r.row_number for r in harness.transactions.list_for_job(job.job_id)] == [1, 2, 3]

    def test_cancel_logged_with_discarded_rows(self, deterministic_clock, captured_logs):
        harness = Harness(deterministic_clock, config=PipelineConfig(batch_size=2))
        job = harness.submit(_csv("bad,x,1", "2024-01-02,B,2", "2024-01-03,C,3"))
        token = CancellationToken()

        harness.executor(transformer=CancelOnRowTransformer(token, 2)).execute(
            job.job_id, cancel_token=token,
        )

        cancelled = next(r for r in captured_logs() if r["message"] == "import_job_cancelled")
        assert cancelled["discarded_rows"] == 1
        assert cancelled["failed_rows"] == 1


# =============================================================================
# Persistence failures
# =============================================================================


class TestPersistence:
    def test_transient_failure_retried_with_backoff(self, deterministic_clock):
        harness = Harness(
            deterministic_clock,
            config=PipelineConfig(batch_size=2, persist_max_attempts=3, persist_backoff_seconds=0.1),
            transactions=FlakyTransactionRepository(failures=2),
        )
        job = harness.submit(_csv(*_valid_rows(2)))
        result = harness.executor().execute(job.job_id)

        assert result.status == ImportJobStatus.COMPLETED
        assert result.processed_rows == 2
        assert harness.sleeps == pytest.approx([0.1, 0.2])

    def test_retries_exhausted_fail_job(self, deterministic_clock, captured_logs):
        harness = Harness(
            deterministic_clock,
            config=PipelineConfig(batch_size=2, persist_max_attempts=2),
            transactions=FlakyTransactionRepository(failures=100),
        )
        job = harness.submit(_csv(*_valid_rows(3)))
        result = harness.executor().execute(job.job_id)

        assert result.status == ImportJobStatus.FAILED
        assert result.failure_reason == "persistence error: deadlock detected"
        assert result.processed_rows == 0
        assert result.error_summary[0] == JobErrorItem(0, "persistence error: deadlock detected")
        assert harness.transactions.attempts == 2
        assert any(r["message"] == "batch_persist_exhausted" for r in captured_logs())

    def test_committed_batches_survive_later_failure(self, deterministic_clock):
        harness = Harness(
            deterministic_clock,
            config=PipelineConfig(batch_size=2, persist_max_attempts=1),
            transactions=FailingAfterTransactionRepository(successes=1),
        )
        job = harness.submit(_csv(*_valid_rows(4)))
        result = harness.executor().execute(job.job_id)

        assert result.status == ImportJobStatus.FAILED
        assert result.processed_rows == 2
        assert len(harness.transactions.list_for_job(job.job_id)) == 2


# =============================================================================
# Job-fatal failures
# =============================================================================


class TestInfrastructureFailures:
    def test_missing_stored_file(self, harness, deterministic_clock):
        job = harness.jobs.create(ImportJob(
            job_id=uuid4(),
            file_handle="f" * 64,
            filename="gone.csv",
            source_format="csv",
            status=ImportJobStatus.PENDING,
            created_at=deterministic_clock.now(),
        ))
        result = harness.executor().execute(job.job_id)

        assert result.status == ImportJobStatus.FAILED
        assert result.failure_reason.startswith("infrastructure error:")
        assert result.error_summary[0].row_number == 0

    def test_corrupt_workbook(self, harness):
        job = harness.submit(b"not a workbook", filename="x.xlsx", source_format="xlsx")
        result = harness.executor().execute(job.job_id)
        assert result.status == ImportJobStatus.FAILED
        assert "infrastructure error" in result.failure_reason
        assert harness.events.types()[-1] == IMPORT_FAILED

    def test_unreadable_csv_header(self, harness):
        job = harness.submit(b"D\xffte,Description,Amount\n2024-01-01,A,1.00\n")
        result = harness.executor().execute(job.job_id)

        assert result.status == ImportJobStatus.FAILED
        assert result.failure_reason.startswith("infrastructure error:")
        assert "header row cannot be read" in result.failure_reason
        assert harness.transactions.list_for_job(job.job_id) == ()
        assert harness.events.types()[-1] == IMPORT_FAILED

    def test_unexpected_error_fails_job_and_propagates(self, harness):
        job = harness.submit(_csv(*_valid_rows(2)))
        with pytest.raises(RuntimeError, match="transformer bug"):
            harness.executor(transformer=ExplodingTransformer()).execute(job.job_id)

        stored = harness.jobs.get(job.job_id)
        assert stored.status == ImportJobStatus.FAILED
        assert stored.failure_reason == "unexpected error: transformer bug"
        assert not harness.leases.is_held(job.job_id)


# =============================================================================
# Leases and concurrent writers
# =============================================================================


class TestLeases:
    def test_already_running(self, harness):
        job = harness.submit(_csv(*_valid_rows(1)))
        harness.leases.acquire(job.job_id, "other-worker")

        with pytest.raises(AlreadyRunningError) as exc_info:
            harness.executor().execute(job.job_id)
        assert exc_info.value.owner == "other-worker"
        assert harness.jobs.get(job.job_id).status == ImportJobStatus.PENDING

    def test_not_pending(self, harness, deterministic_clock):
        job = harness.submit(_csv(*_valid_rows(1)))
        JobStateMachine(job, harness.jobs, deterministic_clock).cancel()

        with pytest.raises(InvalidTransitionError):
            harness.executor().execute(job.job_id)
        assert not harness.leases.is_held(job.job_id)

    def test_unknown_job(self, harness):
        job_id = uuid4()
        with pytest.raises(JobNotFoundError):
            harness.executor().execute(job_id)
        assert not harness.leases.is_held(job_id)

    def test_lost_lease_fails_job(self, deterministic_clock):
        harness = Harness(deterministic_clock)
        harness.leases = LostLeaseManager(deterministic_clock)
        job = harness.submit(_csv(*_valid_rows(5)))

        result = harness.executor().execute(job.job_id)

        assert result.status == ImportJobStatus.FAILED
        assert result.failure_reason == LEASE_LOST_REASON
        assert result.processed_rows == 2

    def test_job_finished_elsewhere_stops_run(self, deterministic_clock, captured_logs):
        harness = Harness(deterministic_clock)

        def cancel_elsewhere(job_id):
            job = harness.jobs.get(job_id)
            JobStateMachine(job, harness.jobs, deterministic_clock).cancel("cancelled elsewhere")

        harness.transactions = HookedTransactionRepository(cancel_elsewhere)
        job = harness.submit(_csv(*_valid_rows(5)))

        result = harness.executor().execute(job.job_id)

        assert result.status == ImportJobStatus.CANCELLED
        assert result.failure_reason == "cancelled elsewhere"
        assert harness.jobs.get(job.job_id).status == ImportJobStatus.CANCELLED
        assert any(r["message"] == "import_job_changed_externally" for r in captured_logs())


# =============================================================================
# Concurrent dispatch
# =============================================================================


@pytest.fixture(params=["memory", "sql"])
def racing_harness(request, deterministic_clock, tmp_path):
    """Harness whose lease manager is shared by two competing executors.

    The SQL variant uses a file database so each thread gets its own
    connection, as separate worker processes would.
    """
    if request.param == "memory":
        yield Harness(deterministic_clock)
        return

    engine = build_engine(f"sqlite:///{tmp_path / 'race.db'}")
    create_tables(engine)
    factory = make_session_factory(engine)
    harness = Harness(deterministic_clock, leases=SqlAlchemyLeaseManager(factory, deterministic_clock))
    harness.jobs = SqlAlchemyJobRepository(factory)
    yield harness
    engine.dispose()


class TestConcurrentDispatch:
    def test_one_run_per_job(self, racing_harness):
        harness = racing_harness
        inserting = threading.Event()
        resume = threading.Event()
        rejected_once = threading.Event()

        def hold_first_batch(job_id):
            inserting.set()
            resume.wait(timeout=10)

        harness.transactions = HookedTransactionRepository(hold_first_batch)
        job = harness.submit(_csv(*_valid_rows(3)))
        start = threading.Barrier(2)
        results, rejected = [], []

        def dispatch(owner):
            executor = harness.executor(owner=owner)
            start.wait(timeout=10)
            try:
                results.append((owner, executor.execute(job.job_id)))
            except AlreadyRunningError as exc:
                rejected.append((owner, exc))
                rejected_once.set()

        threads = [
            threading.Thread(target=dispatch, args=(owner,))
            for owner in ("worker-a", "worker-b")
        ]
        for t in threads:
            t.start()
        try:
            assert inserting.wait(timeout=10)
            assert rejected_once.wait(timeout=10)
            assert harness.jobs.get(job.job_id).status == ImportJobStatus.PROCESSING
            assert results == []
        finally:
            resume.set()
            for t in threads:
                t.join(timeout=10)

        assert len(results) == 1
        assert len(rejected) == 1
        (winner, result), (loser, exc) = results[0], rejected[0]
        assert winner != loser
        assert exc.owner == winner
        assert result.status == ImportJobStatus.COMPLETED
        assert result.processed_rows == 3
        assert harness.leases.find_stale(harness.clock.advance(3600), 0) == ()
