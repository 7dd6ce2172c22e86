"""
Tests for JobStateMachine -- transition graph, monotonic counters,
optimistic versioning and terminal stability.

Uses the in-memory JobRepository; the SQL repository shares the same
compare-and-swap contract (see test_repositories.py).
"""

import pytest

from txn_batch.domain.state_machine import ALLOWED_TRANSITIONS, JobStateMachine, can_transition
from txn_batch.domain.types import ImportJobStatus, JobErrorItem
from txn_batch.storage.memory import InMemoryJobRepository
from txn_kernel.exceptions import (
    ConcurrentModificationError,
    InvalidTransitionError,
    ProgressRegressionError,
)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def repo():
    return InMemoryJobRepository()


@pytest.fixture
def pending(repo, make_job):
    return repo.create(make_job())


@pytest.fixture
def machine(repo, pending, deterministic_clock):
    return JobStateMachine(pending, repo, deterministic_clock)


@pytest.fixture
def running(machine):
    machine.start()
    return machine


# =============================================================================
# Transition graph
# =============================================================================


class TestTransitionGraph:
    def test_terminal_statuses_have_no_exits(self):
        for status in (ImportJobStatus.COMPLETED, ImportJobStatus.FAILED, ImportJobStatus.CANCELLED):
            assert ALLOWED_TRANSITIONS[status] == frozenset()

    def test_pending_and_processing_never_revisited(self):
        for targets in ALLOWED_TRANSITIONS.values():
            assert ImportJobStatus.PENDING not in targets
        assert not can_transition(ImportJobStatus.PROCESSING, ImportJobStatus.PROCESSING)
        assert not can_transition(ImportJobStatus.PENDING, ImportJobStatus.COMPLETED)
        assert not can_transition(ImportJobStatus.PENDING, ImportJobStatus.FAILED)


# =============================================================================
# Lifecycle
# =============================================================================


class TestStart:
    def test_start_sets_processing(self, machine, repo, deterministic_clock):
        job = machine.start()
        assert job.status == ImportJobStatus.PROCESSING
        assert job.started_at == deterministic_clock.now()
        assert job.version == 2
        assert repo.get(job.job_id) == job

    def test_cannot_start_twice(self, running):
        with pytest.raises(InvalidTransitionError) as exc_info:
            running.start()
        assert exc_info.value.current_status == "processing"

    def test_transition_logged(self, machine, captured_logs):
        machine.start()
        transitions = [r for r in captured_logs() if r["message"] == "import_job_transition"]
        assert transitions[0]["from_status"] == "pending"
        assert transitions[0]["to_status"] == "processing"


class TestRecordProgress:
    def test_requires_processing(self, machine):
        with pytest.raises(InvalidTransitionError):
            machine.record_progress(1, 0)

    def test_counters_persisted(self, running, repo):
        job = running.record_progress(10, 2)
        assert (job.processed_rows, job.failed_rows) == (10, 2)
        assert repo.get(job.job_id).processed_rows == 10

    def test_unchanged_counters_not_written(self, running):
        first = running.record_progress(5, 0)
        again = running.record_progress(5, 0)
        assert again.version == first.version

    def test_counters_never_decrease(self, running):
        running.record_progress(5, 1)
        with pytest.raises(ProgressRegressionError):
            running.record_progress(4, 1)
        with pytest.raises(ProgressRegressionError):
            running.record_progress(5, 0)

    def test_total_set_once(self, running):
        running.record_progress(2, 0, total=10)
        running.record_progress(3, 0, total=10)
        with pytest.raises(ProgressRegressionError):
            running.record_progress(3, 0, total=11)

    def test_counters_bounded_by_total(self, running):
        running.record_progress(0, 0, total=3)
        with pytest.raises(ProgressRegressionError):
            running.record_progress(3, 1)


class TestComplete:
    def test_no_failures_completes(self, running, deterministic_clock):
        running.record_progress(4, 0, total=4)
        deterministic_clock.advance(3)
        job = running.complete()
        assert job.status == ImportJobStatus.COMPLETED
        assert job.finished_at == deterministic_clock.now()
        assert job.error_summary == ()
        assert job.failure_reason is None

    def test_row_failures_fail_the_job(self, running):
        running.record_progress(3, 1, total=4)
        summary = (JobErrorItem(row_number=2, reason="date: unrecognised date"),)
        job = running.complete(summary)
        assert job.status == ImportJobStatus.FAILED
        assert job.error_summary == summary
        assert job.failure_reason == "1 of 4 row(s) failed"

    def test_total_filled_when_unknown(self, running):
        running.record_progress(2, 0)
        assert running.complete().total_rows == 2

    def test_complete_requires_processing(self, machine):
        with pytest.raises(InvalidTransitionError):
            machine.complete()


class TestFailAndCancel:
    def test_fail_itemizes_job_reason_first(self, running):
        job = running.fail(
            "infrastructure error: disk gone",
            (JobErrorItem(row_number=7, reason="BLANK_ROW"),),
        )
        assert job.status == ImportJobStatus.FAILED
        assert job.failure_reason == "infrastructure error: disk gone"
        assert job.error_summary[0] == JobErrorItem(0, "infrastructure error: disk gone")
        assert job.error_summary[1].row_number == 7

    def test_fail_requires_processing(self, machine):
        with pytest.raises(InvalidTransitionError):
            machine.fail("boom")

    def test_cancel_pending(self, machine, deterministic_clock):
        job = machine.cancel("user request")
        assert job.status == ImportJobStatus.CANCELLED
        assert job.failure_reason == "user request"
        assert job.finished_at == deterministic_clock.now()
        assert job.started_at is None

    def test_cancel_processing_keeps_counters(self, running):
        running.record_progress(6, 1)
        job = running.cancel()
        assert job.status == ImportJobStatus.CANCELLED
        assert (job.processed_rows, job.failed_rows) == (6, 1)

    @pytest.mark.parametrize("finish", ["complete", "fail", "cancel"])
    def test_terminal_is_stable(self, running, finish):
        if finish == "fail":
            running.fail("x")
        else:
            getattr(running, finish)()
        terminal = running.job
        for operation in (running.start, running.complete, running.cancel, lambda: running.fail("y")):
            with pytest.raises(InvalidTransitionError):
                operation()
        with pytest.raises(InvalidTransitionError):
            running.record_progress(terminal.processed_rows, terminal.failed_rows)
        assert running.job == terminal


# =============================================================================
# Optimistic concurrency
# =============================================================================


class TestVersioning:
    def test_stale_writer_rejected(self, repo, pending, deterministic_clock):
        first = JobStateMachine(pending, repo, deterministic_clock)
        second = JobStateMachine(pending, repo, deterministic_clock)
        first.start()

        with pytest.raises(ConcurrentModificationError) as exc_info:
            second.cancel()
        assert exc_info.value.expected_version == 1
        # Held snapshot unchanged on conflict
        assert second.job == pending

    def test_reload_then_retry(self, repo, pending, deterministic_clock):
        first = JobStateMachine(pending, repo, deterministic_clock)
        second = JobStateMachine(pending, repo, deterministic_clock)
        first.start()

        second.reload()
        job = second.cancel("stop")
        assert job.status == ImportJobStatus.CANCELLED
        assert job.version == 3

    def test_each_write_increments_version(self, running):
        assert running.job.version == 2
        running.record_progress(1, 0)
        assert running.job.version == 3
        running.complete()
        assert running.job.version == 4

    def test_status_property(self, running):
        assert running.status == ImportJobStatus.PROCESSING
        assert running.status == running.job.status
