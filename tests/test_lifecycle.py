"""
Unit tests for the generation job lifecycle.

Jobs are stored in a temporary SQLite database; the external backend is
a scripted fake.
"""

import os
import tempfile
import threading
from datetime import datetime, timezone

import pytest

from ai_gen_guard.core.errors import (
    ExternalSubmissionFailed,
    InvalidStateTransition,
    JobNotFound,
)
from ai_gen_guard.core.lifecycle import (
    GenerationLifecycle,
    PollResult,
    classify_poll_error,
    sanitize_error_message,
)
from ai_gen_guard.storage.models import GenerationJob, JobStatus
from ai_gen_guard.storage.repository import JobRepository, initialize_schema

INPUT_SPEC = {"prompt": "A sunrise over a product shot", "model": "veo-3.1-generate-preview"}


class FakeBackend:
    """Backend whose submit outcomes and poll results are queued by the test."""

    def __init__(self):
        self.submissions = []
        self.submit_outcomes = []
        self.poll_results = []
        self.polled = []

    def submit(self, input_spec, timeout):
        self.submissions.append(input_spec)
        outcome = self.submit_outcomes.pop(0) if self.submit_outcomes else f"op-{len(self.submissions)}"
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def poll(self, operation_handle):
        self.polled.append(operation_handle)
        result = self.poll_results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class LifecycleTestCase:
    """Temporary database and lifecycle per test."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.store = JobRepository(self.db_path)
        self.backend = FakeBackend()
        self.completed = []

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _lifecycle(self, clock, **kwargs):
        kwargs.setdefault("on_completed", self.completed.append)
        return GenerationLifecycle(self.store, self.backend, clock=clock, **kwargs)


class TestSubmit(LifecycleTestCase):
    """Test job creation and submission."""

    def test_submit_moves_to_processing(self, clock):
        with self._lifecycle(clock) as lifecycle:
            result = lifecycle.submit("alice", INPUT_SPEC, estimated_cost_usd=3.2)

        assert result.accepted
        assert result.error is None
        job = self.store.get(result.job.id)
        assert job.status == JobStatus.PROCESSING
        assert job.operation_handle == "op-1"
        assert job.principal == "alice"
        assert job.input_spec == INPUT_SPEC
        assert job.estimated_cost_usd == pytest.approx(3.2)
        assert job.started_at == clock.now()
        assert job.completed_at is None

    def test_job_is_pending_while_backend_runs(self, clock):
        seen = []

        def submit(input_spec, timeout):
            seen.extend(self.store.list_jobs(principal="alice"))
            return "op-1"

        self.backend.submit = submit
        with self._lifecycle(clock) as lifecycle:
            lifecycle.submit("alice", INPUT_SPEC)

        assert [job.status for job in seen] == [JobStatus.PENDING]

    def test_backend_error_fails_job(self, clock):
        self.backend.submit_outcomes = [RuntimeError("quota exhausted for project")]

        with self._lifecycle(clock) as lifecycle:
            result = lifecycle.submit("alice", INPUT_SPEC)

        assert not result.accepted
        assert result.error == "quota exhausted for project"
        job = self.store.get(result.job.id)
        assert job.status == JobStatus.FAILED
        assert job.error_message == "quota exhausted for project"
        assert job.operation_handle is None
        assert job.completed_at == clock.now()

        with pytest.raises(ExternalSubmissionFailed, match="quota exhausted"):
            result.raise_for_error()

    def test_empty_handle_fails_job(self, clock):
        self.backend.submit_outcomes = [""]

        with self._lifecycle(clock) as lifecycle:
            result = lifecycle.submit("alice", INPUT_SPEC)

        assert result.job.status == JobStatus.FAILED
        assert result.error == "Backend returned no operation handle"

    def test_submission_timeout_fails_job(self, clock):
        release = threading.Event()

        def submit(input_spec, timeout):
            release.wait(5)
            return "op-late"

        self.backend.submit = submit
        lifecycle = self._lifecycle(clock, submit_timeout_seconds=0.05)
        try:
            result = lifecycle.submit("alice", INPUT_SPEC)
        finally:
            release.set()
            lifecycle.close()

        assert result.job.status == JobStatus.FAILED
        assert result.error == "Submission timed out after 0.05s"
        assert self.store.get(result.job.id).operation_handle is None

    def test_saturated_pool_is_not_reported_as_timeout(self, clock):
        release = threading.Event()
        calls = []

        def submit(input_spec, timeout):
            calls.append(input_spec)
            release.wait(5)
            return f"op-{len(calls)}"

        self.backend.submit = submit
        lifecycle = self._lifecycle(clock, submit_timeout_seconds=0.2, max_workers=1)
        try:
            stuck = lifecycle.submit("alice", INPUT_SPEC)
            queued = lifecycle.submit("bob", INPUT_SPEC)
            calls_while_saturated = len(calls)
            release.set()
            recovered = lifecycle.submit("carol", INPUT_SPEC)
        finally:
            release.set()
            lifecycle.close()

        assert stuck.error == "Submission timed out after 0.2s"
        assert not queued.accepted
        assert queued.error.startswith("Submission pool saturated")
        assert self.store.get(queued.job.id).status == JobStatus.FAILED
        assert calls_while_saturated == 1
        assert recovered.accepted
        assert recovered.job.status == JobStatus.PROCESSING

    def test_submit_requires_input(self, clock):
        with self._lifecycle(clock) as lifecycle:
            with pytest.raises(ValueError, match="principal"):
                lifecycle.submit("", INPUT_SPEC)
            with pytest.raises(ValueError, match="input_spec"):
                lifecycle.submit("alice", {})


class TestTerminalTransitions(LifecycleTestCase):
    """Test completion and failure reports."""

    def _processing_job(self, lifecycle):
        return lifecycle.submit("alice", INPUT_SPEC).job

    def test_complete(self, clock):
        with self._lifecycle(clock) as lifecycle:
            job = self._processing_job(lifecycle)
            clock.advance(90)
            done = lifecycle.mark_completed(job.id, {"uri": "gs://bucket/video.mp4"})

        assert done.status == JobStatus.COMPLETED
        assert done.output_metadata == {"uri": "gs://bucket/video.mp4"}
        assert done.operation_handle is None
        assert done.completed_at == clock.now()
        assert self.store.get(job.id).status == JobStatus.COMPLETED
        assert [j.id for j in self.completed] == [job.id]

    def test_fail_after_complete_is_rejected(self, clock):
        with self._lifecycle(clock) as lifecycle:
            job = self._processing_job(lifecycle)
            lifecycle.mark_completed(job.id, {"uri": "x"})

            with pytest.raises(InvalidStateTransition, match="already completed"):
                lifecycle.mark_failed(job.id, "late failure")

        stored = self.store.get(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.error_message is None

    def test_complete_after_fail_is_rejected(self, clock):
        with self._lifecycle(clock) as lifecycle:
            job = self._processing_job(lifecycle)
            lifecycle.mark_failed(job.id, "render crashed")

            with pytest.raises(InvalidStateTransition, match="already failed"):
                lifecycle.mark_completed(job.id, {"uri": "x"})

        assert self.completed == []

    def test_repeated_completion_is_noop(self, clock):
        with self._lifecycle(clock) as lifecycle:
            job = self._processing_job(lifecycle)
            first = lifecycle.mark_completed(job.id, {"uri": "x"})
            clock.advance(30)
            second = lifecycle.mark_completed(job.id, {"uri": "y"})

        assert second.completed_at == first.completed_at
        assert second.output_metadata == {"uri": "x"}
        assert self.store.get(job.id).output_metadata == {"uri": "x"}
        # the completion hook runs again so a failed billing can be retried
        assert [j.id for j in self.completed] == [job.id, job.id]

    def test_repeated_failure_is_noop(self, clock):
        with self._lifecycle(clock) as lifecycle:
            job = self._processing_job(lifecycle)
            first = lifecycle.mark_failed(job.id, "boom")
            clock.advance(30)
            second = lifecycle.mark_failed(job.id, "other")

        assert second.status == JobStatus.FAILED
        assert second.error_message == "boom"
        assert second.completed_at == first.completed_at
        assert self.store.get(job.id).error_message == "boom"
        assert self.completed == []

    def test_pending_job_cannot_complete(self, clock):
        pending = GenerationJob(
            id="job-pending",
            principal="alice",
            status=JobStatus.PENDING,
            input_spec=INPUT_SPEC,
            started_at=clock.now(),
        )
        self.store.insert(pending)

        with self._lifecycle(clock) as lifecycle:
            with pytest.raises(InvalidStateTransition):
                lifecycle.mark_completed("job-pending")

    def test_failure_message_is_sanitized(self, clock):
        with self._lifecycle(clock) as lifecycle:
            job = self._processing_job(lifecycle)
            failed = lifecycle.mark_failed(job.id, "auth failed for api_key=abc123 " + "x" * 600)

        assert "abc123" not in failed.error_message
        assert len(failed.error_message) == 500

    def test_unknown_job(self, clock):
        with self._lifecycle(clock) as lifecycle:
            with pytest.raises(JobNotFound):
                lifecycle.mark_completed("nope")
            with pytest.raises(JobNotFound):
                lifecycle.get("nope")


class TestRetry(LifecycleTestCase):
    """Test retrying failed jobs."""

    def test_retry_resubmits_original_input(self, clock):
        self.backend.submit_outcomes = [RuntimeError("backend unavailable"), "op-2"]

        with self._lifecycle(clock) as lifecycle:
            failed = lifecycle.submit("alice", INPUT_SPEC).job
            clock.advance(60)
            result = lifecycle.retry(failed.id)

        assert result.accepted
        job = self.store.get(failed.id)
        assert job.id == failed.id
        assert job.status == JobStatus.PROCESSING
        assert job.retry_count == 1
        assert job.error_message is None
        assert job.completed_at is None
        assert job.operation_handle == "op-2"
        assert job.started_at == clock.now()
        assert self.backend.submissions == [INPUT_SPEC, INPUT_SPEC]

    def test_retry_passes_through_pending(self, clock):
        self.backend.submit_outcomes = [RuntimeError("backend unavailable")]
        seen = []

        with self._lifecycle(clock) as lifecycle:
            failed = lifecycle.submit("alice", INPUT_SPEC).job

            def submit(input_spec, timeout):
                seen.append(self.store.get(failed.id))
                return "op-2"

            self.backend.submit = submit
            lifecycle.retry(failed.id)

        assert seen[0].status == JobStatus.PENDING
        assert seen[0].retry_count == 1
        assert seen[0].error_message is None

    def test_failed_retry_keeps_count(self, clock):
        self.backend.submit_outcomes = [RuntimeError("first"), RuntimeError("second")]

        with self._lifecycle(clock) as lifecycle:
            failed = lifecycle.submit("alice", INPUT_SPEC).job
            result = lifecycle.retry(failed.id)

        assert result.error == "second"
        job = self.store.get(failed.id)
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 1
        assert job.error_message == "second"

    def test_retry_rejected_unless_failed(self, clock):
        with self._lifecycle(clock) as lifecycle:
            job = lifecycle.submit("alice", INPUT_SPEC).job
            with pytest.raises(InvalidStateTransition, match="processing"):
                lifecycle.retry(job.id)

            lifecycle.mark_completed(job.id, {"uri": "x"})
            with pytest.raises(InvalidStateTransition, match="completed"):
                lifecycle.retry(job.id)

        pending = GenerationJob(
            id="job-pending",
            principal="alice",
            status=JobStatus.PENDING,
            input_spec=INPUT_SPEC,
            started_at=clock.now(),
        )
        self.store.insert(pending)
        with self._lifecycle(clock) as lifecycle:
            with pytest.raises(InvalidStateTransition, match="pending"):
                lifecycle.retry("job-pending")

    def test_retry_limit(self, clock):
        self.backend.submit_outcomes = [RuntimeError("a"), RuntimeError("b")]

        with self._lifecycle(clock, max_retries=1) as lifecycle:
            failed = lifecycle.submit("alice", INPUT_SPEC).job
            lifecycle.retry(failed.id)
            with pytest.raises(InvalidStateTransition, match="retry limit"):
                lifecycle.retry(failed.id)


class TestPoll(LifecycleTestCase):
    """Test polling the backend for progress."""

    def test_in_flight_job_stays_processing(self, clock):
        self.backend.poll_results = [PollResult(done=False)]

        with self._lifecycle(clock) as lifecycle:
            job = lifecycle.submit("alice", INPUT_SPEC).job
            polled = lifecycle.poll(job.id)

        assert polled.status == JobStatus.PROCESSING
        assert self.backend.polled == ["op-1"]

    def test_done_with_output_completes(self, clock):
        self.backend.poll_results = [PollResult(done=True, output_metadata={"uri": "v.mp4"})]

        with self._lifecycle(clock) as lifecycle:
            job = lifecycle.submit("alice", INPUT_SPEC).job
            polled = lifecycle.poll(job.id)

        assert polled.status == JobStatus.COMPLETED
        assert polled.output_metadata == {"uri": "v.mp4"}
        assert len(self.completed) == 1

    def test_done_without_output_fails(self, clock):
        self.backend.poll_results = [PollResult(done=True)]

        with self._lifecycle(clock) as lifecycle:
            job = lifecycle.submit("alice", INPUT_SPEC).job
            polled = lifecycle.poll(job.id)

        assert polled.status == JobStatus.FAILED
        assert polled.error_message == "No video generated"

    def test_done_with_error_fails(self, clock):
        self.backend.poll_results = [PollResult(done=True, error="content policy violation")]

        with self._lifecycle(clock) as lifecycle:
            job = lifecycle.submit("alice", INPUT_SPEC).job
            polled = lifecycle.poll(job.id)

        assert polled.status == JobStatus.FAILED
        assert polled.error_message == "content policy violation"

    def test_overdue_job_times_out(self, clock):
        with self._lifecycle(clock) as lifecycle:
            job = lifecycle.submit("alice", INPUT_SPEC).job
            clock.advance(15 * 60 + 1)
            polled = lifecycle.poll(job.id)

        assert polled.status == JobStatus.FAILED
        assert polled.error_message == "Generation timed out after 15 minutes"
        assert self.backend.polled == []

    def test_transient_poll_error_keeps_processing(self, clock):
        self.backend.poll_results = [ConnectionError("connection reset by peer")]

        with self._lifecycle(clock) as lifecycle:
            job = lifecycle.submit("alice", INPUT_SPEC).job
            polled = lifecycle.poll(job.id)

        assert polled.status == JobStatus.PROCESSING
        assert self.store.get(job.id).error_message is None

    def test_permanent_poll_error_fails(self, clock):
        self.backend.poll_results = [RuntimeError("Operation not found")]

        with self._lifecycle(clock) as lifecycle:
            job = lifecycle.submit("alice", INPUT_SPEC).job
            polled = lifecycle.poll(job.id)

        assert polled.status == JobStatus.FAILED
        assert polled.error_message == "Operation not found"

    def test_terminal_job_is_not_polled(self, clock):
        with self._lifecycle(clock) as lifecycle:
            job = lifecycle.submit("alice", INPUT_SPEC).job
            lifecycle.mark_failed(job.id, "boom")
            polled = lifecycle.poll(job.id)

        assert polled.status == JobStatus.FAILED
        assert self.backend.polled == []


class TestConcurrentReports(LifecycleTestCase):
    """Test racing terminal reports on one job."""

    def test_racing_reports_settle_on_one_status(self, clock):
        errors = []
        with self._lifecycle(clock) as lifecycle:
            job = lifecycle.submit("alice", INPUT_SPEC).job

            def report(fn, *args):
                try:
                    fn(job.id, *args)
                except InvalidStateTransition as e:
                    errors.append(e)

            threads = [
                threading.Thread(target=report, args=(lifecycle.mark_completed, {"uri": "x"})),
                threading.Thread(target=report, args=(lifecycle.mark_failed, "boom")),
            ]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

        stored = self.store.get(job.id)
        assert stored.status.is_terminal
        assert len(errors) == 1
        stored.check_invariants()


class TestErrorHelpers:
    """Test error message handling."""

    def test_sanitize_redacts_secrets(self):
        message = "401 for sk-abcdefghijklmnop1234 with Bearer eyJhbGciOi.xyz"
        cleaned = sanitize_error_message(message)
        assert "abcdefghijklmnop1234" not in cleaned
        assert "eyJhbGciOi" not in cleaned
        assert "[REDACTED]" in cleaned

    def test_sanitize_truncates(self):
        cleaned = sanitize_error_message("x" * 1000, max_length=50)
        assert len(cleaned) == 50
        assert cleaned.endswith("...")

    def test_sanitize_empty(self):
        assert sanitize_error_message("") == "Unknown error"

    def test_classify(self):
        assert classify_poll_error("Permission denied on resource") == "permanent"
        assert classify_poll_error("Request blocked by safety filter") == "permanent"
        assert classify_poll_error("503 Service Unavailable") == "transient"


def test_job_invariants():
    job = GenerationJob(
        id="j",
        principal="alice",
        status=JobStatus.PENDING,
        input_spec=INPUT_SPEC,
        started_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
        operation_handle="op",
    )
    with pytest.raises(ValueError, match="operation_handle"):
        job.check_invariants()
