"""
Generation job lifecycle.

Long-running generations (video) are tracked as durable job records that
move through a small state machine:

    pending --submit ok--> processing --mark_completed--> completed
       |                        |
       +--submit error-->  failed  <--mark_failed/poll----+
                              |
                              +--retry--> pending (same record, retry_count + 1)

Rules:
1. Completion and failure are only accepted from ``processing``.
2. Reporting the same terminal status twice leaves the job unchanged (a
   repeated completion re-runs ``on_completed``); reporting the other
   terminal status is a conflict and raises InvalidStateTransition.
3. Retry is only accepted from ``failed`` and replays the stored input_spec.
4. Transitions on one job are serialized in-process by a per-job lock and
   persisted as single-row compare-and-set writes on the previous status.
"""

import re
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional, Protocol

from .clock import SYSTEM_CLOCK
from .errors import ExternalSubmissionFailed, InvalidStateTransition, JobNotFound
from .logging_config import get_logger
from ai_gen_guard.storage.models import GenerationJob, JobStatus

logger = get_logger(__name__)

DEFAULT_SUBMIT_TIMEOUT_SECONDS = 60.0
DEFAULT_MAX_GENERATION_SECONDS = 15 * 60
DEFAULT_MAX_ERROR_LENGTH = 500

# Poll errors containing these are not worth waiting out.
PERMANENT_ERROR_MARKERS = (
    "invalid",
    "not found",
    "unauthorized",
    "forbidden",
    "permission",
    "blocked",
    "safety",
)

_SECRET_PATTERNS = (
    (re.compile(r"sk-[A-Za-z0-9_\-]{16,}"), "sk-[REDACTED]"),
    (re.compile(r"AIza[0-9A-Za-z_\-]{20,}"), "[REDACTED]"),
    (re.compile(r"(?i)bearer\s+[A-Za-z0-9._\-]+"), "Bearer [REDACTED]"),
    (re.compile(r"(?i)\b(api[_-]?key|access[_-]?token|token|secret|password)=([^&\s]+)"), r"\1=[REDACTED]"),
)


@dataclass(frozen=True)
class PollResult:
    """Progress of an external operation as reported by the backend."""
    done: bool
    output_metadata: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class GenerationBackend(Protocol):
    """External long-running generation service."""

    def submit(self, input_spec: Dict[str, Any], timeout: float) -> str:
        """Start an operation and return its handle. Raise on rejection."""
        ...

    def poll(self, operation_handle: str) -> PollResult:
        """Report progress of a previously submitted operation."""
        ...


@dataclass(frozen=True)
class SubmissionResult:
    """Job snapshot after a submit or retry, plus the backend error if it failed."""
    job: GenerationJob
    error: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.job.status == JobStatus.PROCESSING

    def raise_for_error(self) -> None:
        """Raise ExternalSubmissionFailed if the submission did not start."""
        if self.error is not None:
            raise ExternalSubmissionFailed(self.error, job_id=self.job.id)


def sanitize_error_message(message: str, max_length: int = DEFAULT_MAX_ERROR_LENGTH) -> str:
    """Redact credential-looking substrings and truncate to ``max_length``."""
    text = (message or "").strip() or "Unknown error"
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    if len(text) > max_length:
        text = text[:max_length - 3].rstrip() + "..."
    return text


def classify_poll_error(message: str) -> str:
    """Return "permanent" or "transient" for a poll failure message."""
    lowered = (message or "").lower()
    if any(marker in lowered for marker in PERMANENT_ERROR_MARKERS):
        return "permanent"
    return "transient"


class GenerationLifecycle:
    """State machine over persisted GenerationJob records.

    Args:
        store: Object with ``insert(job)``, ``get(job_id)`` and
            ``update(job, expected_status) -> bool``
        backend: GenerationBackend used to submit and poll operations
        clock: Object with a ``now()`` method returning aware UTC datetimes
        submit_timeout_seconds: Bound on a single backend submission
        max_generation_seconds: Processing jobs older than this fail on poll
        max_error_length: Stored error messages are truncated to this
        max_retries: Optional cap on retry_count; None means unlimited
        on_completed: Called with a snapshot, while the job lock is held, when a
            job transitions to completed and again on each repeated completion
            report. Must be idempotent per job id.
    """

    def __init__(
        self,
        store,
        backend: GenerationBackend,
        clock=SYSTEM_CLOCK,
        submit_timeout_seconds: float = DEFAULT_SUBMIT_TIMEOUT_SECONDS,
        max_generation_seconds: float = DEFAULT_MAX_GENERATION_SECONDS,
        max_error_length: int = DEFAULT_MAX_ERROR_LENGTH,
        max_retries: Optional[int] = None,
        max_workers: int = 8,
        on_completed: Optional[Callable[[GenerationJob], None]] = None,
    ):
        if submit_timeout_seconds <= 0:
            raise ValueError("submit_timeout_seconds must be > 0")
        if max_generation_seconds <= 0:
            raise ValueError("max_generation_seconds must be > 0")
        if max_error_length < 10:
            raise ValueError("max_error_length must be >= 10")
        if max_retries is not None and max_retries < 0:
            raise ValueError("max_retries cannot be negative")

        self.store = store
        self.backend = backend
        self.clock = clock
        self.submit_timeout_seconds = submit_timeout_seconds
        self.max_generation_seconds = max_generation_seconds
        self.max_error_length = max_error_length
        self.max_retries = max_retries
        self.max_workers = max_workers
        self.on_completed = on_completed

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="gen-submit")
        self._locks: Dict[str, list] = {}
        self._locks_guard = threading.Lock()

    def submit(
        self,
        principal: str,
        input_spec: Dict[str, Any],
        estimated_cost_usd: float = 0.0,
    ) -> SubmissionResult:
        """Create a job and start its external operation.

        The job is persisted as ``pending`` before the backend is called, then
        moves to ``processing`` with an operation handle, or straight to
        ``failed`` if the backend rejects the submission or times out.

        Raises:
            ValueError: If principal or input_spec is missing
        """
        if not principal:
            raise ValueError("principal is required")
        if not input_spec:
            raise ValueError("input_spec is required and cannot be empty")

        job = GenerationJob(
            id=str(uuid.uuid4()),
            principal=principal,
            status=JobStatus.PENDING,
            input_spec=dict(input_spec),
            started_at=self.clock.now(),
            estimated_cost_usd=estimated_cost_usd,
        )
        self.store.insert(job)
        logger.info("job_created", job_id=job.id, principal=principal)

        with self._job_lock(job.id):
            return self._start_operation(job)

    def mark_completed(
        self,
        job_id: str,
        output_metadata: Optional[Dict[str, Any]] = None,
    ) -> GenerationJob:
        """Record successful completion of a processing job.

        Raises:
            JobNotFound: If the job doesn't exist
            InvalidStateTransition: If the job is pending or already failed
        """
        with self._job_lock(job_id):
            job = self._load(job_id)
            return self._finish(job, JobStatus.COMPLETED, output_metadata=output_metadata)

    def mark_failed(self, job_id: str, error_message: str) -> GenerationJob:
        """Record failure of a processing job.

        Raises:
            JobNotFound: If the job doesn't exist
            InvalidStateTransition: If the job is pending or already completed
        """
        with self._job_lock(job_id):
            job = self._load(job_id)
            return self._finish(job, JobStatus.FAILED, error_message=error_message)

    def retry(self, job_id: str) -> SubmissionResult:
        """Reset a failed job to pending and resubmit its stored input_spec.

        ``retry_count`` is incremented and kept even if the resubmission
        fails again.

        Raises:
            JobNotFound: If the job doesn't exist
            InvalidStateTransition: If the job is not failed or hit max_retries
        """
        with self._job_lock(job_id):
            job = self._load(job_id)
            if job.status != JobStatus.FAILED:
                raise InvalidStateTransition(job.id, job.status.value, "retry")
            if self.max_retries is not None and job.retry_count >= self.max_retries:
                raise InvalidStateTransition(
                    job.id,
                    job.status.value,
                    "retry",
                    message=f"Job {job.id} reached the retry limit ({self.max_retries})",
                )

            job.status = JobStatus.PENDING
            job.retry_count += 1
            job.error_message = None
            job.completed_at = None
            job.operation_handle = None
            job.output_metadata = None
            job.started_at = self.clock.now()
            self._persist(job, JobStatus.FAILED)
            logger.info("job_retry", job_id=job.id, retry_count=job.retry_count)

            return self._start_operation(job)

    def poll(self, job_id: str) -> GenerationJob:
        """Ask the backend about a processing job and apply the outcome.

        Terminal and pending jobs are returned unchanged. Transient poll
        errors leave the job processing; permanent ones and jobs running
        longer than ``max_generation_seconds`` fail it.

        Raises:
            JobNotFound: If the job doesn't exist
        """
        with self._job_lock(job_id):
            job = self._load(job_id)
            if job.status != JobStatus.PROCESSING:
                return job.copy()

            elapsed = (self.clock.now() - job.started_at).total_seconds()
            if elapsed > self.max_generation_seconds:
                return self._finish(
                    job,
                    JobStatus.FAILED,
                    error_message=f"Generation timed out after {self.max_generation_seconds / 60:g} minutes",
                )

            try:
                result = self.backend.poll(job.operation_handle)
            except Exception as e:
                message = str(e) or e.__class__.__name__
                if classify_poll_error(message) == "permanent":
                    return self._finish(job, JobStatus.FAILED, error_message=message)
                logger.warning(
                    "job_poll_transient_error",
                    job_id=job.id,
                    error=sanitize_error_message(message, self.max_error_length),
                )
                return job.copy()

            if not result.done:
                return job.copy()
            if result.error:
                return self._finish(job, JobStatus.FAILED, error_message=result.error)
            if not result.output_metadata:
                return self._finish(job, JobStatus.FAILED, error_message="No video generated")
            return self._finish(job, JobStatus.COMPLETED, output_metadata=result.output_metadata)

    def get(self, job_id: str) -> GenerationJob:
        """Snapshot of a job.

        Raises:
            JobNotFound: If the job doesn't exist
        """
        return self._load(job_id).copy()

    def close(self) -> None:
        """Stop the submission worker pool."""
        self._executor.shutdown(wait=False)

    def __enter__(self) -> "GenerationLifecycle":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _start_operation(self, job: GenerationJob) -> SubmissionResult:
        """Submit a pending job's input_spec and persist the outcome. Caller holds the job lock."""
        try:
            handle = self._submit_to_backend(job.input_spec)
        except ExternalSubmissionFailed as e:
            job.status = JobStatus.FAILED
            job.error_message = sanitize_error_message(str(e), self.max_error_length)
            job.completed_at = self.clock.now()
            self._persist(job, JobStatus.PENDING)
            logger.error(
                "job_submission_failed",
                job_id=job.id,
                retry_count=job.retry_count,
                error=job.error_message,
            )
            return SubmissionResult(job=job.copy(), error=job.error_message)

        job.status = JobStatus.PROCESSING
        job.operation_handle = handle
        self._persist(job, JobStatus.PENDING)
        logger.info("job_submitted", job_id=job.id, retry_count=job.retry_count)
        return SubmissionResult(job=job.copy())

    def _submit_to_backend(self, input_spec: Dict[str, Any]) -> str:
        """Run backend.submit with a hard timeout.

        The timeout starts when a worker picks the call up. A call still
        queued after ``timeout`` seconds is cancelled and reported as pool
        saturation; the backend was never reached.

        Raises:
            ExternalSubmissionFailed: On backend error, timeout, saturation or missing handle
        """
        timeout = self.submit_timeout_seconds
        started = threading.Event()

        def call():
            started.set()
            return self.backend.submit(dict(input_spec), timeout)

        future = self._executor.submit(call)
        if not started.wait(timeout) and future.cancel():
            logger.error("submission_pool_saturated", max_workers=self.max_workers)
            raise ExternalSubmissionFailed(
                f"Submission pool saturated ({self.max_workers} workers busy); backend was not called"
            )
        try:
            handle = future.result(timeout=timeout)
        except FutureTimeoutError:
            future.cancel()
            raise ExternalSubmissionFailed(f"Submission timed out after {timeout:g}s")
        except Exception as e:
            raise ExternalSubmissionFailed(str(e) or e.__class__.__name__) from e

        if not handle:
            raise ExternalSubmissionFailed("Backend returned no operation handle")
        return str(handle)

    def _finish(
        self,
        job: GenerationJob,
        target: JobStatus,
        output_metadata: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> GenerationJob:
        """Move a processing job to a terminal status. Caller holds the job lock."""
        attempted = "complete" if target == JobStatus.COMPLETED else "fail"

        if job.status == target:
            logger.info("job_transition_repeated", job_id=job.id, status=target.value)
            # Billing may have failed on the first report.
            if target == JobStatus.COMPLETED and self.on_completed is not None:
                self.on_completed(job.copy())
            return job.copy()
        if job.status.is_terminal:
            logger.error(
                "job_transition_conflict",
                job_id=job.id,
                current=job.status.value,
                attempted=target.value,
            )
            raise InvalidStateTransition(
                job.id,
                job.status.value,
                attempted,
                message=f"Job {job.id} is already {job.status.value}; refusing to mark it {target.value}",
            )
        if job.status != JobStatus.PROCESSING:
            raise InvalidStateTransition(job.id, job.status.value, attempted)

        job.status = target
        job.operation_handle = None
        job.completed_at = self.clock.now()
        if target == JobStatus.COMPLETED:
            job.output_metadata = dict(output_metadata or {})
            job.error_message = None
        else:
            job.error_message = sanitize_error_message(
                error_message or "Generation failed", self.max_error_length
            )
        self._persist(job, JobStatus.PROCESSING)

        if target == JobStatus.COMPLETED:
            logger.info("job_completed", job_id=job.id, retry_count=job.retry_count)
            if self.on_completed is not None:
                self.on_completed(job.copy())
        else:
            logger.warning(
                "job_failed",
                job_id=job.id,
                retry_count=job.retry_count,
                error=job.error_message,
            )
        return job.copy()

    def _persist(self, job: GenerationJob, expected: JobStatus) -> None:
        job.check_invariants()
        if self.store.update(job, expected):
            return
        current = self.store.get(job.id)
        actual = current.status.value if current is not None else "missing"
        logger.error(
            "job_concurrent_modification",
            job_id=job.id,
            expected=expected.value,
            actual=actual,
        )
        raise InvalidStateTransition(
            job.id,
            actual,
            job.status.value,
            message=f"Job {job.id} was modified concurrently (expected '{expected.value}', found '{actual}')",
        )

    def _load(self, job_id: str) -> GenerationJob:
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    @contextmanager
    def _job_lock(self, job_id: str) -> Iterator[None]:
        """Serialize transitions per job id. Entries are dropped when unused."""
        with self._locks_guard:
            entry = self._locks.get(job_id)
            if entry is None:
                entry = self._locks[job_id] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[job_id]
