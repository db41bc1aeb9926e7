"""
Error taxonomy for admission control and generation jobs.

Admission denials (rate, budget, ledger) are normally returned as decision
values; the exception forms exist for callers such as the SDK that prefer
to raise. Job errors are raised directly.
"""

from typing import Optional


class GuardError(Exception):
    """Base class for all AI Gen Guard errors."""


class AdmissionDenied(GuardError):
    """A costly call was refused by one of the admission gates."""

    retryable = True


class RateLimited(AdmissionDenied):
    """Request rate exceeded for a principal/category."""

    def __init__(self, message: str, retry_after_seconds: int):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class BudgetExceeded(AdmissionDenied):
    """Monthly spend ceiling reached. Not retryable before the next period."""

    retryable = False

    def __init__(self, message: str, total_spent: float, remaining: float):
        super().__init__(message)
        self.total_spent = total_spent
        self.remaining = remaining


class LedgerUnavailable(AdmissionDenied):
    """Spend ledger could not be read; the budget guard fails closed."""


class ExternalSubmissionFailed(GuardError):
    """The generative backend rejected or timed out a job submission."""

    def __init__(self, message: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.job_id = job_id


class InvalidStateTransition(GuardError):
    """A job transition is not allowed from the job's current state."""

    def __init__(self, job_id: str, current: str, attempted: str, message: str = ""):
        super().__init__(
            message or f"Cannot {attempted} job {job_id} in status '{current}'"
        )
        self.job_id = job_id
        self.current = current
        self.attempted = attempted


class JobNotFound(GuardError):
    """No generation job exists with the given id."""

    def __init__(self, job_id: str):
        super().__init__(f"Generation job not found: {job_id}")
        self.job_id = job_id
