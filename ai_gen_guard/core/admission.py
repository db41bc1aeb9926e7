"""
Admission control for costly AI calls.

Every billed call passes the gates in a fixed order:

1. Rate limit - cheap, in memory, rejects bursts first
2. Budget - reads the spend ledger, fails closed
3. Response cache - synchronous calls only, served answers are not billed

Gate outcomes are returned as tagged results and never raised. Job state
errors (InvalidStateTransition, JobNotFound) do propagate.
"""

import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Union

from .budget import BudgetDecision, BudgetGuard
from .cache import ResponseCache
from .clock import SYSTEM_CLOCK
from .errors import InvalidStateTransition
from .lifecycle import GenerationBackend, GenerationLifecycle
from .logging_config import get_logger
from .rate_limiter import RateLimitDecision, RateLimiter
from ai_gen_guard.config.loader import Settings
from ai_gen_guard.storage.db import DEFAULT_DB_PATH
from ai_gen_guard.storage.models import GenerationJob, JobStatus
from ai_gen_guard.storage.repository import JobRepository, SpendLedgerRepository

logger = get_logger(__name__)

TEXT_CATEGORY = "ai-text"
MEDIA_CATEGORY = "ai-media"


class Outcome(Enum):
    """Tagged result of an admission-controlled operation."""
    RATE_LIMITED = "rate_limited"
    BUDGET_EXCEEDED = "budget_exceeded"
    ADMITTED = "admitted"
    CACHED = "cached"
    FRESH = "fresh"
    JOB = "job"

    @property
    def denied(self) -> bool:
        return self in (Outcome.RATE_LIMITED, Outcome.BUDGET_EXCEEDED)


@dataclass(frozen=True)
class AdmissionDecision:
    """Result of running the rate and budget gates."""
    outcome: Outcome
    reason: Optional[str] = None
    retry_after_seconds: Optional[int] = None
    total_spent: Optional[float] = None
    remaining: Optional[float] = None
    ledger_available: bool = True

    @property
    def allowed(self) -> bool:
        return self.outcome == Outcome.ADMITTED


@dataclass(frozen=True)
class CallResult:
    """Result of a synchronous AI call through admission control."""
    outcome: Outcome
    value: Any = None
    cost_usd: float = 0.0
    decision: Optional[AdmissionDecision] = None

    @property
    def denied(self) -> bool:
        return self.outcome.denied


@dataclass(frozen=True)
class JobResult:
    """Result of submitting or retrying a generation job."""
    outcome: Outcome
    job: Optional[GenerationJob] = None
    error: Optional[str] = None
    decision: Optional[AdmissionDecision] = None

    @property
    def denied(self) -> bool:
        return self.outcome.denied


# A synchronous AI call returns its value and the actual cost in USD.
AICall = Callable[[], Tuple[Any, float]]


class AdmissionController:
    """Composes the rate limiter, budget guard, response cache and job lifecycle.

    Constructed once per process and shared by all call sites. When a
    lifecycle is given, completed jobs are billed through the budget guard
    exactly once, at the transition to completed.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        budget_guard: BudgetGuard,
        cache: Optional[ResponseCache] = None,
        lifecycle: Optional[GenerationLifecycle] = None,
    ):
        self.rate_limiter = rate_limiter
        self.budget_guard = budget_guard
        self.cache = cache
        self.lifecycle = lifecycle
        if lifecycle is not None and lifecycle.on_completed is None:
            lifecycle.on_completed = self.record_completion_spend

    def check_admission(
        self,
        principal: str,
        category: str,
        estimated_cost_usd: float = 0.0,
    ) -> AdmissionDecision:
        """Run the rate limit then budget gate for one billed call.

        A rate limit token is consumed even if the budget gate then denies.
        """
        rate: RateLimitDecision = self.rate_limiter.check(principal, category)
        if not rate.allowed:
            return AdmissionDecision(
                outcome=Outcome.RATE_LIMITED,
                reason=rate.reason,
                retry_after_seconds=rate.retry_after_seconds,
            )

        budget: BudgetDecision = self.budget_guard.check_budget(principal, estimated_cost_usd)
        if not budget.allowed:
            return AdmissionDecision(
                outcome=Outcome.BUDGET_EXCEEDED,
                reason=budget.reason,
                total_spent=budget.total_spent,
                remaining=budget.remaining,
                ledger_available=budget.ledger_available,
            )

        return AdmissionDecision(
            outcome=Outcome.ADMITTED,
            total_spent=budget.total_spent,
            remaining=budget.remaining,
        )

    def execute(
        self,
        principal: str,
        category: str,
        request_key: Union[str, bytes],
        call: AICall,
        estimated_cost_usd: float = 0.0,
        model: Optional[str] = None,
        operation: Optional[str] = None,
    ) -> CallResult:
        """Execute a synchronous AI call, or serve it from the cache.

        ``call`` runs only on a cache miss. Its actual cost is appended to the
        ledger before the value is cached. Exceptions from ``call`` propagate
        and nothing is recorded or cached.

        Args:
            principal: User the call is billed to
            category: Rate limit category
            request_key: Exact request payload used as the cache key
            call: Zero-argument callable returning (value, actual_cost_usd)
            estimated_cost_usd: Cost used by the budget gate
            model: Model name recorded on the ledger row
            operation: Operation name recorded on the ledger row
        """
        decision = self.check_admission(principal, category, estimated_cost_usd)
        if not decision.allowed:
            return CallResult(outcome=decision.outcome, decision=decision)

        if self.cache is not None:
            cached = self.cache.get(request_key)
            if cached is not None:
                logger.debug("cache_hit", principal=principal, category=category)
                return CallResult(outcome=Outcome.CACHED, value=cached, decision=decision)

        value, cost_usd = call()
        self.budget_guard.record_spend(
            principal,
            cost_usd,
            category=category,
            model=model,
            operation=operation,
        )

        if self.cache is not None and value is not None:
            self.cache.set(request_key, value)

        return CallResult(outcome=Outcome.FRESH, value=value, cost_usd=cost_usd, decision=decision)

    def submit_job(
        self,
        principal: str,
        input_spec: Dict[str, Any],
        estimated_cost_usd: float = 0.0,
        category: str = MEDIA_CATEGORY,
    ) -> JobResult:
        """Admit and submit an asynchronous generation job."""
        lifecycle = self._require_lifecycle()
        decision = self.check_admission(principal, category, estimated_cost_usd)
        if not decision.allowed:
            return JobResult(outcome=decision.outcome, decision=decision)

        result = lifecycle.submit(principal, input_spec, estimated_cost_usd)
        return JobResult(outcome=Outcome.JOB, job=result.job, error=result.error, decision=decision)

    def retry_job(
        self,
        principal: str,
        job_id: str,
        category: str = MEDIA_CATEGORY,
    ) -> JobResult:
        """Admit and retry a failed job owned by ``principal``.

        Retries re-bill, so they pass the gates again using the job's
        original cost estimate.

        Raises:
            JobNotFound: If the job doesn't exist
            InvalidStateTransition: If the job is not failed or belongs to someone else
        """
        lifecycle = self._require_lifecycle()
        job = lifecycle.get(job_id)
        if job.principal != principal:
            raise InvalidStateTransition(
                job.id,
                job.status.value,
                "retry",
                message=f"Job {job.id} does not belong to {principal}",
            )
        if job.status != JobStatus.FAILED:
            raise InvalidStateTransition(job.id, job.status.value, "retry")

        decision = self.check_admission(principal, category, job.estimated_cost_usd)
        if not decision.allowed:
            return JobResult(outcome=decision.outcome, job=job, decision=decision)

        result = lifecycle.retry(job_id)
        return JobResult(outcome=Outcome.JOB, job=result.job, error=result.error, decision=decision)

    def job_status(self, job_id: str) -> GenerationJob:
        """Stored snapshot of a job."""
        return self._require_lifecycle().get(job_id)

    def poll_job(self, job_id: str) -> GenerationJob:
        """Poll a job's backend operation and apply the outcome."""
        return self._require_lifecycle().poll(job_id)

    def complete_job(self, job_id: str, output_metadata: Optional[Dict[str, Any]] = None) -> GenerationJob:
        """Out-of-band completion report (callback or external poller)."""
        return self._require_lifecycle().mark_completed(job_id, output_metadata)

    def fail_job(self, job_id: str, error_message: str) -> GenerationJob:
        """Out-of-band failure report (callback or external poller)."""
        return self._require_lifecycle().mark_failed(job_id, error_message)

    def record_completion_spend(self, job: GenerationJob) -> None:
        """Append a completed job's estimated cost to the ledger, once per job.

        Runs on every completion report for the job, so a report whose
        billing failed can be repeated until the ledger row exists.
        """
        if job.estimated_cost_usd <= 0:
            return
        if self.budget_guard.is_billed(job.id):
            logger.debug("completion_already_billed", job_id=job.id)
            return
        try:
            self.budget_guard.record_spend(
                job.principal,
                job.estimated_cost_usd,
                category=MEDIA_CATEGORY,
                model=job.input_spec.get("model"),
                operation="video_generation",
                generation_id=job.id,
            )
        except sqlite3.IntegrityError:
            # another process billed the job between the check and the append
            logger.info("completion_already_billed", job_id=job.id)

    def _require_lifecycle(self) -> GenerationLifecycle:
        if self.lifecycle is None:
            raise RuntimeError("AdmissionController was built without a GenerationLifecycle")
        return self.lifecycle


def build_controller(
    settings: Settings,
    db_path: str = DEFAULT_DB_PATH,
    backend: Optional[GenerationBackend] = None,
    clock=SYSTEM_CLOCK,
) -> AdmissionController:
    """Wire the process-wide controller from settings and a SQLite database.

    Without a backend the controller has no lifecycle and only serves
    synchronous calls.
    """
    rate_limiter = RateLimiter(
        categories=settings.rate_limits.categories,
        clock=clock,
        idle_ttl_seconds=settings.rate_limits.idle_ttl_seconds,
        sweep_batch=settings.rate_limits.sweep_batch,
    )
    budget_guard = BudgetGuard(
        SpendLedgerRepository(db_path),
        monthly_limit_usd=settings.budget.monthly_limit_usd,
        clock=clock,
        utc_offset_hours=settings.budget.utc_offset_hours,
        spend_cache_ttl_seconds=settings.budget.spend_cache_ttl_seconds,
        alert_thresholds=settings.budget.alert_thresholds,
    )
    cache = ResponseCache(
        ttl_seconds=settings.cache.ttl_seconds,
        max_entries=settings.cache.max_entries,
        clock=clock,
        sweep_batch=settings.cache.sweep_batch,
    )
    lifecycle = None
    if backend is not None:
        lifecycle = GenerationLifecycle(
            JobRepository(db_path),
            backend,
            clock=clock,
            submit_timeout_seconds=settings.generation.submit_timeout_seconds,
            max_generation_seconds=settings.generation.max_generation_seconds,
            max_error_length=settings.generation.max_error_length,
            max_retries=settings.generation.max_retries,
        )
    return AdmissionController(rate_limiter, budget_guard, cache=cache, lifecycle=lifecycle)
