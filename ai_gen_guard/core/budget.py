"""
Monthly spend ceiling per principal.

The guard sums the spend ledger from the first instant of the current
calendar month and refuses calls that would reach the monthly limit.

Policies:
1. Fail closed - an unreadable ledger denies the call.
2. Advisory, then append - budget is not reserved before the call. Concurrent
   calls from one principal can each pass the check before any of them is
   recorded, so the ceiling can be overrun by at most the cost of the calls
   in flight.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Sequence, Tuple

from .clock import SYSTEM_CLOCK
from .logging_config import get_logger
from ai_gen_guard.storage.models import SpendRecord

logger = get_logger(__name__)

DEFAULT_MONTHLY_LIMIT_USD = 500.0
DEFAULT_ALERT_THRESHOLDS = (0.75, 0.9, 0.95)


@dataclass(frozen=True)
class BudgetDecision:
    """Outcome of a budget check. ``remaining`` is measured before the call."""
    allowed: bool
    total_spent: float
    remaining: float
    reason: Optional[str] = None
    ledger_available: bool = True


def month_start(now: datetime, utc_offset_hours: float = 0.0) -> datetime:
    """First instant of the calendar month containing ``now``, as UTC.

    The month boundary is taken in the fixed ``utc_offset_hours`` zone so
    every check in a deployment agrees on when the month rolls over.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    zone = timezone(timedelta(hours=utc_offset_hours))
    local = now.astimezone(zone)
    start = local.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return start.astimezone(timezone.utc)


class BudgetGuard:
    """Per-principal monthly spend guard over an append-only ledger.

    Args:
        ledger: Object with ``total_since(principal, since)``, ``append(record)``
            and ``has_generation(generation_id)``
        monthly_limit_usd: Spend ceiling per principal per calendar month
        clock: Object with ``now()`` and ``monotonic()``
        utc_offset_hours: Fixed offset defining month boundaries
        spend_cache_ttl_seconds: How long a ledger total is reused (0 disables)
        alert_thresholds: Fractions of the limit that trigger a warning when crossed
    """

    def __init__(
        self,
        ledger,
        monthly_limit_usd: float = DEFAULT_MONTHLY_LIMIT_USD,
        clock=SYSTEM_CLOCK,
        utc_offset_hours: float = 0.0,
        spend_cache_ttl_seconds: float = 10.0,
        alert_thresholds: Sequence[float] = DEFAULT_ALERT_THRESHOLDS,
    ):
        if monthly_limit_usd <= 0:
            raise ValueError("monthly_limit_usd must be > 0")
        if spend_cache_ttl_seconds < 0:
            raise ValueError("spend_cache_ttl_seconds cannot be negative")
        if any(not 0 < t < 1 for t in alert_thresholds):
            raise ValueError("alert_thresholds must be between 0 and 1")

        self.ledger = ledger
        self.monthly_limit_usd = float(monthly_limit_usd)
        self.clock = clock
        self.utc_offset_hours = utc_offset_hours
        self.spend_cache_ttl_seconds = spend_cache_ttl_seconds
        self.alert_thresholds = tuple(sorted(alert_thresholds))

        # principal -> (month start, total, fetched at)
        self._spend_cache: Dict[str, Tuple[datetime, float, float]] = {}
        self._cache_lock = threading.Lock()

    def check_budget(self, principal: str, estimated_cost_usd: float = 0.0) -> BudgetDecision:
        """Decide whether a call costing ``estimated_cost_usd`` fits the budget.

        Never raises for ledger failures; those produce a denial.

        Args:
            principal: User the call is billed to
            estimated_cost_usd: Expected cost of the call

        Returns:
            BudgetDecision with current spend and pre-call remaining budget

        Raises:
            ValueError: If estimated_cost_usd is negative
        """
        if estimated_cost_usd < 0:
            raise ValueError("estimated_cost_usd cannot be negative")

        try:
            total = self.current_spend(principal)
        except Exception as e:
            logger.error("ledger_unavailable", principal=principal, error=str(e))
            return BudgetDecision(
                allowed=False,
                total_spent=0.0,
                remaining=0.0,
                reason="Budget check temporarily unavailable. Please try again.",
                ledger_available=False,
            )

        remaining = max(0.0, self.monthly_limit_usd - total)

        if total + estimated_cost_usd >= self.monthly_limit_usd:
            if estimated_cost_usd > 0 and total < self.monthly_limit_usd:
                reason = (
                    f"Estimated cost ${estimated_cost_usd:.2f} would exceed the monthly "
                    f"AI budget (${total:.2f} / ${self.monthly_limit_usd:.2f}). "
                    f"Remaining: ${remaining:.2f}."
                )
            else:
                reason = (
                    f"Monthly AI budget exceeded (${total:.2f} / "
                    f"${self.monthly_limit_usd:.2f}). Resets next month."
                )
            logger.warning(
                "budget_denied",
                principal=principal,
                total_spent=round(total, 4),
                estimated_cost_usd=estimated_cost_usd,
                monthly_limit_usd=self.monthly_limit_usd,
            )
            return BudgetDecision(
                allowed=False,
                total_spent=total,
                remaining=remaining,
                reason=reason,
            )

        return BudgetDecision(allowed=True, total_spent=total, remaining=remaining)

    def current_spend(self, principal: str) -> float:
        """Spend for the current month, served from the short-lived cache when fresh.

        Raises:
            Whatever the ledger raises when it cannot be read
        """
        since = self.month_start()
        now = self.clock.monotonic()

        with self._cache_lock:
            cached = self._spend_cache.get(principal)
        if cached is not None:
            cached_month, total, fetched_at = cached
            if cached_month == since and now - fetched_at < self.spend_cache_ttl_seconds:
                return total

        total = float(self.ledger.total_since(principal, since))
        with self._cache_lock:
            self._spend_cache[principal] = (since, total, now)
        return total

    def record_spend(
        self,
        principal: str,
        amount_usd: float,
        category: Optional[str] = None,
        model: Optional[str] = None,
        operation: Optional[str] = None,
        generation_id: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> SpendRecord:
        """Append a billed call to the ledger.

        The month's total before this call is read first (from the spend
        cache when fresh) so budget alert thresholds are checked on every
        record. Ledger read and write failures propagate so that no spend is
        lost silently.

        Returns:
            The SpendRecord written
        """
        record = SpendRecord(
            principal=principal,
            amount_usd=amount_usd,
            timestamp=self.clock.now(),
            category=category,
            model=model,
            operation=operation,
            generation_id=generation_id,
            request_id=request_id,
        )
        before = self.current_spend(principal)
        self.ledger.append(record)

        since = self.month_start()
        with self._cache_lock:
            cached = self._spend_cache.get(principal)
            if cached is not None and cached[0] == since:
                self._spend_cache[principal] = (since, cached[1] + amount_usd, cached[2])

        self._log_crossed_thresholds(principal, before, before + amount_usd)

        logger.debug("spend_recorded", principal=principal, amount_usd=amount_usd, operation=operation)
        return record

    def is_billed(self, generation_id: str) -> bool:
        """Whether the ledger already holds the spend for a generation job.

        Raises:
            Whatever the ledger raises when it cannot be read
        """
        return self.ledger.has_generation(generation_id)

    def month_start(self) -> datetime:
        """Start of the current billing month as UTC."""
        return month_start(self.clock.now(), self.utc_offset_hours)

    def invalidate(self, principal: Optional[str] = None) -> None:
        """Forget cached totals for one principal, or all of them."""
        with self._cache_lock:
            if principal is None:
                self._spend_cache.clear()
            else:
                self._spend_cache.pop(principal, None)

    def _log_crossed_thresholds(self, principal: str, before: float, after: float) -> None:
        for threshold in self.alert_thresholds:
            level = threshold * self.monthly_limit_usd
            if before < level <= after:
                logger.warning(
                    "budget_threshold_crossed",
                    principal=principal,
                    threshold=threshold,
                    total_spent=round(after, 4),
                    monthly_limit_usd=self.monthly_limit_usd,
                )
