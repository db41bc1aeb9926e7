"""
Per-principal token bucket rate limiting.

Each (principal, category) pair owns a continuous token bucket: tokens refill
at a fixed rate up to the category capacity and every admitted request
consumes one. Buckets live in process memory and are created full on first
use.

Locking:
- Each bucket has its own lock, so principals never contend with each other.
- The registry lock only guards bucket creation and removal.
- Idle buckets are swept in small batches. A sweep never waits on a busy
  bucket and is skipped while another sweep runs.
"""

import math
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from itertools import islice
from typing import Dict, Optional, Tuple

from .clock import SYSTEM_CLOCK
from .logging_config import get_logger

logger = get_logger(__name__)

BucketKey = Tuple[str, str]

# Absorbs float error in elapsed * refill_rate.
_TOKEN_EPSILON = 1e-9


@dataclass(frozen=True)
class RateLimitCategory:
    """Burst capacity and refill rate (tokens per second) for a category."""
    capacity: float
    refill_rate: float

    def __post_init__(self):
        if self.capacity < 1:
            raise ValueError("capacity must be >= 1")
        if self.refill_rate <= 0:
            raise ValueError("refill_rate must be > 0")


def default_categories(media_environment: str = "preview") -> Dict[str, RateLimitCategory]:
    """Built-in categories. Media generation is looser in production."""
    media_limit = 50 if media_environment == "production" else 10
    return {
        "ai-text": RateLimitCategory(capacity=10, refill_rate=10 / 60),
        "ai-media": RateLimitCategory(capacity=media_limit, refill_rate=media_limit / 60),
        "api-general": RateLimitCategory(capacity=60, refill_rate=1),
    }


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a rate limit check."""
    allowed: bool
    retry_after_seconds: Optional[int] = None
    reason: Optional[str] = None


@dataclass
class RateBucket:
    """Mutable bucket state. Only touched while holding ``lock``."""
    tokens: float
    capacity: float
    last_refill: float
    last_seen: float
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class RateLimiter:
    """In-process token bucket limiter keyed by (principal, category).

    Args:
        categories: Category name to RateLimitCategory
        clock: Object with a ``monotonic()`` method
        idle_ttl_seconds: Buckets untouched this long are evicted
        sweep_batch: Maximum buckets inspected per sweep
    """

    def __init__(
        self,
        categories: Optional[Dict[str, RateLimitCategory]] = None,
        clock=SYSTEM_CLOCK,
        idle_ttl_seconds: float = 600.0,
        sweep_batch: int = 32,
    ):
        if idle_ttl_seconds <= 0:
            raise ValueError("idle_ttl_seconds must be > 0")
        if sweep_batch < 1:
            raise ValueError("sweep_batch must be >= 1")

        self.categories = dict(categories) if categories is not None else default_categories()
        self.clock = clock
        self.idle_ttl_seconds = idle_ttl_seconds
        self.sweep_batch = sweep_batch

        self._buckets: "OrderedDict[BucketKey, RateBucket]" = OrderedDict()
        self._registry_lock = threading.Lock()
        self._sweep_lock = threading.Lock()

    def check(
        self,
        principal: str,
        category: str,
        capacity_override: Optional[float] = None,
    ) -> RateLimitDecision:
        """Consume one token for the principal if available.

        Args:
            principal: User the request is made on behalf of
            category: Rate limit category name
            capacity_override: Optional burst capacity replacing the category's

        Returns:
            RateLimitDecision; denials carry a retry-after hint in seconds

        Raises:
            ValueError: If category is unknown
        """
        config = self._get_category(category)
        capacity = float(capacity_override if capacity_override is not None else config.capacity)

        self._sweep_idle()

        bucket = self._get_or_create_bucket((principal, category), capacity)
        with bucket.lock:
            bucket.capacity = capacity
            now = self.clock.monotonic()
            elapsed = max(0.0, now - bucket.last_refill)
            bucket.tokens = min(capacity, bucket.tokens + elapsed * config.refill_rate)
            bucket.last_refill = now
            bucket.last_seen = now

            if bucket.tokens >= 1 - _TOKEN_EPSILON:
                bucket.tokens = max(0.0, bucket.tokens - 1)
                return RateLimitDecision(allowed=True)

            retry_after = max(1, math.ceil((1 - bucket.tokens) / config.refill_rate - _TOKEN_EPSILON))

        logger.info(
            "rate_limited",
            principal=principal,
            category=category,
            retry_after_seconds=retry_after,
        )
        return RateLimitDecision(
            allowed=False,
            retry_after_seconds=retry_after,
            reason=f"Rate limit exceeded. Try again in {retry_after}s.",
        )

    def snapshot(self, principal: str, category: str) -> Optional[Tuple[float, float]]:
        """Return (tokens, capacity) for a bucket without refilling it.

        Capacity is the one applied by the last check, override included.
        """
        self._get_category(category)
        with self._registry_lock:
            bucket = self._buckets.get((principal, category))
        if bucket is None:
            return None
        with bucket.lock:
            return bucket.tokens, bucket.capacity

    def reset(self) -> None:
        """Drop all buckets, replenishing every principal."""
        with self._registry_lock:
            self._buckets.clear()

    def __len__(self) -> int:
        return len(self._buckets)

    def _get_category(self, category: str) -> RateLimitCategory:
        if category not in self.categories:
            raise ValueError(f"Unknown rate limit category: {category}")
        return self.categories[category]

    def _get_or_create_bucket(self, key: BucketKey, capacity: float) -> RateBucket:
        with self._registry_lock:
            now = self.clock.monotonic()
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = RateBucket(tokens=capacity, capacity=capacity, last_refill=now, last_seen=now)
                self._buckets[key] = bucket
            else:
                # Registry order is least recently seen first.
                self._buckets.move_to_end(key)
                bucket.last_seen = now
            return bucket

    def _sweep_idle(self) -> None:
        """Evict up to ``sweep_batch`` idle buckets from the least recently seen end."""
        if not self._sweep_lock.acquire(blocking=False):
            return
        try:
            now = self.clock.monotonic()
            evicted = 0
            with self._registry_lock:
                for key, bucket in list(islice(self._buckets.items(), self.sweep_batch)):
                    if now - bucket.last_seen < self.idle_ttl_seconds:
                        break
                    # A held lock means the bucket is in use right now.
                    if not bucket.lock.acquire(blocking=False):
                        continue
                    try:
                        del self._buckets[key]
                        evicted += 1
                    finally:
                        bucket.lock.release()

            if evicted:
                logger.debug("rate_buckets_evicted", count=evicted)
        finally:
            self._sweep_lock.release()
