"""
In-memory memoization of deterministic AI responses.

Requests are keyed by the SHA-256 digest of the exact payload, so prompts
are never held verbatim. The cache is an optimization only: a miss or a
full eviction changes cost and latency, never the result. It lives in
process memory and gives no cross-process at-most-once guarantee.
"""

import hashlib
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Optional, Union

from .clock import SYSTEM_CLOCK
from .logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 10 * 60
DEFAULT_MAX_ENTRIES = 200


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    created_at: float


def request_digest(request_key: Union[str, bytes]) -> str:
    """Fixed-length hex digest of a request payload."""
    if isinstance(request_key, str):
        request_key = request_key.encode("utf-8")
    return hashlib.sha256(request_key).hexdigest()


class ResponseCache:
    """TTL and size bounded response cache.

    Entries are kept in creation order, so both expiry and capacity eviction
    remove from the front. Each access expires at most ``sweep_batch``
    entries, keeping the work per call bounded; anything stale beyond that is
    still hidden from ``get`` and removed on a later call.

    Args:
        ttl_seconds: Lifetime of an entry
        max_entries: Hard ceiling on entry count
        clock: Object with a ``monotonic()`` method
        sweep_batch: Maximum expired entries removed per access
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock=SYSTEM_CLOCK,
        sweep_batch: int = 64,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        if sweep_batch < 1:
            raise ValueError("sweep_batch must be >= 1")

        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.clock = clock
        self.sweep_batch = sweep_batch

        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        # One lock for all keys; the critical section is bounded and does no I/O.
        self._lock = threading.Lock()

    def get(self, request_key: Union[str, bytes]) -> Optional[Any]:
        """Return the cached value for a request, or None on a miss."""
        key = request_digest(request_key)
        with self._lock:
            now = self.clock.monotonic()
            self._evict(now)
            entry = self._entries.get(key)
            if entry is None:
                return None
            if now - entry.created_at >= self.ttl_seconds:
                del self._entries[key]
                return None
            return entry.value

    def set(self, request_key: Union[str, bytes], value: Any) -> None:
        """Store a response. Re-setting a key restarts its lifetime."""
        key = request_digest(request_key)
        with self._lock:
            now = self.clock.monotonic()
            self._evict(now)
            self._entries.pop(key, None)
            self._entries[key] = CacheEntry(value=value, created_at=now)
            self._evict_overflow()

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, request_key) -> bool:
        return self.get(request_key) is not None

    def _evict(self, now: float) -> None:
        expired = 0
        while self._entries and expired < self.sweep_batch:
            key, entry = next(iter(self._entries.items()))
            if now - entry.created_at < self.ttl_seconds:
                break
            del self._entries[key]
            expired += 1
        if expired:
            logger.debug("cache_entries_expired", count=expired)
        self._evict_overflow()

    def _evict_overflow(self) -> None:
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
