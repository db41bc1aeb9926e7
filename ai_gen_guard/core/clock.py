"""
Clock abstraction.

Components take a clock instead of reading time directly so tests can
drive time deterministically.
"""

import time
from datetime import datetime, timezone


class SystemClock:
    """Real clock backed by the process monotonic timer and UTC wall time."""

    def monotonic(self) -> float:
        """Seconds from an arbitrary origin, never going backwards."""
        return time.monotonic()

    def now(self) -> datetime:
        """Current timezone-aware UTC time."""
        return datetime.now(timezone.utc)


SYSTEM_CLOCK = SystemClock()
