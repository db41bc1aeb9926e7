"""
Shared test fixtures.
"""

from datetime import datetime, timedelta, timezone

import pytest


class FakeClock:
    """Manually advanced clock; monotonic and wall time move together."""

    def __init__(self, start: datetime = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)):
        self._monotonic = 1000.0
        self._now = start

    def monotonic(self) -> float:
        return self._monotonic

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> None:
        self._monotonic += seconds
        self._now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()
