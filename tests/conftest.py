"""Shared fixtures: a manual clock and a sleep function that only records."""

import pytest

from bookkeeping_resilience.clock import ManualClock


class SleepRecorder:
    """Stands in for asyncio.sleep and remembers every requested delay."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(start=1_000.0)


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()
