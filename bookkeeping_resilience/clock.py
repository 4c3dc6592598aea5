"""
Clock abstraction.

Every component that reads the time takes a Clock, so tests can move
time forward by hand instead of sleeping.
"""

import time
from typing import Protocol


class Clock(Protocol):
    """Anything that can report the current time in seconds."""

    def now(self) -> float:
        ...


class SystemClock:
    """Wall-clock time from the operating system."""

    def now(self) -> float:
        return time.time()


class ManualClock:
    """
    A clock that only moves when told to.

    Used by tests and simulations:
        clock = ManualClock(start=1000.0)
        clock.advance(61)
    """

    def __init__(self, start: float = 0.0):
        self._now = start

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> float:
        """Move the clock forward and return the new reading."""
        if seconds < 0:
            raise ValueError("ManualClock cannot move backwards")
        self._now += seconds
        return self._now

    def set(self, timestamp: float) -> None:
        self._now = timestamp
