"""
Clock Service

Every "today" in the engine comes from an injected clock: generation
windows, overdue status and upcoming bills all depend on it, and batch
jobs must be reproducible in tests.
"""

from datetime import date
from typing import Protocol


class Clock(Protocol):
    """Anything that can say what day it is."""

    def today(self) -> date:
        ...


class SystemClock:
    """The real calendar (local date)."""

    def today(self) -> date:
        return date.today()


class FixedClock:
    """A clock pinned to one day. Use in tests and for backfills."""

    def __init__(self, fixed: date):
        self._fixed = fixed

    def today(self) -> date:
        return self._fixed

    def set(self, fixed: date) -> None:
        self._fixed = fixed
