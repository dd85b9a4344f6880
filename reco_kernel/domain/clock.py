"""
Clock -- injectable time for the view and the rules.

Responsibility:
    Services never call ``datetime.now()`` or ``date.today()``.  "Today"
    decides the transient view flags (newly added, updated by an automated
    actor), the rule day-deltas (days since trigger, since last reminder)
    and the audit stamps of a save, so tests must be able to pin it.

Architecture position:
    Kernel > Domain -- pure.  SystemClock is the one place that reads the
    wall clock.

Invariants enforced:
    - ``now()`` is timezone-aware UTC; ``today()`` is its UTC date.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone

DEFAULT_TEST_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class Clock(ABC):

    @abstractmethod
    def now(self) -> datetime:
        ...

    def today(self) -> date:
        return self.now().date()


class SystemClock(Clock):

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Clock that only moves when told to.

    Usage:
        clock = DeterministicClock(datetime(2024, 3, 15, 9, 0, tzinfo=timezone.utc))
        clock.advance(120)        # past a two-minute rule cache TTL
        clock.advance(days=30)    # a reminder cycle later
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._current = self._utc(fixed_time or DEFAULT_TEST_TIME)

    @staticmethod
    def _utc(value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("DeterministicClock needs a timezone-aware datetime")
        return value.astimezone(timezone.utc)

    def now(self) -> datetime:
        return self._current

    def set_time(self, value: datetime) -> None:
        self._current = self._utc(value)

    def advance(self, seconds: float = 0, *, days: int = 0) -> None:
        self._current += timedelta(days=days, seconds=seconds)
