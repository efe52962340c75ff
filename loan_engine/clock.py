"""
Injectable clock.

Every component reads "now" through a Clock so batch runs and tests can pin
the calendar date.
"""

import threading
from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional


class Clock(ABC):
    """Source of the current time (always timezone-aware UTC)"""

    @abstractmethod
    def now(self) -> datetime:
        pass

    def today(self) -> date:
        return self.now().date()


class SystemClock(Clock):
    """Wall-clock time"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """A clock that only moves when told to"""

    def __init__(self, current: Optional[datetime] = None):
        self._lock = threading.Lock()
        self._current = _as_utc(current or datetime.now(timezone.utc))

    def now(self) -> datetime:
        with self._lock:
            return self._current

    def set(self, current) -> None:
        with self._lock:
            self._current = _as_utc(current)

    def advance(self, days: int = 0, seconds: int = 0) -> datetime:
        with self._lock:
            self._current = self._current + timedelta(days=days, seconds=seconds)
            return self._current


def _as_utc(value) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time(9, 0), tzinfo=timezone.utc)
    raise TypeError(f"Expected date or datetime, got {type(value).__name__}")
