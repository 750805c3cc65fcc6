"""
Dispatch Engine - Clock.

============================================================
RESPONSIBILITY
============================================================
Single time source for timestamps, offer deadlines, quota
windows and timeout budgets.

- UTC only
- Mockable so lifecycle tests are deterministic

============================================================
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from typing import Optional
import threading


# ============================================================
# CLOCK PROTOCOL
# ============================================================

class ClockProtocol(ABC):
    """Abstract interface for the dispatch clock."""

    @abstractmethod
    def now(self) -> datetime:
        """Get current UTC datetime."""
        pass

    def today(self) -> date:
        """Get current UTC date."""
        return self.now().date()

    def start_of_day(self) -> datetime:
        """UTC midnight of the current day."""
        return self.now().replace(hour=0, minute=0, second=0, microsecond=0)

    def seconds_since(self, moment: datetime) -> float:
        """Seconds elapsed since `moment` (negative if in the future)."""
        return (self.now() - moment).total_seconds()

    def after(self, seconds: float) -> datetime:
        """Datetime `seconds` from now."""
        return self.now() + timedelta(seconds=seconds)


# ============================================================
# SYSTEM CLOCK (PRODUCTION)
# ============================================================

class SystemClock(ClockProtocol):
    """Production clock using actual system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


# ============================================================
# MOCK CLOCK (TESTING)
# ============================================================

class MockClock(ClockProtocol):
    """
    Mock clock for testing.

    Time only moves when the test moves it.
    """

    def __init__(self, initial_time: Optional[datetime] = None):
        """
        Initialize mock clock.

        Args:
            initial_time: Starting time (defaults to current UTC)
        """
        initial_time = initial_time or datetime.now(timezone.utc)
        if initial_time.tzinfo is None:
            initial_time = initial_time.replace(tzinfo=timezone.utc)
        self._time = initial_time
        self._lock = threading.Lock()

    def now(self) -> datetime:
        """Get current (mocked) datetime."""
        with self._lock:
            return self._time

    def set_time(self, new_time: datetime) -> None:
        """Set the current time."""
        with self._lock:
            if new_time.tzinfo is None:
                new_time = new_time.replace(tzinfo=timezone.utc)
            self._time = new_time

    def advance(self, seconds: float = 0, **kwargs) -> None:
        """
        Advance time by the specified amount.

        Args:
            seconds: Number of seconds to advance
            **kwargs: Passed to timedelta (hours, minutes, days, etc.)
        """
        with self._lock:
            self._time = self._time + timedelta(seconds=seconds, **kwargs)
