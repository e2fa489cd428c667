"""
Clock and date rules.
All "today" computations go through one injected Clock so callers can pin time.
"""
from datetime import date, datetime
from typing import Optional

import pytz

from ..config import settings


class Clock:
    """Source of the current time. Subclass to pin time."""

    def now(self) -> datetime:
        raise NotImplementedError

    def today(self) -> date:
        return self.now().date()

    def utcnow(self) -> datetime:
        """Naive UTC timestamp for storage columns."""
        return self.now().astimezone(pytz.UTC).replace(tzinfo=None)


class SystemClock(Clock):
    def __init__(self, timezone_str: Optional[str] = None):
        self.tz = pytz.timezone(timezone_str or settings.tz_default)

    def now(self) -> datetime:
        return datetime.now(self.tz)


def get_clock() -> Clock:
    """FastAPI dependency; overridden in tests."""
    return SystemClock()
