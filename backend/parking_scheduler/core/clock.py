"""
Clock abstraction.

Every service reads time through a Clock so scheduler ticks and lifecycle
windows (check-in, cancellation deadline, waitlist offers) can be tested
deterministically with FrozenClock.
"""

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from parking_scheduler.core.config import get_settings


class Clock:
    """Wall clock returning timezone-aware UTC datetimes."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def today(self) -> date:
        """Calendar date in the configured scheduling timezone."""
        return self.now().astimezone(local_zone()).date()


class FrozenClock(Clock):
    """Clock pinned to an instant; advanced explicitly by tests."""

    def __init__(self, instant: datetime):
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        self._instant = instant

    def now(self) -> datetime:
        return self._instant

    def set(self, instant: datetime) -> None:
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        self._instant = instant

    def advance(self, **kwargs) -> datetime:
        self._instant = self._instant + timedelta(**kwargs)
        return self._instant


def local_zone() -> ZoneInfo:
    return ZoneInfo(get_settings().TIMEZONE)


system_clock = Clock()
