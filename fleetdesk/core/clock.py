"""
Injectable time source.

All persisted datetimes are naive UTC; ``to_naive_utc`` normalizes values
arriving from the API.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class SystemClock:
    """Wall clock."""

    def now(self) -> datetime:
        return utcnow()


class FixedClock:
    """Clock pinned to a given instant; used by simulations and tests."""

    def __init__(self, at: datetime):
        self._at = to_naive_utc(at)

    def now(self) -> datetime:
        return self._at

    def advance(self, **kwargs) -> datetime:
        self._at = self._at + timedelta(**kwargs)
        return self._at

    def set(self, at: datetime):
        self._at = to_naive_utc(at)


system_clock = SystemClock()


def get_clock():
    """FastAPI dependency; overridden in tests."""
    return system_clock
