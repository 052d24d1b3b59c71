"""Injectable time sources.

Every read of "now" in the ingestion path goes through a Clock so that
receipt times and future-time validation can be pinned in tests.
"""
from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime):
        self._now = ensure_utc(start)

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime):
        self._now = ensure_utc(value)

    def advance(self, delta: timedelta | None = None, **kwargs) -> datetime:
        """Move forward by ``delta`` or by timedelta keyword arguments."""
        self._now = self._now + (delta or timedelta(**kwargs))
        return self._now


def ensure_utc(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC and normalize aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
