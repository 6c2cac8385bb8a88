from __future__ import annotations

import abc
import calendar
import math
from datetime import datetime, timedelta, timezone
from typing import Optional

SECONDS_PER_DAY = 86_400


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc_aware(value: datetime) -> datetime:
    """
    Normalize datetimes to UTC aware.

    SQLite hands back offset-naive values even for DateTime(timezone=True)
    columns; those are treated as UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def optional_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return as_utc_aware(value)


class Clock(abc.ABC):
    @abc.abstractmethod
    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return utc_now()


class FixedClock(Clock):
    """Clock pinned to one instant; `advance` moves it forward."""

    def __init__(self, current: datetime) -> None:
        self._current = as_utc_aware(current)

    def now(self) -> datetime:
        return self._current

    def advance(self, **delta: float) -> datetime:
        self._current = self._current + timedelta(**delta)
        return self._current


SYSTEM_CLOCK: Clock = SystemClock()


def resolve_now(clock: Optional[Clock] = None) -> datetime:
    return as_utc_aware((clock or SYSTEM_CLOCK).now())


def add_months(value: datetime, months: int) -> datetime:
    """
    Calendar-month addition clamped to the last day of the target month.

    Jan 31 + 1 month is Feb 28 (or 29), never Mar 2/3. Time of day and tzinfo
    are preserved.
    """
    total = value.year * 12 + (value.month - 1) + int(months)
    year, month_index = divmod(total, 12)
    month = month_index + 1
    last_day = calendar.monthrange(year, month)[1]
    return value.replace(year=year, month=month, day=min(value.day, last_day))


def days_left_ceil(expiration: datetime, now: datetime) -> int:
    seconds = (as_utc_aware(expiration) - as_utc_aware(now)).total_seconds()
    return int(math.ceil(seconds / SECONDS_PER_DAY))
