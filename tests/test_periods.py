from __future__ import annotations

from datetime import datetime, timedelta, timezone

from subscriptions.periods import FixedClock, add_months, as_utc_aware, days_left_ceil, resolve_now


def test_add_months_clamps_to_end_of_month() -> None:
    jan31 = datetime(2026, 1, 31, 8, 0, tzinfo=timezone.utc)
    assert add_months(jan31, 1) == datetime(2026, 2, 28, 8, 0, tzinfo=timezone.utc)
    assert add_months(datetime(2024, 1, 31, tzinfo=timezone.utc), 1) == datetime(2024, 2, 29, tzinfo=timezone.utc)
    assert add_months(datetime(2026, 3, 31, tzinfo=timezone.utc), 1) == datetime(2026, 4, 30, tzinfo=timezone.utc)


def test_add_months_rolls_over_year_and_keeps_time() -> None:
    start = datetime(2026, 11, 15, 23, 59, 59, tzinfo=timezone.utc)
    assert add_months(start, 2) == datetime(2027, 1, 15, 23, 59, 59, tzinfo=timezone.utc)
    assert add_months(start, 12) == datetime(2027, 11, 15, 23, 59, 59, tzinfo=timezone.utc)
    assert add_months(start, 0) == start


def test_add_months_is_not_additive_after_clamping() -> None:
    jan31 = datetime(2026, 1, 31, tzinfo=timezone.utc)
    assert add_months(add_months(jan31, 1), 1) == datetime(2026, 3, 28, tzinfo=timezone.utc)
    assert add_months(jan31, 2) == datetime(2026, 3, 31, tzinfo=timezone.utc)


def test_days_left_rounds_partial_days_up() -> None:
    now = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
    assert days_left_ceil(now + timedelta(days=3), now) == 3
    assert days_left_ceil(now + timedelta(days=3, seconds=1), now) == 4
    assert days_left_ceil(now + timedelta(hours=1), now) == 1
    assert days_left_ceil(now, now) == 0
    assert days_left_ceil(now - timedelta(days=2), now) == -2


def test_naive_datetimes_are_read_as_utc() -> None:
    naive = datetime(2026, 3, 10, 12, 0)
    aware = as_utc_aware(naive)
    assert aware.tzinfo == timezone.utc
    assert aware.hour == 12
    assert days_left_ceil(naive + timedelta(days=1), aware) == 1


def test_fixed_clock_advances_only_when_told() -> None:
    clock = FixedClock(datetime(2026, 3, 10, 9, 30))
    first = resolve_now(clock)
    assert first == datetime(2026, 3, 10, 9, 30, tzinfo=timezone.utc)
    assert resolve_now(clock) == first
    clock.advance(days=2, hours=1)
    assert resolve_now(clock) == first + timedelta(days=2, hours=1)


def test_system_clock_is_timezone_aware() -> None:
    assert resolve_now().tzinfo is not None
