"""
Counting-window arithmetic for usage quotas.

All boundaries are computed in UTC. Daily, monthly and yearly windows are
calendar-aligned (a window rolls over when the UTC day/month/year changes);
weekly windows are rolling 7-day spans measured from the window start.

A `now` earlier than `window_start` (device clock reset, skew between
writers) never counts as an elapsed window.
"""

from datetime import datetime, timedelta
from typing import Optional

from .models import ResetPeriod, ensure_utc

WEEKLY_WINDOW = timedelta(days=7)


def needs_reset(now: datetime, window_start: datetime, reset_period: ResetPeriod) -> bool:
    """Return True when the window that began at `window_start` is over."""
    period = ResetPeriod(reset_period)
    if period == ResetPeriod.NEVER:
        return False

    now = ensure_utc(now)
    window_start = ensure_utc(window_start)
    if now < window_start:
        return False

    if period == ResetPeriod.DAILY:
        return now.date() != window_start.date()
    if period == ResetPeriod.WEEKLY:
        return now - window_start >= WEEKLY_WINDOW
    if period == ResetPeriod.MONTHLY:
        return (now.year, now.month) != (window_start.year, window_start.month)
    if period == ResetPeriod.YEARLY:
        return now.year != window_start.year
    return False


def _start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def _start_of_next_month(value: datetime) -> datetime:
    first = _start_of_day(value).replace(day=1)
    if first.month == 12:
        return first.replace(year=first.year + 1, month=1)
    return first.replace(month=first.month + 1)


def next_window_start(now: datetime, reset_period: ResetPeriod) -> Optional[datetime]:
    """Boundary at which a window opened at `now` rolls over (None for never)."""
    period = ResetPeriod(reset_period)
    now = ensure_utc(now)

    if period == ResetPeriod.NEVER:
        return None
    if period == ResetPeriod.DAILY:
        return _start_of_day(now) + timedelta(days=1)
    if period == ResetPeriod.WEEKLY:
        return now + WEEKLY_WINDOW
    if period == ResetPeriod.MONTHLY:
        return _start_of_next_month(now)
    if period == ResetPeriod.YEARLY:
        return _start_of_day(now).replace(year=now.year + 1, month=1, day=1)
    return None


def window_reset_at(window_start: datetime, reset_period: ResetPeriod) -> Optional[datetime]:
    """End of the window that began at `window_start`."""
    return next_window_start(window_start, reset_period)


def current_window_start(now: datetime, reset_period: ResetPeriod) -> datetime:
    """Start stamp to record for a window opened at `now`."""
    period = ResetPeriod(reset_period)
    now = ensure_utc(now)

    if period == ResetPeriod.DAILY:
        return _start_of_day(now)
    if period == ResetPeriod.MONTHLY:
        return _start_of_day(now).replace(day=1)
    if period == ResetPeriod.YEARLY:
        return _start_of_day(now).replace(month=1, day=1)
    return now
