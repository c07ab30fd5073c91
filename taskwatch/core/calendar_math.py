"""Local wall-clock calendar arithmetic.

Timestamps are epoch milliseconds. Every computation converts to a naive
datetime in the process-local time zone, does calendar arithmetic there, and
converts back, so a local midnight plus one day is the next local midnight
even across a DST change. No timezone conversion is ever applied.

Weekdays use 0=Sunday .. 6=Saturday throughout the routine engine.
"""

from __future__ import annotations

from calendar import monthrange
from datetime import datetime, timedelta
import time
from typing import Optional

from dateutil.relativedelta import relativedelta

DAY_MS = 24 * 60 * 60 * 1000
MINUTE_MS = 60 * 1000
MINUTES_PER_DAY = 24 * 60


def now_ms() -> int:
    return int(time.time() * 1000)


def to_local(ms: int) -> datetime:
    """Naive local datetime for an epoch-ms timestamp."""
    return datetime.fromtimestamp(ms / 1000)


def from_local(value: datetime) -> int:
    """Epoch ms for a naive local datetime."""
    return int(round(value.timestamp() * 1000))


def local_day_start(ms: int) -> int:
    """Truncate a timestamp to its local midnight."""
    local = to_local(ms)
    return from_local(local.replace(hour=0, minute=0, second=0, microsecond=0))


def js_weekday(value: datetime) -> int:
    return (value.weekday() + 1) % 7


def weekday_of(ms: int) -> int:
    return js_weekday(to_local(ms))


def day_of_month(ms: int) -> int:
    return to_local(ms).day


def month_day_key(ms: int) -> str:
    """"M-D" key of a timestamp's local date, ignoring the year."""
    local = to_local(ms)
    return f"{local.month}-{local.day}"


def last_day_of_month(year: int, month: int) -> int:
    return monthrange(year, month)[1]


def add_days(ms: int, days: int) -> int:
    """Move a timestamp by whole calendar days, keeping its wall-clock time."""
    return from_local(to_local(ms) + timedelta(days=days))


def at_time_of_day(day_start_ms: int, minutes: int) -> int:
    """The local instant `minutes` after the local midnight of `day_start_ms`."""
    midnight = to_local(local_day_start(day_start_ms))
    return from_local(midnight + timedelta(minutes=minutes))


def add_months_clamped(ms: int, months: int, anchor_day: Optional[int] = None) -> int:
    """Add calendar months, clamping the day to the target month's last day.

    ``anchor_day`` pins the day-of-month to aim for (defaults to the day of
    ``ms``), so a rule anchored on the 31st lands on Feb 28/29, Apr 30, and
    comes back to the 31st in months that have one. Time of day is kept.
    """
    base = to_local(ms)
    day = anchor_day if anchor_day is not None else base.day
    day = max(1, min(31, int(day)))
    # relativedelta clamps an absolute day past the month end to the last day
    target = base.replace(day=1) + relativedelta(months=months, day=day)
    return from_local(target)


def days_between(start_ms: int, end_ms: int) -> int:
    """Signed number of local calendar days from start's date to end's date."""
    return to_local(end_ms).date().toordinal() - to_local(start_ms).date().toordinal()


def week_index(ms: int) -> int:
    """Index of the Sunday-start calendar week containing a timestamp."""
    local = to_local(ms)
    # ordinal of the Sunday that opens the week; Sundays are 7 ordinals apart
    return (local.date().toordinal() - js_weekday(local)) // 7


def month_index(ms: int) -> int:
    local = to_local(ms)
    return local.year * 12 + (local.month - 1)


def first_weekday_of_month(year: int, month: int, weekday: int) -> int:
    """Day-of-month of the first `weekday` (0=Sunday) in the month."""
    first = datetime(year, month, 1)
    return 1 + (weekday - js_weekday(first) + 7) % 7


def last_weekday_of_month(year: int, month: int, weekday: int) -> int:
    """Day-of-month of the last `weekday` (0=Sunday) in the month."""
    last_day = last_day_of_month(year, month)
    last = datetime(year, month, last_day)
    return last_day - (js_weekday(last) - weekday + 7) % 7


def format_local_ymd(ms: int) -> str:
    return to_local(ms).strftime("%Y-%m-%d")


def parse_local_ymd(ymd: str) -> Optional[int]:
    """Local midnight of a YYYY-MM-DD string, or None when malformed."""
    try:
        parsed = datetime.strptime(ymd.strip(), "%Y-%m-%d")
    except (AttributeError, ValueError):
        return None
    return from_local(parsed)
