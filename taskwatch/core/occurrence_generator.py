"""Occurrence Generator for recurring session rules.

Pure, synchronous functions over a normalized ``RecurrenceRule``. Nothing
here materializes an unbounded sequence: every forward walk is capped, and
the caps are part of the contract.

- FIRST_OCCURRENCE_MAX_STEPS bounds the search for the first occurrence.
- LAST_OCCURRENCE_MAX_STEPS bounds every other forward walk.
- ANNUAL_LEAP_SEARCH_BLOCKS bounds the search for a year that has the
  anchor's month/day (Feb 29).

Functions never raise for malformed rules; they return None or False.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from taskwatch.core.calendar_math import (
    DAY_MS,
    add_days,
    add_months_clamped,
    at_time_of_day,
    day_of_month,
    days_between,
    first_weekday_of_month,
    from_local,
    last_day_of_month,
    last_weekday_of_month,
    local_day_start,
    month_day_key,
    month_index,
    to_local,
    week_index,
    weekday_of,
)

if TYPE_CHECKING:
    from taskwatch.schemas.recurrence_rule import RecurrenceRule

FIRST_OCCURRENCE_MAX_STEPS = 800
LAST_OCCURRENCE_MAX_STEPS = 10_000
ANNUAL_LEAP_SEARCH_BLOCKS = 8


def _interval(rule: RecurrenceRule) -> int:
    return max(1, int(rule.repeat_every or 1))


def _anchor_day_start(rule: RecurrenceRule) -> Optional[int]:
    anchor = rule.anchor_ms
    return local_day_start(anchor) if anchor is not None else None


def _anchor_day_of_month(rule: RecurrenceRule) -> Optional[int]:
    anchor = rule.anchor_ms
    return day_of_month(anchor) if anchor is not None else None


def _monthly_pattern(rule: RecurrenceRule) -> str:
    return rule.monthly_pattern if rule.monthly_pattern in ("first", "last") else "day"


def _monthly_weekday(rule: RecurrenceRule) -> Optional[int]:
    if rule.day_of_week:
        return rule.day_of_week[0]
    anchor = rule.anchor_ms
    return weekday_of(anchor) if anchor is not None else None


def rule_window_is_valid(rule: RecurrenceRule) -> bool:
    """False when an explicit start lies after the explicit end."""
    if rule.start_at_ms is None or rule.end_at_ms is None:
        return True
    return rule.start_at_ms <= rule.end_at_ms


def rule_interval_allows_day(rule: RecurrenceRule, day_start: int) -> bool:
    """Whether ``day_start`` sits on an allowed multiple of the base unit.

    Counted from the anchor day: days for daily, Sunday-start calendar weeks
    for weekly, calendar months for monthly, years for annually. Days before
    the anchor are never allowed. Without an anchor the check is fail-open.
    """
    interval = _interval(rule)
    if interval == 1:
        return True
    anchor_day = _anchor_day_start(rule)
    if anchor_day is None:
        return True
    diff_days = days_between(anchor_day, day_start)
    if diff_days < 0:
        return False
    if rule.frequency == "daily":
        return diff_days % interval == 0
    if rule.frequency == "weekly":
        return (week_index(day_start) - week_index(anchor_day)) % interval == 0
    if rule.frequency == "monthly":
        return (month_index(day_start) - month_index(anchor_day)) % interval == 0
    if rule.frequency == "annually":
        return (to_local(day_start).year - to_local(anchor_day).year) % interval == 0
    return True


def rule_matches_day(rule: RecurrenceRule, day_start: int) -> bool:
    """Frequency-specific predicate: does the rule occur on this local day?"""
    if rule.frequency == "daily":
        return rule_interval_allows_day(rule, day_start)

    if rule.frequency == "weekly":
        days = rule.day_of_week or ()
        # an empty weekday set matches every day
        if days and weekday_of(day_start) not in days:
            return False
        return rule_interval_allows_day(rule, day_start)

    if rule.frequency == "monthly":
        local = to_local(day_start)
        pattern = _monthly_pattern(rule)
        if pattern == "day":
            anchor_dom = _anchor_day_of_month(rule)
            if anchor_dom is None:
                return False
            expected = min(anchor_dom, last_day_of_month(local.year, local.month))
            return local.day == expected and rule_interval_allows_day(rule, day_start)
        weekday = _monthly_weekday(rule)
        if weekday is None:
            return False
        if pattern == "first":
            expected = first_weekday_of_month(local.year, local.month, weekday)
        else:
            expected = last_weekday_of_month(local.year, local.month, weekday)
        return local.day == expected and rule_interval_allows_day(rule, day_start)

    if rule.frequency == "annually":
        anchor = rule.anchor_ms
        if anchor is None:
            return False
        # exact month/day: a Feb 29 anchor only occurs in leap years
        if month_day_key(day_start) != month_day_key(anchor):
            return False
        return rule_interval_allows_day(rule, day_start)

    return False


def next_occurrence_start(rule: RecurrenceRule, current_start: int) -> Optional[int]:
    """The next occurrence start strictly after ``current_start``'s day.

    None when the step leaves the representable calendar range, e.g. a huge
    ``repeat_every``.
    """
    try:
        return _advance(rule, current_start)
    except (ValueError, OverflowError, OSError):
        return None


def _advance(rule: RecurrenceRule, current_start: int) -> int:
    interval = _interval(rule)
    minutes = rule.time_of_day_minutes
    current_day = local_day_start(current_start)

    if rule.frequency == "daily":
        return at_time_of_day(add_days(current_day, interval), minutes)

    if rule.frequency == "weekly":
        dow = weekday_of(current_day)
        days = sorted(rule.day_of_week or ())
        later = [d - dow for d in days if d > dow]
        if later:
            return at_time_of_day(add_days(current_day, min(later)), minutes)
        # wrap to the first configured weekday of the next interval block
        first_day = days[0] if days else dow
        return at_time_of_day(add_days(current_day, interval * 7 - (dow - first_day)), minutes)

    if rule.frequency == "monthly":
        pattern = _monthly_pattern(rule)
        if pattern == "day":
            anchor_dom = _anchor_day_of_month(rule) or day_of_month(current_start)
            return at_time_of_day(add_months_clamped(current_day, interval, anchor_dom), minutes)
        weekday = _monthly_weekday(rule)
        if weekday is None:
            return current_start + DAY_MS
        month_start = to_local(add_months_clamped(current_day, interval, 1))
        if pattern == "first":
            day = first_weekday_of_month(month_start.year, month_start.month, weekday)
        else:
            day = last_weekday_of_month(month_start.year, month_start.month, weekday)
        return at_time_of_day(from_local(month_start.replace(day=day)), minutes)

    if rule.frequency == "annually":
        base = to_local(current_day)
        anchor = rule.anchor_ms
        reference = to_local(anchor) if anchor is not None else base
        year = base.year + interval
        # Feb 29 anchors skip interval blocks until a leap year
        for _ in range(ANNUAL_LEAP_SEARCH_BLOCKS):
            if reference.day <= last_day_of_month(year, reference.month):
                return at_time_of_day(from_local(datetime(year, reference.month, reference.day)), minutes)
            year += interval
        raise ValueError(f"no {reference.month}-{reference.day} within reach of {base.year}")

    return current_start + DAY_MS


def first_occurrence_start(rule: RecurrenceRule) -> Optional[int]:
    """First occurrence at or after the anchor, or None.

    Walks forward from the anchor day at the rule's time of day for at most
    FIRST_OCCURRENCE_MAX_STEPS candidates.
    """
    anchor = rule.anchor_ms
    if anchor is None:
        return None
    try:
        candidate = at_time_of_day(anchor, rule.time_of_day_minutes)
    except (ValueError, OverflowError, OSError):
        return None
    for _ in range(FIRST_OCCURRENCE_MAX_STEPS):
        if candidate >= anchor and rule_matches_day(rule, local_day_start(candidate)):
            return candidate
        candidate = next_occurrence_start(rule, candidate)
        if candidate is None:
            return None
    return None


def compute_end_date_after_occurrences(rule: RecurrenceRule, occurrences: int) -> Optional[int]:
    """Start of the Nth occurrence counted from the first one (N >= 1)."""
    try:
        count = max(1, int(occurrences))
    except (TypeError, ValueError):
        return None
    current = first_occurrence_start(rule)
    if current is None:
        return None
    for _ in range(1, count):
        following = next_occurrence_start(rule, current)
        if following is None:
            return None
        if following <= current:
            return current
        current = following
    return current


def compute_last_occurrence_before_boundary(rule: RecurrenceRule, boundary_exclusive_ms: int) -> Optional[int]:
    """Latest occurrence start strictly before the boundary, or None."""
    if boundary_exclusive_ms is None:
        return None
    limit = max(0, int(boundary_exclusive_ms))
    current = first_occurrence_start(rule)
    if current is None or current >= limit:
        return None
    for _ in range(LAST_OCCURRENCE_MAX_STEPS):
        following = next_occurrence_start(rule, current)
        if following is None or following >= limit or following <= current:
            return current
        current = following
    return current


def occurrences_in_range(rule: RecurrenceRule, range_start_ms: int, range_end_ms: int) -> List[int]:
    """Occurrence starts in ``[range_start_ms, range_end_ms)``.

    Honors the rule's inclusive ``end_at_ms``. Empty when the first
    occurrence cannot be established.
    """
    if range_end_ms <= range_start_ms:
        return []
    current = first_occurrence_start(rule)
    if current is None:
        return []
    found: List[int] = []
    for _ in range(LAST_OCCURRENCE_MAX_STEPS):
        if current >= range_end_ms:
            break
        if rule.end_at_ms is not None and current > rule.end_at_ms:
            break
        if current >= range_start_ms and rule_matches_day(rule, local_day_start(current)):
            found.append(current)
        following = next_occurrence_start(rule, current)
        if following is None or following <= current:
            break
        current = following
    return found


def count_occurrences_in_range(rule: RecurrenceRule, range_start_ms: int, range_end_ms: int) -> int:
    return len(occurrences_in_range(rule, range_start_ms, range_end_ms))


def next_occurrence_after(rule: RecurrenceRule, after_ms: int) -> Optional[int]:
    """Skip forward to the first valid occurrence strictly after ``after_ms``."""
    current = first_occurrence_start(rule)
    if current is None:
        return None
    for _ in range(LAST_OCCURRENCE_MAX_STEPS):
        if rule.end_at_ms is not None and current > rule.end_at_ms:
            return None
        if current > after_ms and rule_matches_day(rule, local_day_start(current)):
            return current
        following = next_occurrence_start(rule, current)
        if following is None or following <= current:
            return None
        current = following
    return None
