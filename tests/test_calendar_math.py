"""Tests for local wall-clock calendar arithmetic."""

from datetime import datetime
import os
import time

import pytest

from taskwatch.core.calendar_math import (
    DAY_MS,
    add_days,
    add_months_clamped,
    at_time_of_day,
    day_of_month,
    days_between,
    first_weekday_of_month,
    format_local_ymd,
    from_local,
    last_weekday_of_month,
    local_day_start,
    month_day_key,
    parse_local_ymd,
    to_local,
    week_index,
    weekday_of,
)


def at(*parts: int) -> int:
    return from_local(datetime(*parts))


# =============================================================================
# Day and month arithmetic
# =============================================================================


class TestDayArithmetic:
    """Truncation, day stepping and time-of-day placement."""

    def test_local_day_start_truncates_to_midnight(self) -> None:
        assert local_day_start(at(2024, 3, 15, 13, 45)) == at(2024, 3, 15)

    def test_add_days_crosses_month_end(self) -> None:
        assert add_days(at(2024, 1, 31, 23, 0), 1) == at(2024, 2, 1, 23, 0)

    def test_add_days_backwards(self) -> None:
        assert add_days(at(2024, 3, 1), -1) == at(2024, 2, 29)

    def test_at_time_of_day_uses_the_local_midnight(self) -> None:
        assert at_time_of_day(at(2024, 5, 7, 18, 30), 9 * 60 + 15) == at(2024, 5, 7, 9, 15)

    def test_days_between_counts_calendar_days(self) -> None:
        assert days_between(at(2024, 1, 31, 23, 0), at(2024, 2, 1, 0, 30)) == 1
        assert days_between(at(2024, 2, 1), at(2024, 1, 30)) == -2


class TestMonthArithmetic:
    """Month stepping clamps to the target month's last day."""

    def test_leap_february(self) -> None:
        assert add_months_clamped(at(2024, 1, 31, 9, 0), 1) == at(2024, 2, 29, 9, 0)

    def test_common_february(self) -> None:
        assert add_months_clamped(at(2023, 1, 31), 1) == at(2023, 2, 28)

    def test_anchor_day_comes_back(self) -> None:
        assert add_months_clamped(at(2024, 2, 29), 1, anchor_day=31) == at(2024, 3, 31)

    def test_negative_months(self) -> None:
        assert add_months_clamped(at(2024, 3, 31), -1) == at(2024, 2, 29)

    def test_crosses_year(self) -> None:
        assert add_months_clamped(at(2024, 11, 30), 3) == at(2025, 2, 28)


# =============================================================================
# Weekdays and weeks
# =============================================================================


class TestWeekdays:
    """Weekdays are numbered 0=Sunday .. 6=Saturday."""

    def test_weekday_of_sunday_is_zero(self) -> None:
        assert weekday_of(at(2024, 1, 7)) == 0
        assert weekday_of(at(2024, 1, 8)) == 1
        assert weekday_of(at(2024, 1, 13)) == 6

    def test_week_index_starts_on_sunday(self) -> None:
        sunday = week_index(at(2024, 1, 7))
        assert week_index(at(2024, 1, 13, 23, 59)) == sunday
        assert week_index(at(2024, 1, 14)) == sunday + 1
        assert week_index(at(2024, 1, 6)) == sunday - 1

    def test_first_weekday_of_month(self) -> None:
        # May 2024 opens on a Wednesday
        assert first_weekday_of_month(2024, 5, 2) == 7
        assert first_weekday_of_month(2024, 5, 3) == 1

    def test_last_weekday_of_month(self) -> None:
        assert last_weekday_of_month(2024, 2, 4) == 29
        assert last_weekday_of_month(2024, 2, 5) == 23


# =============================================================================
# Keys and formatting
# =============================================================================


class TestKeys:
    def test_month_day_key(self) -> None:
        assert month_day_key(at(2024, 2, 29, 10, 0)) == "2-29"
        assert day_of_month(at(2024, 2, 29, 10, 0)) == 29

    def test_ymd_round_trip(self) -> None:
        assert format_local_ymd(parse_local_ymd("2024-03-05")) == "2024-03-05"
        assert parse_local_ymd("2024-03-05") == at(2024, 3, 5)

    @pytest.mark.parametrize("value", ["2024-02-30", "bad", "", None])
    def test_parse_rejects_malformed(self, value) -> None:
        assert parse_local_ymd(value) is None


# =============================================================================
# Daylight saving
# =============================================================================


@pytest.fixture
def new_york_tz():
    if not os.path.exists("/usr/share/zoneinfo/America/New_York"):
        pytest.skip("zoneinfo database not installed")
    os.environ["TZ"] = "America/New_York"
    time.tzset()
    yield
    os.environ["TZ"] = "UTC"
    time.tzset()


class TestDaylightSaving:
    """Day steps keep the wall-clock time across a DST change."""

    def test_spring_forward_day_is_23_hours(self, new_york_tz) -> None:
        start = at(2024, 3, 9, 9, 0)
        following = add_days(start, 1)
        assert to_local(following) == datetime(2024, 3, 10, 9, 0)
        assert following - start == DAY_MS - 60 * 60 * 1000

    def test_day_start_on_transition_day(self, new_york_tz) -> None:
        assert to_local(local_day_start(at(2024, 3, 10, 10, 0))) == datetime(2024, 3, 10)
