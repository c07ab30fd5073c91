"""Tests for guide synthesis and guide actions."""

from datetime import datetime

import pytest

from taskwatch.core.calendar_math import from_local
from taskwatch.errors import RuleNotFoundError, RuleValidationError
from taskwatch.schemas.recurrence_rule import RecurrenceRule
from taskwatch.schemas.routine_exception import RoutineException
from taskwatch.schemas.routines import HistoryEntryIn
from taskwatch.services.guide_service import build_guides
from taskwatch.utils.metrics import GUIDE_SYNTHESIS_SECONDS, RULES_RETIRED, metrics_collector

USER_ID = "user-1"
HOUR_MS = 60 * 60 * 1000


def at(*parts: int) -> int:
    return from_local(datetime(*parts))


def created_daily(**fields) -> RecurrenceRule:
    values = {
        "id": "r1",
        "frequency": "daily",
        "time_of_day_minutes": 9 * 60,
        "duration_minutes": 60,
        "task_name": "Piano",
        "start_at_ms": at(2024, 1, 1, 9, 0),
        "created_at_ms": at(2024, 1, 1, 9, 0),
    }
    values.update(fields)
    return RecurrenceRule(**values)


def exception(action: str, occurrence_date: str, **fields) -> RoutineException:
    return RoutineException(
        id=f"{action}-{occurrence_date}",
        routine_id="r1",
        occurrence_date=occurrence_date,
        action=action,
        **fields,
    )


# =============================================================================
# Pure synthesis
# =============================================================================


class TestBuildGuides:
    """Guides are unconfirmed, unskipped occurrences after the creation day."""

    def test_creation_day_is_suppressed(self) -> None:
        guides = build_guides([created_daily()], at(2024, 1, 1), at(2024, 1, 5))
        assert [guide.occurrence_date for guide in guides] == ["2024-01-02", "2024-01-03", "2024-01-04"]
        assert guides[0].started_at == at(2024, 1, 2, 9, 0)
        assert guides[0].ended_at == at(2024, 1, 2, 10, 0)
        assert guides[0].task_name == "Piano"

    def test_confirmed_and_skipped_are_suppressed(self) -> None:
        guides = build_guides(
            [created_daily()],
            at(2024, 1, 1),
            at(2024, 1, 5),
            confirmed_keys={"r1:2024-01-02"},
            exceptions=[exception("skipped", "2024-01-03")],
        )
        assert [guide.occurrence_date for guide in guides] == ["2024-01-04"]

    def test_reschedule_moves_the_guide(self) -> None:
        moved = at(2024, 1, 2, 18, 0)
        guides = build_guides(
            [created_daily()],
            at(2024, 1, 2),
            at(2024, 1, 3),
            exceptions=[exception("rescheduled", "2024-01-02", new_started_at=moved, new_ended_at=moved + HOUR_MS)],
        )
        assert len(guides) == 1
        assert guides[0].rescheduled
        assert guides[0].started_at == moved
        assert guides[0].original_time == at(2024, 1, 2, 9, 0)

    def test_reschedule_without_new_time_is_suppressed(self) -> None:
        guides = build_guides(
            [created_daily()], at(2024, 1, 2), at(2024, 1, 3), exceptions=[exception("rescheduled", "2024-01-02")]
        )
        assert guides == []

    def test_latest_exception_wins(self) -> None:
        moved = at(2024, 1, 2, 18, 0)
        guides = build_guides(
            [created_daily()],
            at(2024, 1, 2),
            at(2024, 1, 3),
            exceptions=[
                exception("skipped", "2024-01-02", updated_at_ms=1),
                exception("rescheduled", "2024-01-02", new_started_at=moved, updated_at_ms=2),
            ],
        )
        assert [guide.started_at for guide in guides] == [moved]
        assert guides[0].ended_at == moved + HOUR_MS

    def test_inactive_and_collapsed_rules_are_ignored(self) -> None:
        rules = [
            created_daily(is_active=False),
            created_daily(id="r2", start_at_ms=at(2024, 1, 5, 9, 0), end_at_ms=at(2024, 1, 1)),
        ]
        assert build_guides(rules, at(2024, 1, 1), at(2024, 1, 10)) == []

    def test_synthesis_is_timed(self) -> None:
        build_guides([created_daily()], at(2024, 1, 1), at(2024, 1, 5))
        snapshot = metrics_collector.get_metrics()
        assert GUIDE_SYNTHESIS_SECONDS in snapshot["timers"]
        assert snapshot["timer_calls"][GUIDE_SYNTHESIS_SECONDS] == 1

    def test_guides_are_sorted_by_start(self) -> None:
        rules = [
            created_daily(id="late", time_of_day_minutes=18 * 60),
            created_daily(id="early", time_of_day_minutes=7 * 60),
        ]
        guides = build_guides(rules, at(2024, 1, 2), at(2024, 1, 3))
        assert [guide.rule_id for guide in guides] == ["early", "late"]


# =============================================================================
# Guide actions
# =============================================================================


@pytest.fixture
def bounded_rule(service):
    """Daily rule created on Jan 1 that ends with its third occurrence."""
    start = at(2024, 1, 1, 9, 0)
    entry = HistoryEntryIn(started_at=start, ended_at=start + HOUR_MS, task_name="Piano")
    return service.create_rule_for_entry(USER_ID, entry, "daily", end_after_occurrences=3)


@pytest.fixture
def open_rule(service):
    start = at(2024, 1, 1, 9, 0)
    entry = HistoryEntryIn(started_at=start, ended_at=start + HOUR_MS, task_name="Piano")
    return service.create_rule_for_entry(USER_ID, entry, "daily")


class TestGuideActions:
    """Acting on guides records dispositions and retires resolved rules."""

    def test_guides_for_window(self, guide_service, bounded_rule) -> None:
        guides = guide_service.guides_for_window(USER_ID, at(2024, 1, 1), at(2024, 1, 10))
        assert [guide.occurrence_date for guide in guides] == ["2024-01-02", "2024-01-03"]

    def test_resolving_every_occurrence_retires_the_rule(self, guide_service, bounded_rule) -> None:
        # the creation day has no guide but still needs a disposition
        creation_day = guide_service.skip_occurrence(USER_ID, bounded_rule.id, "2024-01-01")
        assert not creation_day.retired

        confirmed = guide_service.confirm_occurrence(USER_ID, bounded_rule.id, at(2024, 1, 2, 9, 0))
        assert not confirmed.retired
        assert confirmed.entry.repeating_session_id == bounded_rule.id

        skipped = guide_service.skip_occurrence(USER_ID, bounded_rule.id, "2024-01-03")
        assert skipped.retired
        assert guide_service.rule_store.list_rules(USER_ID) == []
        assert metrics_collector.get_counter(RULES_RETIRED) == 1

    def test_confirm_defaults_to_scheduled_times(self, guide_service, open_rule) -> None:
        result = guide_service.confirm_occurrence(USER_ID, open_rule.id, at(2024, 1, 4, 9, 0))
        assert result.entry.started_at == at(2024, 1, 4, 9, 0)
        assert result.entry.ended_at == at(2024, 1, 4, 10, 0)
        assert result.entry.task_name == "Piano"
        guides = guide_service.guides_for_window(USER_ID, at(2024, 1, 4), at(2024, 1, 5))
        assert guides == []

    def test_reschedule_defaults_end_to_duration(self, guide_service, open_rule) -> None:
        moved = at(2024, 1, 3, 20, 0)
        result = guide_service.reschedule_occurrence(USER_ID, open_rule.id, "2024-01-03", moved)
        assert result.exception.new_ended_at == moved + HOUR_MS
        assert not result.retired

    def test_reschedule_ending_before_start_raises(self, guide_service, open_rule) -> None:
        with pytest.raises(RuleValidationError):
            guide_service.reschedule_occurrence(
                USER_ID, open_rule.id, "2024-01-03", at(2024, 1, 3, 20, 0), at(2024, 1, 3, 19, 0)
            )

    def test_actions_on_unknown_rule_raise(self, guide_service) -> None:
        with pytest.raises(RuleNotFoundError):
            guide_service.skip_occurrence(USER_ID, "missing", "2024-01-03")
        with pytest.raises(RuleNotFoundError):
            guide_service.confirm_occurrence(USER_ID, "missing", at(2024, 1, 3, 9, 0))

    def test_remove_confirmed_occurrence_restores_the_guide(self, guide_service, open_rule) -> None:
        guide_service.reschedule_occurrence(USER_ID, open_rule.id, "2024-01-02", at(2024, 1, 2, 20, 0))
        confirmed = guide_service.confirm_occurrence(
            USER_ID, open_rule.id, at(2024, 1, 2, 9, 0), started_at=at(2024, 1, 2, 20, 0)
        )
        assert guide_service.guides_for_window(USER_ID, at(2024, 1, 2), at(2024, 1, 3)) == []

        assert guide_service.remove_confirmed_occurrence(USER_ID, confirmed.entry.id)

        guides = guide_service.guides_for_window(USER_ID, at(2024, 1, 2), at(2024, 1, 3))
        assert len(guides) == 1
        assert guides[0].started_at == at(2024, 1, 2, 9, 0)
        assert not guides[0].rescheduled

    def test_remove_confirmed_keeps_skips(self, guide_service, open_rule) -> None:
        guide_service.skip_occurrence(USER_ID, open_rule.id, "2024-01-02")
        confirmed = guide_service.confirm_occurrence(USER_ID, open_rule.id, at(2024, 1, 2, 9, 0))
        assert guide_service.remove_confirmed_occurrence(USER_ID, confirmed.entry.id)
        assert guide_service.guides_for_window(USER_ID, at(2024, 1, 2), at(2024, 1, 3)) == []

    def test_remove_unknown_entry(self, guide_service) -> None:
        assert not guide_service.remove_confirmed_occurrence(USER_ID, "missing")
