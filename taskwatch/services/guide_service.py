"""Guide synthesis and guide actions.

A guide is a generated occurrence the user has not acted on yet. Acting on
one (skip, reschedule, confirm) records a disposition and then gives the rule
a chance to retire.
"""
from dataclasses import dataclass
import logging
from typing import Dict, Iterable, List, Optional, Set

from taskwatch.core.calendar_math import MINUTE_MS, format_local_ymd, local_day_start
from taskwatch.core.occurrence_generator import occurrences_in_range, rule_window_is_valid
from taskwatch.errors import RuleNotFoundError, RuleValidationError
from taskwatch.models.session_history import SessionHistory
from taskwatch.schemas.recurrence_rule import RecurrenceRule
from taskwatch.schemas.routine_exception import RoutineException
from taskwatch.schemas.routines import OccurrenceGuide
from taskwatch.services.exception_store import ExceptionStore
from taskwatch.services.history_store import HistoryStore
from taskwatch.services.rule_store import RuleStore
from taskwatch.services.rule_window_resolver import RuleWindowResolver
from taskwatch.utils.metrics import GUIDE_SYNTHESIS_SECONDS, metrics_collector

logger = logging.getLogger(__name__)


def latest_exceptions_by_key(exceptions: Iterable[RoutineException]) -> Dict[str, RoutineException]:
    """Last write wins per ``routine_id:occurrence_date``."""
    latest: Dict[str, RoutineException] = {}
    for item in exceptions:
        current = latest.get(item.key)
        if current is None or item.updated_at_ms >= current.updated_at_ms:
            latest[item.key] = item
    return latest


@metrics_collector.time_operation(GUIDE_SYNTHESIS_SECONDS)
def build_guides(
    rules: Iterable[RecurrenceRule],
    window_start_ms: int,
    window_end_ms: int,
    confirmed_keys: Optional[Set[str]] = None,
    exceptions: Optional[Iterable[RoutineException]] = None,
) -> List[OccurrenceGuide]:
    """Guides for every active rule in ``[window_start_ms, window_end_ms)``, sorted by start."""
    confirmed_keys = confirmed_keys or set()
    latest = latest_exceptions_by_key(exceptions or ())
    guides: List[OccurrenceGuide] = []

    for rule in rules:
        if not rule.is_active or not rule_window_is_valid(rule):
            continue
        activation_day = local_day_start(rule.created_at_ms) if rule.created_at_ms is not None else None
        duration_ms = rule.duration_minutes * MINUTE_MS

        for start in occurrences_in_range(rule, window_start_ms, window_end_ms):
            # the session a rule was created from already covers its creation day
            if activation_day is not None and local_day_start(start) <= activation_day:
                continue
            occurrence_date = format_local_ymd(start)
            key = f"{rule.id}:{occurrence_date}"
            if key in confirmed_keys:
                continue

            started_at, ended_at, rescheduled = start, start + duration_ms, False
            exception = latest.get(key)
            if exception is not None:
                if exception.action == "skipped" or exception.new_started_at is None:
                    continue
                started_at = exception.new_started_at
                ended_at = exception.new_ended_at if exception.new_ended_at is not None else started_at + duration_ms
                rescheduled = True

            guides.append(
                OccurrenceGuide(
                    rule_id=rule.id,
                    occurrence_date=occurrence_date,
                    original_time=start,
                    started_at=started_at,
                    ended_at=max(started_at, ended_at),
                    task_name=rule.task_name,
                    goal_name=rule.goal_name,
                    bucket_name=rule.bucket_name,
                    rescheduled=rescheduled,
                )
            )

    guides.sort(key=lambda guide: (guide.started_at, guide.rule_id))
    return guides


@dataclass
class GuideActionResult:
    """Outcome of a guide action and whether it retired the rule."""

    retired: bool
    exception: Optional[RoutineException] = None
    entry: Optional[SessionHistory] = None


class GuideService:
    """Synthesizes guides for a window and applies user actions to them."""

    def __init__(
        self,
        rule_store: RuleStore,
        history_store: HistoryStore,
        exception_store: ExceptionStore,
        resolver: Optional[RuleWindowResolver] = None,
    ):
        self.rule_store = rule_store
        self.history_store = history_store
        self.exception_store = exception_store
        self.resolver = resolver or RuleWindowResolver(rule_store, history_store, exception_store)

    def _require_rule(self, user_id: str, rule_id: str) -> RecurrenceRule:
        rule = self.rule_store.get_rule(user_id, rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return rule

    def guides_for_window(self, user_id: str, window_start_ms: int, window_end_ms: int) -> List[OccurrenceGuide]:
        rules = self.rule_store.list_rules(user_id)
        confirmed = {item.key for item in self.history_store.list_confirmed_occurrences(user_id)}
        exceptions = self.exception_store.list_exceptions(user_id)
        return build_guides(rules, window_start_ms, window_end_ms, confirmed, exceptions)

    def skip_occurrence(
        self, user_id: str, rule_id: str, occurrence_date: str, notes: Optional[str] = None
    ) -> GuideActionResult:
        self._require_rule(user_id, rule_id)
        exception = self.exception_store.upsert_exception(user_id, rule_id, occurrence_date, "skipped", notes=notes)
        retired = self.resolver.evaluate_and_maybe_retire_rule(user_id, rule_id)
        return GuideActionResult(retired=retired, exception=exception)

    def reschedule_occurrence(
        self,
        user_id: str,
        rule_id: str,
        occurrence_date: str,
        new_started_at: int,
        new_ended_at: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> GuideActionResult:
        rule = self._require_rule(user_id, rule_id)
        if new_ended_at is None:
            new_ended_at = new_started_at + rule.duration_minutes * MINUTE_MS
        if new_ended_at < new_started_at:
            raise RuleValidationError(
                "Rescheduled session ends before it starts",
                {"new_started_at": new_started_at, "new_ended_at": new_ended_at},
            )
        exception = self.exception_store.upsert_exception(
            user_id,
            rule_id,
            occurrence_date,
            "rescheduled",
            new_started_at=new_started_at,
            new_ended_at=new_ended_at,
            notes=notes,
        )
        retired = self.resolver.evaluate_and_maybe_retire_rule(user_id, rule_id)
        return GuideActionResult(retired=retired, exception=exception)

    def confirm_occurrence(
        self,
        user_id: str,
        rule_id: str,
        original_time: int,
        started_at: Optional[int] = None,
        ended_at: Optional[int] = None,
    ) -> GuideActionResult:
        """Log a history row that stands in for the occurrence scheduled at ``original_time``."""
        rule = self._require_rule(user_id, rule_id)
        started_at = original_time if started_at is None else started_at
        if ended_at is None:
            ended_at = started_at + rule.duration_minutes * MINUTE_MS
        entry = self.history_store.add_entry(
            user_id,
            started_at=started_at,
            ended_at=ended_at,
            task_name=rule.task_name,
            goal_name=rule.goal_name,
            bucket_name=rule.bucket_name,
            repeating_session_id=rule_id,
            original_time=original_time,
        )
        retired = self.resolver.evaluate_and_maybe_retire_rule(user_id, rule_id)
        return GuideActionResult(retired=retired, entry=entry)

    def remove_confirmed_occurrence(self, user_id: str, entry_id: str) -> bool:
        """Delete a confirmation so its guide renders again.

        A reschedule recorded for the same occurrence goes with it; skips are
        kept.
        """
        entry = self.history_store.get_entry(user_id, entry_id)
        if entry is None or entry.repeating_session_id is None or entry.original_time is None:
            return False
        self.history_store.delete_entry(user_id, entry_id)
        self.exception_store.delete_reschedule_exception(
            user_id, entry.repeating_session_id, format_local_ymd(entry.original_time)
        )
        logger.info(f"Removed confirmed occurrence {entry_id} of rule {entry.repeating_session_id}")
        return True
