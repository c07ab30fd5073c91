"""Rule Window Resolver.

A bounded rule (one with an end) can be retired once every occurrence in its
window has a disposition: a confirmed history row or an exception. This is
the only path that deletes a rule automatically.
"""
import logging
from typing import Any, Iterable, Optional, Set

from taskwatch.core.calendar_math import add_days, days_between, format_local_ymd, local_day_start
from taskwatch.core.occurrence_generator import rule_matches_day
from taskwatch.schemas.recurrence_rule import RecurrenceRule
from taskwatch.utils.logger import get_logger
from taskwatch.utils.metrics import RULES_RETIRED, metrics_collector

logger = logging.getLogger(__name__)
audit_logger = get_logger("taskwatch.audit.retirement")

# roughly 100 years of days; larger windows are never considered resolved
MAX_WINDOW_DAYS = 36_525


def _occurrence_key(item: Any) -> Optional[str]:
    if isinstance(item, str):
        return item
    key = getattr(item, "key", None)
    if isinstance(key, str):
        return key
    if isinstance(item, dict):
        routine_id = item.get("routine_id") or item.get("routineId")
        occurrence_date = item.get("occurrence_date") or item.get("occurrenceDate")
        if routine_id and occurrence_date:
            return f"{routine_id}:{occurrence_date}"
    return None


def _key_set(items: Optional[Iterable[Any]]) -> Set[str]:
    keys = set()
    for item in items or ():
        key = _occurrence_key(item)
        if key:
            keys.add(key)
    return keys


def window_start_day(rule: RecurrenceRule) -> Optional[int]:
    """First day that needs a disposition.

    The start day when the rule has one; otherwise the day after creation,
    since the creation day is never an occurrence.
    """
    if rule.start_at_ms is not None:
        return local_day_start(rule.start_at_ms)
    if rule.created_at_ms is not None:
        return add_days(local_day_start(rule.created_at_ms), 1)
    return None


def is_rule_window_fully_resolved(
    rule: RecurrenceRule,
    history: Optional[Iterable[Any]] = None,
    exceptions: Optional[Iterable[Any]] = None,
) -> bool:
    """True when every matching day in the rule's bounded window has a disposition.

    ``history`` and ``exceptions`` hold ``"{rule_id}:{YYYY-MM-DD}"`` keys, or
    objects and dicts that carry a routine id and an occurrence date.
    """
    if rule.end_at_ms is None:
        return False
    start_day = window_start_day(rule)
    if start_day is None:
        return False
    end_day = local_day_start(rule.end_at_ms)
    if days_between(start_day, end_day) > MAX_WINDOW_DAYS:
        return False

    resolved = _key_set(history) | _key_set(exceptions)
    day = start_day
    while day <= end_day:
        if rule_matches_day(rule, day) and f"{rule.id}:{format_local_ymd(day)}" not in resolved:
            return False
        day = add_days(day, 1)
    return True


class RuleWindowResolver:
    """Retires bounded rules whose windows are fully resolved."""

    def __init__(self, rule_store, history_store, exception_store):
        self.rule_store = rule_store
        self.history_store = history_store
        self.exception_store = exception_store

    def evaluate_and_maybe_retire_rule(self, user_id: str, rule_id: str) -> bool:
        """Delete the rule iff it is bounded and fully resolved. True when deleted."""
        rule = self.rule_store.get_rule(user_id, rule_id)
        if rule is None or rule.end_at_ms is None:
            return False
        history = self.history_store.list_confirmed_occurrences(user_id)
        exceptions = self.exception_store.list_exceptions(user_id)
        if not is_rule_window_fully_resolved(rule, history, exceptions):
            return False

        deleted = self.rule_store.delete_rule(user_id, rule_id)
        if deleted:
            metrics_collector.increment_counter(RULES_RETIRED)
            audit_logger.bind(user_id=user_id).info("Retired repeating rule", rule_id=rule_id, end_at_ms=rule.end_at_ms)
        else:
            logger.warning(f"Resolved repeating rule {rule_id} could not be deleted")
        return deleted
