"""Rule lifecycle operations for repeating sessions."""
import logging
from typing import Any, Dict, Iterable, List, Optional

from taskwatch.cache.advisory_lock import AdvisoryLock
from taskwatch.cache.state_store import normalize_user_scope
from taskwatch.config import Settings, get_settings
from taskwatch.core.calendar_math import (
    MINUTE_MS,
    add_days,
    at_time_of_day,
    day_of_month,
    format_local_ymd,
    month_day_key,
    parse_local_ymd,
    to_local,
    weekday_of,
)
from taskwatch.core.occurrence_generator import (
    compute_end_date_after_occurrences,
    compute_last_occurrence_before_boundary,
)
from taskwatch.errors import RuleValidationError
from taskwatch.schemas.recurrence_rule import (
    FREQUENCIES,
    RecurrenceRule,
    derive_task_name,
    new_local_rule_id,
    normalize_weekdays,
)
from taskwatch.services.exception_store import ExceptionStore
from taskwatch.services.history_store import HistoryStore
from taskwatch.services.rule_store import RuleStore
from taskwatch.utils.logger import get_logger
from taskwatch.utils.metrics import RULES_DEACTIVATED, SYNC_PUSHES, SYNC_SKIPPED_LOCKED, metrics_collector

logger = logging.getLogger(__name__)
audit_logger = get_logger("taskwatch.audit.sync")

SYNC_LOCK_KEY_PREFIX = "repeating-rules-sync:"


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def entry_time_of_day(entry: Any) -> int:
    local = to_local(entry.started_at)
    return local.hour * 60 + local.minute


def entry_duration_minutes(entry: Any) -> int:
    duration_ms = max(1, entry.ended_at - entry.started_at)
    return max(1, round(duration_ms / MINUTE_MS))


class RepeatingSessionService:
    """Creates, matches, bounds and syncs the rules of one store set.

    ``entry`` arguments are any object with ``started_at``/``ended_at`` (epoch
    ms) and ``task_name``/``goal_name``/``bucket_name``, such as a
    ``SessionHistory`` row or a ``HistoryEntryIn`` payload.
    """

    def __init__(
        self,
        rule_store: RuleStore,
        history_store: HistoryStore,
        exception_store: ExceptionStore,
        lock: AdvisoryLock,
        settings: Optional[Settings] = None,
    ):
        self.rule_store = rule_store
        self.history_store = history_store
        self.exception_store = exception_store
        self.lock = lock
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def build_rule_for_entry(
        self,
        entry: Any,
        frequency: str,
        weekly_days: Optional[Iterable[int]] = None,
        monthly_pattern: Optional[str] = None,
        end_date_ms: Optional[int] = None,
        end_after_occurrences: Optional[int] = None,
        repeat_every: int = 1,
        timezone: Optional[str] = None,
    ) -> RecurrenceRule:
        """The rule an entry would produce, under a pending id, without persisting it."""
        if frequency not in FREQUENCIES:
            raise RuleValidationError("Unknown frequency", {"frequency": frequency})

        minutes = entry_time_of_day(entry)
        weekday = weekday_of(entry.started_at)
        pattern = None
        if frequency == "monthly":
            pattern = monthly_pattern if monthly_pattern in ("first", "last") else "day"

        day_of_week = None
        if frequency == "weekly":
            day_of_week = normalize_weekdays(list(weekly_days) if weekly_days is not None else [weekday]) or (weekday,)
        elif pattern in ("first", "last"):
            day_of_week = (weekday,)

        rule = RecurrenceRule(
            id=new_local_rule_id(),
            frequency=frequency,
            repeat_every=repeat_every,
            day_of_week=day_of_week,
            monthly_pattern=pattern,
            time_of_day_minutes=minutes,
            duration_minutes=entry_duration_minutes(entry),
            task_name=derive_task_name(entry.task_name, entry.bucket_name, entry.goal_name),
            goal_name=_blank_to_none(entry.goal_name),
            bucket_name=_blank_to_none(entry.bucket_name),
            timezone=timezone,
            created_at_ms=max(0, entry.started_at),
            # the scheduled minute, so the anchor equals the first occurrence start
            start_at_ms=at_time_of_day(entry.started_at, minutes),
        )

        end_at_ms = None
        if end_date_ms is not None:
            boundary = max(0, int(end_date_ms))
            last = compute_last_occurrence_before_boundary(rule, boundary)
            end_at_ms = last if last is not None else max(0, boundary - 1)
        elif end_after_occurrences is not None:
            end_at_ms = compute_end_date_after_occurrences(rule, end_after_occurrences)
        if end_at_ms is not None:
            rule = rule.model_copy(update={"end_at_ms": end_at_ms})
        return rule

    def create_rule_for_entry(
        self,
        user_id: str,
        entry: Any,
        frequency: str,
        weekly_days: Optional[Iterable[int]] = None,
        monthly_pattern: Optional[str] = None,
        end_date_ms: Optional[int] = None,
        end_after_occurrences: Optional[int] = None,
        repeat_every: int = 1,
        timezone: Optional[str] = None,
        strict: bool = False,
    ) -> RecurrenceRule:
        """Turn a logged session into a rule; remote first, local on failure."""
        rule = self.build_rule_for_entry(
            entry,
            frequency,
            weekly_days=weekly_days,
            monthly_pattern=monthly_pattern,
            end_date_ms=end_date_ms,
            end_after_occurrences=end_after_occurrences,
            repeat_every=repeat_every,
            timezone=timezone,
        )
        return self.rule_store.insert_rule(user_id, rule, strict=strict)

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def find_matching_rules(self, user_id: str, entry: Any, active_only: bool = False) -> List[RecurrenceRule]:
        """Rules with the entry's labels, time of day, duration and calendar position."""
        predicates: Dict[str, Any] = {
            "time_of_day_minutes": entry_time_of_day(entry),
            "duration_minutes": entry_duration_minutes(entry),
            "task_name": derive_task_name(entry.task_name, entry.bucket_name, entry.goal_name),
            "goal_name": _blank_to_none(entry.goal_name),
            "bucket_name": _blank_to_none(entry.bucket_name),
        }
        if active_only:
            predicates["is_active"] = True

        weekday = weekday_of(entry.started_at)
        dom = day_of_month(entry.started_at)
        key = month_day_key(entry.started_at)
        matches = []
        # day-of-month and month/day keys are not column predicates, filter after fetch
        for rule in self.rule_store.find_rules(user_id, **predicates):
            anchor = rule.anchor_ms
            if rule.frequency == "daily":
                matches.append(rule)
            elif rule.frequency == "weekly" and weekday in (rule.day_of_week or ()):
                matches.append(rule)
            elif rule.frequency == "monthly" and anchor is not None and day_of_month(anchor) == dom:
                matches.append(rule)
            elif rule.frequency == "annually" and anchor is not None and month_day_key(anchor) == key:
                matches.append(rule)
        return matches

    def deactivate_matching_rules_for_entry(self, user_id: str, entry: Any) -> List[str]:
        """Flip every active rule matching the entry to inactive; returns their ids."""
        ids = []
        for rule in self.find_matching_rules(user_id, entry, active_only=True):
            if self.rule_store.set_rule_active(user_id, rule.id, False):
                ids.append(rule.id)
        if ids:
            metrics_collector.increment_counter(RULES_DEACTIVATED, len(ids))
            logger.info(f"Deactivated {len(ids)} repeating rules matching entry for user {user_id}")
        return ids

    def delete_matching_rules_for_entry(self, user_id: str, entry: Any) -> List[str]:
        ids = []
        for rule in self.find_matching_rules(user_id, entry):
            if self.rule_store.delete_rule(user_id, rule.id):
                ids.append(rule.id)
        return ids

    # ------------------------------------------------------------------
    # Boundaries
    # ------------------------------------------------------------------

    def update_end_date(self, user_id: str, rule_id: str, end_at_ms: int) -> bool:
        """Persist a new inclusive end; a collapsed window deletes the rule instead."""
        rule = self.rule_store.get_rule(user_id, rule_id)
        if rule is None:
            return False
        end_at_ms = max(0, int(end_at_ms))
        if rule.start_at_ms is not None and rule.start_at_ms > end_at_ms:
            logger.info(f"End of repeating rule {rule_id} precedes its start, deleting it")
            return self.rule_store.delete_rule(user_id, rule_id)
        return self.rule_store.update_rule_end_boundary(user_id, rule_id, end_at_ms)

    def set_repeat_to_none_after_occurrence(self, user_id: str, rule_id: str, occurrence_date: str) -> bool:
        """Stop after the last occurrence on or before a local date and prune later placeholders."""
        occurrence_day = parse_local_ymd(occurrence_date)
        if occurrence_day is None:
            return False
        boundary_exclusive = add_days(occurrence_day, 1)
        end_at_ms = max(0, boundary_exclusive - 1)
        rule = self.rule_store.get_rule(user_id, rule_id)
        if rule is not None:
            last = compute_last_occurrence_before_boundary(rule, boundary_exclusive)
            if last is not None:
                end_at_ms = last
        ok = self.update_end_date(user_id, rule_id, end_at_ms)
        self.history_store.prune_future_placeholders(user_id, rule_id, occurrence_date)
        return ok

    def set_repeat_to_none_after_timestamp(self, user_id: str, rule_id: str, selected_start_ms: int) -> bool:
        """Stop at a selected occurrence start and prune placeholders after its local day."""
        selected_start_ms = max(0, int(selected_start_ms))
        ok = self.update_end_date(user_id, rule_id, selected_start_ms)
        self.history_store.prune_future_placeholders(user_id, rule_id, format_local_ymd(selected_start_ms))
        return ok

    # ------------------------------------------------------------------
    # Single-rule operations
    # ------------------------------------------------------------------

    def list_rules(self, user_id: str) -> List[RecurrenceRule]:
        return self.rule_store.list_rules(user_id)

    def set_active(self, user_id: str, rule_id: str, active: bool) -> bool:
        return self.rule_store.set_rule_active(user_id, rule_id, active)

    def deactivate_rule(self, user_id: str, rule_id: str) -> bool:
        ok = self.rule_store.set_rule_active(user_id, rule_id, False)
        if ok:
            metrics_collector.increment_counter(RULES_DEACTIVATED)
        return ok

    def delete_rule(self, user_id: str, rule_id: str) -> bool:
        return self.rule_store.delete_rule(user_id, rule_id)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def push_local_rules(self, user_id: str, strict: bool = False) -> Optional[Dict[str, str]]:
        """Push cached rules to the database under the sync lock.

        Returns the pending-to-canonical id remap, or None when another
        process holds the lock and the push was skipped.
        """
        scope = normalize_user_scope(user_id)
        lock_key = SYNC_LOCK_KEY_PREFIX + scope
        if not self.lock.try_acquire(lock_key, self.settings.sync_lock_ttl_seconds):
            metrics_collector.increment_counter(SYNC_SKIPPED_LOCKED)
            logger.info(f"Skipping repeating rule push for user {scope}, sync lock is held")
            return None
        try:
            rules = self.rule_store.read_local_rules(scope)
            id_remap = self.rule_store.upsert_rules(scope, rules, strict=strict)
            if id_remap:
                self.history_store.remap_routine_ids(scope, id_remap)
                self.exception_store.remap_routine_ids(scope, id_remap)
            metrics_collector.increment_counter(SYNC_PUSHES)
            audit_logger.info("Pushed repeating rules", user_id=scope, rules=len(rules), remapped=len(id_remap))
            return id_remap
        finally:
            self.lock.release(lock_key)
