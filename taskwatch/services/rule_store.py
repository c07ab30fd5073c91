"""Rule Store: remote ``repeating_sessions`` rows mirrored into a per-user cache.

The cache is the authority for synchronous reads. Remote writes are attempted
first and fall back to the cache when the database is unreachable, the engine
is not configured, or the caller is the guest user. Strict callers get a
``RemoteSyncError`` instead of the fallback.
"""
from datetime import datetime
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlmodel import Session, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from taskwatch.cache.state_store import GUEST_USER_ID, StateStore, normalize_user_scope
from taskwatch.core.occurrence_generator import rule_window_is_valid
from taskwatch.errors import RemoteSyncError, RuleValidationError
from taskwatch.events.publisher import RoutineEventPublisher
from taskwatch.models.repeating_session import RepeatingSession
from taskwatch.schemas.recurrence_rule import (
    RecurrenceRule,
    is_canonical_rule_id,
    new_canonical_rule_id,
    new_local_rule_id,
    normalize_rule,
)
from taskwatch.utils.metrics import (
    IDS_REMAPPED,
    REMOTE_FALLBACKS,
    RULES_CREATED,
    RULES_CREATED_LOCAL,
    RULES_DELETED,
    metrics_collector,
)

logger = logging.getLogger(__name__)

RULES_CACHE_KEY = "repeating_rules"
END_OVERRIDES_CACHE_KEY = "repeating_rule_end_overrides"

# columns that can be matched with plain equality
SCALAR_PREDICATES = (
    "is_active",
    "frequency",
    "time_of_day_minutes",
    "duration_minutes",
    "task_name",
    "goal_name",
    "bucket_name",
)


def _row_values(rule: RecurrenceRule) -> Dict[str, Any]:
    return {
        "is_active": rule.is_active,
        "frequency": rule.frequency,
        "repeat_every": rule.repeat_every,
        "day_of_week": list(rule.day_of_week) if rule.day_of_week is not None else None,
        "monthly_pattern": rule.monthly_pattern,
        "time_of_day_minutes": rule.time_of_day_minutes,
        "duration_minutes": rule.duration_minutes,
        "task_name": rule.task_name,
        "goal_name": rule.goal_name,
        "bucket_name": rule.bucket_name,
        "timezone": rule.timezone,
        "created_at_ms": rule.created_at_ms,
        "start_at_ms": rule.start_at_ms,
        "end_at_ms": rule.end_at_ms,
    }


def _row_to_rule(row: RepeatingSession) -> RecurrenceRule:
    return normalize_rule(row.model_dump())


def _matches_predicates(rule: RecurrenceRule, predicates: Dict[str, Any]) -> bool:
    return all(getattr(rule, name) == value for name, value in predicates.items())


class RuleStore:
    """Persists recurrence rules remotely and in the per-user cache."""

    def __init__(
        self,
        cache: StateStore,
        engine: Optional[Engine] = None,
        publisher: Optional[RoutineEventPublisher] = None,
    ):
        self.cache = cache
        self.engine = engine
        self.publisher = publisher

    def remote_enabled(self, user_id: Optional[str]) -> bool:
        return self.engine is not None and normalize_user_scope(user_id) != GUEST_USER_ID

    def _fallback(self, operation: str, user_id: str, error: Exception, strict: bool = False) -> None:
        metrics_collector.increment_counter(REMOTE_FALLBACKS)
        if strict:
            raise RemoteSyncError(
                f"Remote {operation} failed", {"user_id": user_id, "error": str(error)}
            ) from error
        logger.warning(f"Remote {operation} failed for user {user_id}, using local cache: {str(error)}")

    # ------------------------------------------------------------------
    # Local cache
    # ------------------------------------------------------------------

    def read_local_rules(self, user_id: Optional[str]) -> List[RecurrenceRule]:
        rules: List[RecurrenceRule] = []
        for raw in self.cache.get(user_id, RULES_CACHE_KEY, []) or []:
            try:
                rules.append(normalize_rule(raw))
            except RuleValidationError as e:
                logger.warning(f"Dropping cached repeating rule: {e.message} {e.details}")
        return rules

    def write_local_rules(self, user_id: Optional[str], rules: Iterable[RecurrenceRule], notify: bool = True) -> None:
        rules = list(rules)
        self.cache.set(user_id, RULES_CACHE_KEY, [rule.to_cache_dict() for rule in rules])
        if notify and self.publisher is not None:
            self.publisher.publish_rules_updated(normalize_user_scope(user_id), [rule.id for rule in rules])

    def read_end_overrides(self, user_id: Optional[str]) -> Dict[str, int]:
        raw = self.cache.get(user_id, END_OVERRIDES_CACHE_KEY, {})
        if not isinstance(raw, dict):
            return {}
        overrides: Dict[str, int] = {}
        for rule_id, value in raw.items():
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                overrides[str(rule_id)] = max(0, int(value))
        return overrides

    def _write_end_overrides(self, user_id: Optional[str], overrides: Dict[str, int]) -> None:
        self.cache.set(user_id, END_OVERRIDES_CACHE_KEY, overrides)

    def _upsert_local(self, user_id: Optional[str], rule: RecurrenceRule) -> None:
        rules = [existing for existing in self.read_local_rules(user_id) if existing.id != rule.id]
        rules.append(rule)
        self.write_local_rules(user_id, rules)

    def _remove_local(self, user_id: Optional[str], rule_id: str) -> bool:
        rules = self.read_local_rules(user_id)
        remaining = [rule for rule in rules if rule.id != rule_id]
        overrides = self.read_end_overrides(user_id)
        if overrides.pop(rule_id, None) is not None:
            self._write_end_overrides(user_id, overrides)
        if len(remaining) == len(rules):
            return False
        self.write_local_rules(user_id, remaining, notify=False)
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _fetch_remote_rules(self, user_id: str) -> List[RecurrenceRule]:
        rules: List[RecurrenceRule] = []
        with Session(self.engine) as session:
            rows = session.exec(select(RepeatingSession).where(RepeatingSession.user_id == user_id)).all()
            for row in rows:
                try:
                    rules.append(_row_to_rule(row))
                except RuleValidationError as e:
                    logger.warning(f"Skipping remote repeating rule: {e.message} {e.details}")
        return rules

    def list_rules(self, user_id: Optional[str]) -> List[RecurrenceRule]:
        """All rules for a user with local end overrides applied.

        Rules whose window collapsed (start after end) are deleted, never
        returned. The merged result refreshes the cache.
        """
        scope = normalize_user_scope(user_id)
        local = self.read_local_rules(scope)
        merged = local
        if self.remote_enabled(scope):
            try:
                remote = self._fetch_remote_rules(scope)
            except SQLAlchemyError as e:
                self._fallback("list_rules", scope, e)
            else:
                remote_ids = {rule.id for rule in remote}
                # pending local rules have not reached the database yet
                merged = remote + [rule for rule in local if rule.is_pending and rule.id not in remote_ids]

        overrides = self.read_end_overrides(scope)
        valid: List[RecurrenceRule] = []
        invalid: List[str] = []
        for rule in merged:
            if rule.id in overrides:
                rule = rule.model_copy(update={"end_at_ms": overrides[rule.id]})
            if rule_window_is_valid(rule):
                valid.append(rule)
            else:
                invalid.append(rule.id)

        self.write_local_rules(scope, valid, notify=False)
        for rule_id in invalid:
            logger.info(f"Deleting repeating rule {rule_id} with an empty window")
            self.delete_rule(scope, rule_id)
        return valid

    def get_rule(self, user_id: Optional[str], rule_id: str) -> Optional[RecurrenceRule]:
        for rule in self.list_rules(user_id):
            if rule.id == rule_id:
                return rule
        return None

    def find_rules(self, user_id: Optional[str], **predicates: Any) -> List[RecurrenceRule]:
        """Rules whose scalar columns equal the given values.

        Supported predicates are the names in SCALAR_PREDICATES. Remote rows
        are filtered in SQL; pending local rules and the offline fallback are
        filtered in Python with the same predicates.
        """
        unknown = set(predicates) - set(SCALAR_PREDICATES)
        if unknown:
            raise RuleValidationError("Unsupported rule predicate", {"predicates": sorted(unknown)})

        scope = normalize_user_scope(user_id)
        local = [rule for rule in self.read_local_rules(scope) if _matches_predicates(rule, predicates)]
        if not self.remote_enabled(scope):
            return local

        try:
            with Session(self.engine) as session:
                statement = select(RepeatingSession).where(RepeatingSession.user_id == scope)
                for name, value in predicates.items():
                    column = getattr(RepeatingSession, name)
                    statement = statement.where(column.is_(None) if value is None else column == value)
                rows = session.exec(statement).all()
                remote = [_row_to_rule(row) for row in rows]
        except SQLAlchemyError as e:
            self._fallback("find_rules", scope, e)
            return local

        remote_ids = {rule.id for rule in remote}
        return remote + [rule for rule in local if rule.is_pending and rule.id not in remote_ids]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert_rule(self, user_id: Optional[str], rule: RecurrenceRule, strict: bool = False) -> RecurrenceRule:
        """Persist a new rule remotely, else locally under a pending id."""
        scope = normalize_user_scope(user_id)
        if self.remote_enabled(scope):
            saved = rule if is_canonical_rule_id(rule.id) else rule.model_copy(update={"id": new_canonical_rule_id()})
            try:
                with Session(self.engine) as session:
                    session.add(RepeatingSession(id=saved.id, user_id=scope, **_row_values(saved)))
                    session.commit()
            except SQLAlchemyError as e:
                self._fallback("insert_rule", scope, e, strict=strict)
            else:
                self._upsert_local(scope, saved)
                metrics_collector.increment_counter(RULES_CREATED)
                logger.info(f"Created repeating rule {saved.id} for user {scope}")
                return saved
        elif strict:
            raise RemoteSyncError("Remote store is not available", {"user_id": scope})

        local_rule = rule if rule.is_pending else rule.model_copy(update={"id": new_local_rule_id()})
        self._upsert_local(scope, local_rule)
        metrics_collector.increment_counter(RULES_CREATED_LOCAL)
        logger.info(f"Created local repeating rule {local_rule.id} for user {scope}")
        return local_rule

    def upsert_rules(self, user_id: Optional[str], rules: Iterable[RecurrenceRule], strict: bool = False) -> Dict[str, str]:
        """Write rules remotely; returns ``{pending_id: canonical_id}``.

        The remap is applied to the cache (rules and end overrides) only
        after the remote write commits.
        """
        scope = normalize_user_scope(user_id)
        rules = [normalize_rule(rule) for rule in rules]
        if not self.remote_enabled(scope):
            if strict:
                raise RemoteSyncError("Remote store is not available", {"user_id": scope})
            return {}

        id_remap: Dict[str, str] = {}
        try:
            with Session(self.engine) as session:
                for rule in rules:
                    target_id = rule.id
                    if not is_canonical_rule_id(rule.id):
                        target_id = new_canonical_rule_id()
                        id_remap[rule.id] = target_id
                    values = _row_values(rule)
                    row = session.get(RepeatingSession, target_id)
                    if row is None:
                        session.add(RepeatingSession(id=target_id, user_id=scope, **values))
                    elif row.user_id == scope:
                        for name, value in values.items():
                            setattr(row, name, value)
                        row.updated_at = datetime.utcnow()
                        session.add(row)
                    else:
                        raise RuleValidationError("Rule id belongs to another user", {"rule_id": target_id})
                session.commit()
        except SQLAlchemyError as e:
            self._fallback("upsert_rules", scope, e, strict=strict)
            return {}

        if id_remap:
            self._apply_remap_locally(scope, id_remap)
            metrics_collector.increment_counter(IDS_REMAPPED, len(id_remap))
            logger.info(f"Remapped {len(id_remap)} pending repeating rule ids for user {scope}")
        return id_remap

    def _apply_remap_locally(self, user_id: str, id_remap: Dict[str, str]) -> None:
        rules = [
            rule.model_copy(update={"id": id_remap[rule.id]}) if rule.id in id_remap else rule
            for rule in self.read_local_rules(user_id)
        ]
        self.write_local_rules(user_id, rules)
        overrides = self.read_end_overrides(user_id)
        if any(rule_id in id_remap for rule_id in overrides):
            self._write_end_overrides(
                user_id, {id_remap.get(rule_id, rule_id): value for rule_id, value in overrides.items()}
            )

    def _update_remote(self, user_id: str, rule_id: str, operation: str, **values: Any) -> Optional[bool]:
        """Apply column updates to a remote row; None when remote was not reached."""
        if not self.remote_enabled(user_id) or not is_canonical_rule_id(rule_id):
            return None
        try:
            with Session(self.engine) as session:
                row = session.get(RepeatingSession, rule_id)
                if row is None or row.user_id != user_id:
                    return False
                for name, value in values.items():
                    setattr(row, name, value)
                row.updated_at = datetime.utcnow()
                session.add(row)
                session.commit()
                return True
        except SQLAlchemyError as e:
            self._fallback(operation, user_id, e)
            return None

    def update_rule_end_boundary(self, user_id: Optional[str], rule_id: str, end_at_ms: Optional[int]) -> bool:
        """Set (or clear, with None) the inclusive end boundary of a rule."""
        scope = normalize_user_scope(user_id)
        overrides = self.read_end_overrides(scope)
        if end_at_ms is None:
            overrides.pop(rule_id, None)
        else:
            end_at_ms = max(0, int(end_at_ms))
            overrides[rule_id] = end_at_ms
        self._write_end_overrides(scope, overrides)

        found_local = False
        rules = self.read_local_rules(scope)
        for index, rule in enumerate(rules):
            if rule.id == rule_id:
                rules[index] = rule.model_copy(update={"end_at_ms": end_at_ms})
                found_local = True
        if found_local:
            self.write_local_rules(scope, rules)

        remote = self._update_remote(scope, rule_id, "update_rule_end_boundary", end_at_ms=end_at_ms)
        return found_local or bool(remote)

    def set_rule_active(self, user_id: Optional[str], rule_id: str, active: bool) -> bool:
        scope = normalize_user_scope(user_id)
        found_local = False
        rules = self.read_local_rules(scope)
        for index, rule in enumerate(rules):
            if rule.id == rule_id:
                rules[index] = rule.model_copy(update={"is_active": bool(active)})
                found_local = True
        if found_local:
            self.write_local_rules(scope, rules)

        remote = self._update_remote(scope, rule_id, "set_rule_active", is_active=bool(active))
        return found_local or bool(remote)

    def delete_rule(self, user_id: Optional[str], rule_id: str) -> bool:
        """Delete a rule locally and remotely. True when it existed anywhere."""
        scope = normalize_user_scope(user_id)
        found_local = self._remove_local(scope, rule_id)

        found_remote = False
        if self.remote_enabled(scope) and is_canonical_rule_id(rule_id):
            try:
                with Session(self.engine) as session:
                    row = session.get(RepeatingSession, rule_id)
                    if row is not None and row.user_id == scope:
                        session.delete(row)
                        session.commit()
                        found_remote = True
            except SQLAlchemyError as e:
                self._fallback("delete_rule", scope, e)

        if found_local or found_remote:
            metrics_collector.increment_counter(RULES_DELETED)
            if self.publisher is not None:
                self.publisher.publish_rule_deleted(scope, rule_id)
        return found_local or found_remote
