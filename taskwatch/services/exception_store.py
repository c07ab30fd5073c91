"""Exception Store: per-occurrence skips and reschedules.

The per-user cache is the source of truth. When remote exceptions are enabled
every write is mirrored to the ``repeating_exceptions`` table and remote rows
the cache has not seen are merged in on read.
"""
from datetime import datetime
import logging
import uuid
from typing import Dict, List, Optional

from sqlmodel import Session, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from taskwatch.cache.state_store import GUEST_USER_ID, StateStore, normalize_user_scope
from taskwatch.config import Settings, get_settings
from taskwatch.core.calendar_math import now_ms
from taskwatch.errors import RuleValidationError
from taskwatch.events.publisher import RoutineEventPublisher
from taskwatch.models.repeating_exception import RepeatingExceptionRecord
from taskwatch.schemas.routine_exception import EXCEPTION_ACTIONS, RoutineException, sanitize_exceptions
from taskwatch.utils.metrics import REMOTE_FALLBACKS, metrics_collector

logger = logging.getLogger(__name__)

EXCEPTIONS_CACHE_KEY = "repeating_exceptions"


def _record_to_exception(record: RepeatingExceptionRecord) -> RoutineException:
    return RoutineException.model_validate(record.model_dump())


class ExceptionStore:
    """Records skips and reschedules against generated occurrences."""

    def __init__(
        self,
        cache: StateStore,
        engine: Optional[Engine] = None,
        publisher: Optional[RoutineEventPublisher] = None,
        settings: Optional[Settings] = None,
    ):
        self.cache = cache
        self.engine = engine
        self.publisher = publisher
        self.settings = settings or get_settings()

    def remote_enabled(self, user_id: Optional[str]) -> bool:
        return (
            self.settings.enable_remote_exceptions
            and self.engine is not None
            and normalize_user_scope(user_id) != GUEST_USER_ID
        )

    def _read_local(self, user_id: str) -> List[RoutineException]:
        return sanitize_exceptions(self.cache.get(user_id, EXCEPTIONS_CACHE_KEY, []))

    def _write_local(self, user_id: str, exceptions: List[RoutineException], notify: bool = True) -> None:
        self.cache.set(user_id, EXCEPTIONS_CACHE_KEY, [item.model_dump() for item in exceptions])
        if notify and self.publisher is not None:
            self.publisher.publish_exceptions_updated(user_id, [item.id for item in exceptions])

    def _mirror(self, user_id: str, operation: str, upserts: List[RoutineException], deletes: List[str]) -> None:
        if not self.remote_enabled(user_id):
            return
        try:
            with Session(self.engine) as session:
                for item in upserts:
                    record = session.get(RepeatingExceptionRecord, item.id)
                    if record is None:
                        record = RepeatingExceptionRecord(id=item.id, user_id=user_id)
                    record.routine_id = item.routine_id
                    record.occurrence_date = item.occurrence_date
                    record.action = item.action
                    record.new_started_at = item.new_started_at
                    record.new_ended_at = item.new_ended_at
                    record.notes = item.notes
                    record.created_at_ms = item.created_at_ms
                    record.updated_at_ms = item.updated_at_ms
                    record.updated_at = datetime.utcnow()
                    session.add(record)
                for exception_id in deletes:
                    record = session.get(RepeatingExceptionRecord, exception_id)
                    if record is not None and record.user_id == user_id:
                        session.delete(record)
                session.commit()
        except SQLAlchemyError as e:
            metrics_collector.increment_counter(REMOTE_FALLBACKS)
            logger.warning(f"Remote {operation} failed for user {user_id}, kept in local cache: {str(e)}")

    def list_exceptions(self, user_id: Optional[str]) -> List[RoutineException]:
        scope = normalize_user_scope(user_id)
        local = self._read_local(scope)
        if not self.remote_enabled(scope):
            return local
        try:
            with Session(self.engine) as session:
                records = session.exec(
                    select(RepeatingExceptionRecord).where(RepeatingExceptionRecord.user_id == scope)
                ).all()
                remote = [_record_to_exception(record) for record in records]
        except SQLAlchemyError as e:
            metrics_collector.increment_counter(REMOTE_FALLBACKS)
            logger.warning(f"Remote list_exceptions failed for user {scope}, using local cache: {str(e)}")
            return local

        known = {item.id for item in local}
        missing = [item for item in remote if item.id not in known]
        if missing:
            local = local + missing
            self._write_local(scope, local, notify=False)
        return local

    def upsert_exception(
        self,
        user_id: Optional[str],
        routine_id: str,
        occurrence_date: str,
        action: str,
        new_started_at: Optional[int] = None,
        new_ended_at: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> RoutineException:
        """Record a disposition; an existing one with the same key and action is updated."""
        if action not in EXCEPTION_ACTIONS:
            raise RuleValidationError("Unknown exception action", {"action": action})
        scope = normalize_user_scope(user_id)
        timestamp = now_ms()
        exceptions = self._read_local(scope)

        existing = None
        for item in exceptions:
            if item.routine_id == routine_id and item.occurrence_date == occurrence_date and item.action == action:
                existing = item
        payload = {
            "id": existing.id if existing else str(uuid.uuid4()),
            "routine_id": routine_id,
            "occurrence_date": occurrence_date,
            "action": action,
            "new_started_at": new_started_at,
            "new_ended_at": new_ended_at,
            "notes": notes,
            "created_at_ms": existing.created_at_ms if existing else timestamp,
            "updated_at_ms": timestamp,
        }
        try:
            saved = RoutineException.model_validate(payload)
        except ValueError as e:
            raise RuleValidationError("Invalid repeating exception", {"error": str(e)}) from e

        exceptions = [item for item in exceptions if item.id != saved.id] + [saved]
        self._write_local(scope, exceptions)
        self._mirror(scope, "upsert_exception", [saved], [])
        return saved

    def find_exception(self, user_id: Optional[str], routine_id: str, occurrence_date: str) -> Optional[RoutineException]:
        """Latest exception for the occurrence key (last write wins)."""
        latest = None
        for item in self.list_exceptions(user_id):
            if item.routine_id != routine_id or item.occurrence_date != occurrence_date:
                continue
            if latest is None or item.updated_at_ms >= latest.updated_at_ms:
                latest = item
        return latest

    def has_exception(self, user_id: Optional[str], routine_id: str, occurrence_date: str) -> bool:
        return self.find_exception(user_id, routine_id, occurrence_date) is not None

    def delete_reschedule_exception(self, user_id: Optional[str], routine_id: str, occurrence_date: str) -> bool:
        """Remove reschedules for the occurrence key; skips are kept."""
        scope = normalize_user_scope(user_id)
        exceptions = self._read_local(scope)
        removed = [
            item.id
            for item in exceptions
            if item.routine_id == routine_id
            and item.occurrence_date == occurrence_date
            and item.action == "rescheduled"
        ]
        if not removed:
            return False
        self._write_local(scope, [item for item in exceptions if item.id not in removed])
        self._mirror(scope, "delete_reschedule_exception", [], removed)
        return True

    def remap_routine_ids(self, user_id: Optional[str], id_remap: Dict[str, str]) -> int:
        """Point exceptions of renamed rules at their canonical ids."""
        scope = normalize_user_scope(user_id)
        exceptions = self._read_local(scope)
        changed = []
        for index, item in enumerate(exceptions):
            if item.routine_id in id_remap:
                exceptions[index] = item.model_copy(update={"routine_id": id_remap[item.routine_id]})
                changed.append(exceptions[index])
        if changed:
            self._write_local(scope, exceptions)
            self._mirror(scope, "remap_routine_ids", changed, [])
        return len(changed)
