"""History Store: the ledger of logged sessions consulted by the routine engine."""
from dataclasses import dataclass
import logging
from typing import Dict, List, Optional

from sqlmodel import Session, select
from sqlalchemy.engine import Engine

from taskwatch.core.calendar_math import format_local_ymd
from taskwatch.models.session_history import SessionHistory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfirmedOccurrence:
    """A history row that stands in for one generated occurrence."""

    routine_id: str
    occurrence_date: str
    entry_id: str

    @property
    def key(self) -> str:
        return f"{self.routine_id}:{self.occurrence_date}"


class HistoryStore:
    """SessionHistory access scoped per user."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def list_entries(self, user_id: str) -> List[SessionHistory]:
        with Session(self.engine) as session:
            statement = (
                select(SessionHistory)
                .where(SessionHistory.user_id == user_id)
                .order_by(SessionHistory.started_at)
            )
            return list(session.exec(statement).all())

    def list_confirmed_occurrences(self, user_id: str) -> List[ConfirmedOccurrence]:
        """Rows linked to a rule and the scheduled instant they replaced."""
        with Session(self.engine) as session:
            statement = select(SessionHistory).where(
                SessionHistory.user_id == user_id,
                SessionHistory.repeating_session_id.is_not(None),
                SessionHistory.original_time.is_not(None),
            )
            rows = session.exec(statement).all()
            return [
                ConfirmedOccurrence(
                    routine_id=row.repeating_session_id,
                    occurrence_date=format_local_ymd(row.original_time),
                    entry_id=row.id,
                )
                for row in rows
            ]

    def get_entry(self, user_id: str, entry_id: str) -> Optional[SessionHistory]:
        with Session(self.engine) as session:
            row = session.get(SessionHistory, entry_id)
            if row is None or row.user_id != user_id:
                return None
            return row

    def add_entry(
        self,
        user_id: str,
        started_at: int,
        ended_at: int,
        task_name: str = "",
        goal_name: Optional[str] = None,
        bucket_name: Optional[str] = None,
        future_session: bool = False,
        repeating_session_id: Optional[str] = None,
        original_time: Optional[int] = None,
    ) -> SessionHistory:
        entry = SessionHistory(
            user_id=user_id,
            task_name=task_name,
            goal_name=goal_name,
            bucket_name=bucket_name,
            started_at=started_at,
            ended_at=max(started_at, ended_at),
            future_session=future_session,
            repeating_session_id=repeating_session_id,
            original_time=original_time,
        )
        with Session(self.engine) as session:
            session.add(entry)
            session.commit()
            session.refresh(entry)
            return entry

    def delete_entry(self, user_id: str, entry_id: str) -> bool:
        with Session(self.engine) as session:
            row = session.get(SessionHistory, entry_id)
            if row is None or row.user_id != user_id:
                return False
            session.delete(row)
            session.commit()
            return True

    def prune_future_placeholders(self, user_id: str, rule_id: str, after_ymd: str) -> int:
        """Delete planned placeholders of a rule whose occurrence date is after ``after_ymd``."""
        with Session(self.engine) as session:
            statement = select(SessionHistory).where(
                SessionHistory.user_id == user_id,
                SessionHistory.repeating_session_id == rule_id,
                SessionHistory.future_session == True,  # noqa: E712
                SessionHistory.original_time.is_not(None),
            )
            pruned = 0
            for row in session.exec(statement).all():
                # YYYY-MM-DD strings compare in date order
                if format_local_ymd(row.original_time) > after_ymd:
                    session.delete(row)
                    pruned += 1
            session.commit()
        if pruned:
            logger.info(f"Pruned {pruned} planned sessions of rule {rule_id} after {after_ymd}")
        return pruned

    def remap_routine_ids(self, user_id: str, id_remap: Dict[str, str]) -> int:
        """Rewrite ``repeating_session_id`` links after pending rule ids were remapped."""
        if not id_remap:
            return 0
        with Session(self.engine) as session:
            statement = select(SessionHistory).where(
                SessionHistory.user_id == user_id,
                SessionHistory.repeating_session_id.in_(list(id_remap)),
            )
            rows = session.exec(statement).all()
            for row in rows:
                row.repeating_session_id = id_remap[row.repeating_session_id]
                session.add(row)
            session.commit()
            return len(rows)
