"""Session history model for SQLModel."""
from sqlmodel import SQLModel, Field
from sqlalchemy import Column, BigInteger, String
from datetime import datetime
from typing import Optional
import uuid


class SessionHistory(SQLModel, table=True):
    """A logged (or planned) session.

    ``repeating_session_id`` and ``original_time`` link a confirmed occurrence
    to the rule that generated it and the scheduled instant it replaced.
    """

    __tablename__ = "session_history"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    user_id: str = Field(sa_column=Column(String, index=True, nullable=False))
    task_name: str = Field(default="", max_length=200)
    goal_name: Optional[str] = Field(default=None, max_length=200)
    bucket_name: Optional[str] = Field(default=None, max_length=200)
    started_at: int = Field(sa_column=Column(BigInteger, nullable=False))
    ended_at: int = Field(sa_column=Column(BigInteger, nullable=False))
    future_session: bool = Field(default=False)
    repeating_session_id: Optional[str] = Field(default=None, sa_column=Column(String, index=True, nullable=True))
    original_time: Optional[int] = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    created_at: datetime = Field(default_factory=datetime.utcnow)
