"""Repeating session (routine rule) model for SQLModel."""
from sqlmodel import SQLModel, Field
from sqlalchemy import Column, BigInteger, JSON, String
from datetime import datetime
from typing import List, Optional
import uuid


class RepeatingSession(SQLModel, table=True):
    """Remote row of a recurrence rule derived from a logged session."""

    __tablename__ = "repeating_sessions"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    user_id: str = Field(sa_column=Column(String, index=True, nullable=False))
    is_active: bool = Field(default=True)
    frequency: str = Field(default="daily", max_length=20)  # daily, weekly, monthly, annually
    repeat_every: int = Field(default=1)
    day_of_week: Optional[List[int]] = Field(default=None, sa_column=Column(JSON, nullable=True))  # 0-6 for Sunday-Saturday
    monthly_pattern: Optional[str] = Field(default=None, max_length=10)  # day, first, last
    time_of_day_minutes: int = Field(default=0)
    duration_minutes: int = Field(default=60)
    task_name: str = Field(default="Session", max_length=200)
    goal_name: Optional[str] = Field(default=None, max_length=200)
    bucket_name: Optional[str] = Field(default=None, max_length=200)
    timezone: Optional[str] = Field(default=None, max_length=64)
    created_at_ms: Optional[int] = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    start_at_ms: Optional[int] = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    end_at_ms: Optional[int] = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
