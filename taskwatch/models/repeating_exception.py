"""Repeating exception model for SQLModel."""
from sqlmodel import SQLModel, Field
from sqlalchemy import Column, BigInteger, String, Text
from datetime import datetime
from typing import Optional


class RepeatingExceptionRecord(SQLModel, table=True):
    """Remote mirror of a per-occurrence skip or reschedule."""

    __tablename__ = "repeating_exceptions"

    id: str = Field(primary_key=True)
    user_id: str = Field(sa_column=Column(String, index=True, nullable=False))
    routine_id: str = Field(sa_column=Column(String, index=True, nullable=False))
    occurrence_date: str = Field(max_length=10)  # YYYY-MM-DD, local
    action: str = Field(max_length=20)  # skipped, rescheduled
    new_started_at: Optional[int] = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    new_ended_at: Optional[int] = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    notes: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at_ms: int = Field(default=0, sa_column=Column(BigInteger, nullable=False, default=0))
    updated_at_ms: int = Field(default=0, sa_column=Column(BigInteger, nullable=False, default=0))
    updated_at: datetime = Field(default_factory=datetime.utcnow)
