"""Advisory lock row for SQLModel."""
from sqlmodel import SQLModel, Field
from sqlalchemy import Column, BigInteger


class SyncLock(SQLModel, table=True):
    """A time-boxed advisory lock; expired rows may be taken over."""

    __tablename__ = "sync_lock"

    key: str = Field(primary_key=True, max_length=200)
    expires_at_ms: int = Field(sa_column=Column(BigInteger, nullable=False))
