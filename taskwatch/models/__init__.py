"""SQLModel tables for the routines backend."""

from .repeating_exception import RepeatingExceptionRecord
from .repeating_session import RepeatingSession
from .session_history import SessionHistory
from .sync_lock import SyncLock

__all__ = ["RepeatingExceptionRecord", "RepeatingSession", "SessionHistory", "SyncLock"]
