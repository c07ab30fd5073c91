"""Time-boxed advisory locks for bulk local-to-remote pushes.

Best effort only: a holder that outlives its TTL can be overtaken, and a
caller that fails to acquire skips its work instead of waiting.
"""
from abc import ABC, abstractmethod
import logging
from typing import Callable, Optional

from sqlmodel import Session
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from taskwatch.cache.state_store import StateStore
from taskwatch.core.calendar_math import now_ms
from taskwatch.models.sync_lock import SyncLock

logger = logging.getLogger(__name__)

LOCK_STATE_KEY_PREFIX = "lock:"


class AdvisoryLock(ABC):
    """``try_acquire(key, ttl) -> bool`` / ``release(key)``."""

    @abstractmethod
    def try_acquire(self, key: str, ttl_seconds: int) -> bool:
        ...

    @abstractmethod
    def release(self, key: str) -> None:
        ...


class StateStoreAdvisoryLock(AdvisoryLock):
    """Lock held as an expiry timestamp in the shared state store."""

    def __init__(self, store: StateStore, clock: Optional[Callable[[], int]] = None):
        self.store = store
        self.clock = clock or now_ms

    def try_acquire(self, key: str, ttl_seconds: int) -> bool:
        now = self.clock()
        current = self.store.get(None, LOCK_STATE_KEY_PREFIX + key)
        if isinstance(current, dict) and int(current.get("expires_at", 0)) > now:
            logger.debug(f"Advisory lock {key} held until {current.get('expires_at')}")
            return False
        self.store.set(None, LOCK_STATE_KEY_PREFIX + key, {"expires_at": now + max(1, ttl_seconds) * 1000})
        return True

    def release(self, key: str) -> None:
        self.store.clear(None, LOCK_STATE_KEY_PREFIX + key)


class DatabaseAdvisoryLock(AdvisoryLock):
    """Lock held as a ``sync_lock`` row; the primary key arbitrates races."""

    def __init__(self, engine: Engine, clock: Optional[Callable[[], int]] = None):
        self.engine = engine
        self.clock = clock or now_ms

    def try_acquire(self, key: str, ttl_seconds: int) -> bool:
        now = self.clock()
        expires_at = now + max(1, ttl_seconds) * 1000
        with Session(self.engine) as session:
            row = session.get(SyncLock, key)
            if row is not None:
                if row.expires_at_ms > now:
                    return False
                # expired holder, take it over
                row.expires_at_ms = expires_at
                session.add(row)
                session.commit()
                return True
            session.add(SyncLock(key=key, expires_at_ms=expires_at))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.debug(f"Advisory lock {key} was taken concurrently")
                return False
        return True

    def release(self, key: str) -> None:
        with Session(self.engine) as session:
            row = session.get(SyncLock, key)
            if row is not None:
                session.delete(row)
                session.commit()
