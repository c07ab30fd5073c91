"""Per-user state store used as the local cache.

Values are JSON-shaped (dicts, lists, numbers, strings) and addressed by a
(user scope, key) pair. The cache is the authority for synchronous reads;
remote persistence catches up asynchronously.
"""
from abc import ABC, abstractmethod
import copy
import threading
from typing import Any, Dict, Optional

GUEST_USER_ID = "__guest__"


def normalize_user_scope(user_id: Optional[str]) -> str:
    """Blank or missing user ids map to the shared guest scope."""
    if isinstance(user_id, str) and user_id.strip():
        return user_id.strip()
    return GUEST_USER_ID


class StateStore(ABC):
    """Key/value state scoped per user."""

    @abstractmethod
    def get(self, user_id: Optional[str], key: str, default: Any = None) -> Any:
        ...

    @abstractmethod
    def set(self, user_id: Optional[str], key: str, value: Any) -> None:
        ...

    @abstractmethod
    def clear(self, user_id: Optional[str], key: Optional[str] = None) -> None:
        """Remove one key, or the whole user scope when key is None."""
        ...


class InMemoryStateStore(StateStore):
    """Process-local state store.

    Reads and writes hand out deep copies so callers never share mutable
    state with the cache.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, user_id: Optional[str], key: str, default: Any = None) -> Any:
        scope = normalize_user_scope(user_id)
        with self._lock:
            bucket = self._data.get(scope, {})
            if key not in bucket:
                return default
            return copy.deepcopy(bucket[key])

    def set(self, user_id: Optional[str], key: str, value: Any) -> None:
        scope = normalize_user_scope(user_id)
        with self._lock:
            self._data.setdefault(scope, {})[key] = copy.deepcopy(value)

    def clear(self, user_id: Optional[str], key: Optional[str] = None) -> None:
        scope = normalize_user_scope(user_id)
        with self._lock:
            if key is None:
                self._data.pop(scope, None)
            else:
                self._data.get(scope, {}).pop(key, None)
