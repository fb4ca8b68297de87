import copy
from threading import Lock
from typing import Any, Callable, Dict, Generic, List, Optional, Protocol, TypeVar

T = TypeVar("T")


class InMemoryRepository(Generic[T]):
    """
    Very simple in-memory registry keyed by generated id.

    Records are only mutated by the task that owns them; everything handed
    to readers outside the coordinators is a snapshot. Nothing survives a
    process restart.
    """

    def __init__(self, key: Callable[[T], str] = lambda record: record.id) -> None:
        self._records: Dict[str, T] = {}
        self._key = key
        self._lock = Lock()

    def save(self, record: T) -> None:
        with self._lock:
            self._records[self._key(record)] = record

    def get(self, record_id: str) -> Optional[T]:
        if not record_id:
            return None
        with self._lock:
            return self._records.get(record_id)

    def values(self) -> List[T]:
        with self._lock:
            return list(self._records.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class SessionStore(Protocol):
    async def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def set(self, session_id: str, data: Dict[str, Any]) -> None:
        ...


class InMemorySessionStore:
    """Session data keyed by session id; the job service writes refreshed tokens here."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Dict[str, Any]] = {}
        self._lock = Lock()

    async def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            data = self._sessions.get(session_id)
            return copy.deepcopy(data) if data is not None else None

    async def set(self, session_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._sessions[session_id] = copy.deepcopy(data)
