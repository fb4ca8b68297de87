"""
Per-record status fan-out.

Coordinators publish a snapshot after every mutation; a listener that raises
is logged and skipped so it can never break the publishing task.
"""
import logging
from threading import Lock
from typing import Callable, Dict, Generic, List, TypeVar

T = TypeVar("T")

Listener = Callable[[T], None]
Unsubscribe = Callable[[], None]

logger = logging.getLogger(__name__)


class StatusBroadcaster(Generic[T]):
    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = {}
        self._lock = Lock()

    def subscribe(self, key: str, listener: Listener) -> Unsubscribe:
        with self._lock:
            self._listeners.setdefault(key, []).append(listener)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(key)
                if listeners and listener in listeners:
                    listeners.remove(listener)
                if not listeners:
                    self._listeners.pop(key, None)

        return unsubscribe

    def publish(self, key: str, snapshot: T) -> None:
        with self._lock:
            listeners = list(self._listeners.get(key, ()))
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:  # noqa: BLE001 - listeners must not break the publisher
                logger.exception("Status listener for %s raised", key)

    def listener_count(self, key: str) -> int:
        with self._lock:
            return len(self._listeners.get(key, ()))
