"""
Push-style streams and unsubscribe handles.

Every realtime source in this package (store subscriptions, aggregator counts,
discovered requests) is consumed by registering a callback and holding the
returned Subscription until the consumer is torn down.
"""

import logging
import threading
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Subscription:
    """Handle returned by every subscribe call. unsubscribe() is idempotent."""

    def __init__(self, on_unsubscribe: Optional[Callable[[], None]] = None):
        self._on_unsubscribe = on_unsubscribe
        self._active = True
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self):
        with self._lock:
            if not self._active:
                return
            self._active = False
            callback, self._on_unsubscribe = self._on_unsubscribe, None
        if callback is not None:
            callback()


class EventStream(Generic[T]):
    """
    Broadcast stream of values to any number of listeners.

    The latest value is remembered and replayed to new listeners. Closing the
    stream notifies listeners once and drops them.
    """

    def __init__(self, name: str = ""):
        self.name = name
        self._listeners: Dict[int, tuple] = {}
        self._next_id = 0
        self._closed = False
        self._has_latest = False
        self._latest: Optional[T] = None
        self._lock = threading.RLock()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def latest(self) -> Optional[T]:
        return self._latest

    def listen(
        self,
        on_value: Callable[[T], Any],
        on_error: Optional[Callable[[Exception], Any]] = None,
        on_done: Optional[Callable[[], Any]] = None,
    ) -> Subscription:
        with self._lock:
            if self._closed:
                if on_done is not None:
                    on_done()
                return Subscription()
            listener_id = self._next_id
            self._next_id += 1
            self._listeners[listener_id] = (on_value, on_error, on_done)
            replay = self._has_latest
            latest = self._latest

        if replay:
            self._call(on_value, latest)
        return Subscription(lambda: self._remove(listener_id))

    def _remove(self, listener_id: int):
        with self._lock:
            self._listeners.pop(listener_id, None)

    def _snapshot(self):
        with self._lock:
            return list(self._listeners.values())

    def _call(self, callback, *args):
        try:
            callback(*args)
        except Exception:
            logger.exception("Listener on stream %s raised", self.name or "<unnamed>")

    def emit(self, value: T):
        with self._lock:
            if self._closed:
                return
            self._latest = value
            self._has_latest = True
        for on_value, _, _ in self._snapshot():
            self._call(on_value, value)

    def emit_error(self, error: Exception):
        if self._closed:
            return
        for _, on_error, _ in self._snapshot():
            if on_error is not None:
                self._call(on_error, error)

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
            listeners = list(self._listeners.values())
            self._listeners.clear()
        for _, _, on_done in listeners:
            if on_done is not None:
                self._call(on_done)
