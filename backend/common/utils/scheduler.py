"""
Timer primitives for heartbeats, expansion delays and liveness checks.

ThreadScheduler runs callbacks on daemon threads (one per timer, mirroring the
old offer timeout monitor). ManualScheduler is a deterministic clock + timer
wheel driven by advance(); it doubles as the clock for stores and components
under test.
"""

import heapq
import itertools
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from django.utils import timezone

logger = logging.getLogger(__name__)


class TimerHandle:
    """Cancellation handle returned by every scheduler."""

    def __init__(self):
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self):
        self._cancelled.set()


def _run_safely(callback: Callable[[], None]):
    try:
        callback()
    except Exception:  # pragma: no cover - best effort logging
        logger.exception("Scheduled callback %r raised", callback)


# ---------------------- Threaded ----------------------

class _ThreadTimer(TimerHandle):
    def __init__(self, interval: float, callback: Callable[[], None], repeat: bool):
        super().__init__()
        self.interval = interval
        self.callback = callback
        self.repeat = repeat
        self._thread = threading.Thread(target=self._run, daemon=True)

    def start(self):
        self._thread.start()
        return self

    def _run(self):
        while not self._cancelled.wait(self.interval):
            _run_safely(self.callback)
            if not self.repeat:
                break


class ThreadScheduler:
    """Schedules callbacks on background daemon threads."""

    def now(self) -> datetime:
        return timezone.now()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return _ThreadTimer(delay, callback, repeat=False).start()

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        return _ThreadTimer(interval, callback, repeat=True).start()


# ---------------------- Manual ----------------------

class _ManualTimer(TimerHandle):
    def __init__(self, due: datetime, interval: Optional[float], callback: Callable[[], None]):
        super().__init__()
        self.due = due
        self.interval = interval
        self.callback = callback


class ManualScheduler:
    """
    Deterministic scheduler whose time only moves on advance().

    Usage:
        scheduler = ManualScheduler()
        store = InMemoryDocumentStore(clock=scheduler.now)
        scheduler.advance(20)  # fires everything due within 20 seconds
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or timezone.now()
        self._queue: List = []
        self._counter = itertools.count()
        self._lock = threading.RLock()

    def now(self) -> datetime:
        return self._now

    def _push(self, timer: _ManualTimer):
        with self._lock:
            heapq.heappush(self._queue, (timer.due, next(self._counter), timer))

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = _ManualTimer(self._now + timedelta(seconds=delay), None, callback)
        self._push(timer)
        return timer

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        timer = _ManualTimer(self._now + timedelta(seconds=interval), interval, callback)
        self._push(timer)
        return timer

    @property
    def pending(self) -> int:
        with self._lock:
            return sum(1 for _, _, timer in self._queue if not timer.cancelled)

    def advance(self, seconds: float) -> int:
        """Move time forward, firing due timers in order. Returns how many fired."""
        target = self._now + timedelta(seconds=seconds)
        fired = 0
        while True:
            with self._lock:
                if not self._queue or self._queue[0][0] > target:
                    break
                due, _, timer = heapq.heappop(self._queue)
            if timer.cancelled:
                continue
            self._now = due
            _run_safely(timer.callback)
            fired += 1
            if timer.interval is not None and not timer.cancelled:
                timer.due = due + timedelta(seconds=timer.interval)
                self._push(timer)
        self._now = target
        return fired
