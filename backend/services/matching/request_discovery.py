"""
Driver-side discovery of open ride requests.

Expanding search:
1. narrow - watch open requests in the driver's own cell only
2. after EXPANSION_DELAY_SECONDS still narrow -> wide: also watch the 8
   neighboring cells (9 subscriptions total), merging results
3. wide never reverts to narrow by itself; only reset() (e.g. the driver
   moved to another cell) or stop() ends it

Surfaced requests are filtered locally for freshness on every emission, so a
request whose creator went silent drops out without any new read.
"""

import logging
import threading
from functools import partial
from typing import Dict, List, Optional

from common.utils.geo import canonical_of, cell_id_of, neighbors_of
from realtime.conf import geo_setting
from realtime.streams import EventStream, Subscription
from services.ride_management import RequestIndex, RequestRecord, newest_first

logger = logging.getLogger(__name__)


class DiscoveryState:
    IDLE = "idle"
    NARROW = "narrow"
    WIDE = "wide"


class RequestDiscovery:
    """
    Expanding-search watcher over open requests.

    Usage:
        discovery = RequestDiscovery(request_index)
        discovery.requests.listen(show_requests)
        discovery.start(lat, lng)
        ...
        discovery.dispose()
    """

    def __init__(
        self,
        request_index: RequestIndex,
        *,
        expansion_delay: Optional[float] = None,
        stale_seconds: Optional[float] = None,
    ):
        self.expansion_delay = geo_setting("EXPANSION_DELAY_SECONDS", expansion_delay)
        self.stale_seconds = geo_setting("REQUEST_STALE_SECONDS", stale_seconds)

        self._index = request_index
        self._scheduler = request_index.scheduler
        self._clock = request_index.clock
        self._lock = threading.RLock()

        self.requests: EventStream[List[RequestRecord]] = EventStream("open-requests")

        self._state = DiscoveryState.IDLE
        self._generation = 0
        self._center: Optional[str] = None
        self._neighbors: List[str] = []
        self._cells: Dict[str, List[RequestRecord]] = {}
        self._subscriptions: Dict[str, Subscription] = {}
        self._timer = None
        self._disposed = False

    @property
    def state(self) -> str:
        return self._state

    @property
    def center_cell_id(self) -> Optional[str]:
        return self._center

    @property
    def watched_cells(self) -> List[str]:
        with self._lock:
            return list(self._subscriptions)

    # ---------------------- Lifecycle ----------------------

    def start(self, lat: float, lng: float):
        """Begin a narrow search around (lat, lng), replacing any previous search."""
        if self._disposed:
            raise RuntimeError("RequestDiscovery has been disposed")

        step = self._index.step_seconds
        center = cell_id_of(canonical_of(lat, lng, step))
        neighbors = [cell_id_of(canonical) for canonical in neighbors_of(lat, lng, step)]

        self._stop_watching()
        with self._lock:
            self._generation += 1
            generation = self._generation
            self._center = center
            self._neighbors = neighbors
            self._state = DiscoveryState.NARROW

        self._subscribe(center, generation)
        self._timer = self._scheduler.call_later(self.expansion_delay, partial(self._expand, generation))
        logger.info("Discovery narrow in cell %s (expands in %ss)", center, self.expansion_delay)
        self.refresh()

    reset = start

    def _expand(self, generation: int):
        with self._lock:
            if self._disposed or generation != self._generation or self._state != DiscoveryState.NARROW:
                return
            self._state = DiscoveryState.WIDE
            neighbors = [cell_id for cell_id in self._neighbors if cell_id not in self._subscriptions]

        for cell_id in neighbors:
            self._subscribe(cell_id, generation)
        logger.info("Discovery expanded to %s cells around %s", len(self._subscriptions), self._center)
        self.refresh()

    def _stop_watching(self):
        with self._lock:
            subscriptions, self._subscriptions = self._subscriptions, {}
            self._cells = {}
            timer, self._timer = self._timer, None
            self._generation += 1
            self._state = DiscoveryState.IDLE
        if timer is not None:
            timer.cancel()
        for subscription in subscriptions.values():
            subscription.unsubscribe()

    def stop(self):
        """Cancel every subscription and the pending expansion."""
        self._stop_watching()
        logger.debug("Discovery stopped")

    def dispose(self):
        if self._disposed:
            return
        self.stop()
        self._disposed = True
        self.requests.close()

    # ---------------------- Subscriptions ----------------------

    def _subscribe(self, cell_id: str, generation: int):
        with self._lock:
            self._cells.setdefault(cell_id, [])
        subscription = self._index.watch_open_requests_in_cell(
            cell_id,
            partial(self._on_requests, generation, cell_id),
            partial(self._on_error, cell_id),
        )
        with self._lock:
            if generation == self._generation:
                self._subscriptions[cell_id] = subscription
                return
        subscription.unsubscribe()

    def _on_requests(self, generation: int, cell_id: str, records: List[RequestRecord]):
        with self._lock:
            if generation != self._generation:
                return
            self._cells[cell_id] = records
        self.refresh()

    def _on_error(self, cell_id: str, error):
        logger.warning("Request subscription for cell %s failed: %s", cell_id, error)
        self.requests.emit_error(error)

    # ---------------------- Evaluation ----------------------

    def fresh_requests(self) -> List[RequestRecord]:
        """Merged, de-duplicated, fresh open requests, newest first."""
        now = self._clock()
        merged: Dict[str, RequestRecord] = {}
        with self._lock:
            for records in self._cells.values():
                for record in records:
                    merged[record.request_id] = record
        return newest_first([r for r in merged.values() if r.is_fresh(now, self.stale_seconds)])

    def refresh(self) -> List[RequestRecord]:
        """Re-evaluate freshness over cached results and emit. Issues no reads."""
        fresh = self.fresh_requests()
        self.requests.emit(fresh)
        return fresh
