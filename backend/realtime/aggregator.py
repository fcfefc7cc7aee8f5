"""
Nearby presence aggregation over a 3x3 cell neighborhood.

One realtime subscription per cell, filtered store-side by role and a coarse
lastSeen lower bound that only limits the initial payload. Freshness moves
with wall-clock time, and a live query cannot be re-filtered without
re-subscribing, so staleness is enforced here against the cached raw results
on every recompute().
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from functools import partial
from typing import Callable, Dict, List, Optional

from common.utils.geo import cell_ids_around

from .conf import geo_setting
from .exceptions import SubscriptionError
from .presence import ROLE_DRIVER, PresenceRecord, normalize_role
from .store import DocumentStore, presence_collection
from .streams import EventStream, Subscription

logger = logging.getLogger(__name__)


class PresenceAggregator:
    """
    Live count (and list) of fresh actors around a reference point.

    Usage:
        aggregator = PresenceAggregator(store, lat, lng, role="driver")
        aggregator.counts.listen(lambda n: print(n, "drivers nearby"))
        aggregator.refresh()   # re-evaluate freshness, no reads
        aggregator.dispose()
    """

    def __init__(
        self,
        store: DocumentStore,
        lat: float,
        lng: float,
        role: str = ROLE_DRIVER,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        stale_seconds: Optional[float] = None,
        lookback_seconds: Optional[float] = None,
        step_seconds: Optional[int] = None,
    ):
        self.lat = lat
        self.lng = lng
        self.role = normalize_role(role)
        self.stale_seconds = geo_setting("PRESENCE_STALE_SECONDS", stale_seconds)
        self.lookback_seconds = geo_setting("SUBSCRIPTION_LOOKBACK_SECONDS", lookback_seconds)
        self.step_seconds = geo_setting("STEP_SECONDS", step_seconds)

        self._store = store
        self._clock = clock or store.now
        self._lock = threading.RLock()
        self._ready = False
        self._disposed = False

        self.cell_ids: List[str] = cell_ids_around(lat, lng, self.step_seconds)
        self._cache: Dict[str, List[PresenceRecord]] = {cell_id: [] for cell_id in self.cell_ids}

        self.counts: EventStream[int] = EventStream("presence-count")
        self.nearby: EventStream[List[PresenceRecord]] = EventStream("presence-nearby")

        since = self._clock() - timedelta(seconds=self.lookback_seconds)
        filters = [("role", "==", self.role), ("lastSeen", ">=", since)]

        self._subscriptions: List[Subscription] = [
            store.watch_collection(
                presence_collection(cell_id),
                filters,
                partial(self._on_snapshot, cell_id),
                partial(self._on_error, cell_id),
            )
            for cell_id in self.cell_ids
        ]
        self._ready = True
        logger.debug("Watching %s presence in %s cells", self.role, len(self.cell_ids))
        self.recompute()

    # ---------------------- Callbacks ----------------------

    def _on_snapshot(self, cell_id: str, docs):
        records = [PresenceRecord.from_document(doc) for doc in docs]
        with self._lock:
            if self._disposed:
                return
            self._cache[cell_id] = records
        if self._ready:
            self.recompute()

    def _on_error(self, cell_id: str, error: SubscriptionError):
        logger.warning("Presence subscription for cell %s failed: %s", cell_id, error)
        self.counts.emit_error(error)
        self.nearby.emit_error(error)

    # ---------------------- Evaluation ----------------------

    def fresh_records(self) -> List[PresenceRecord]:
        """Fresh records across all cached cells, evaluated against the clock now."""
        now = self._clock()
        with self._lock:
            cached = [record for records in self._cache.values() for record in records]
        return [record for record in cached if record.is_fresh(now, self.stale_seconds)]

    def recompute(self) -> int:
        """Re-filter the cache for freshness, emit and return the count. Issues no reads."""
        if self._disposed:
            return 0
        fresh = self.fresh_records()
        self.nearby.emit(fresh)
        self.counts.emit(len(fresh))
        return len(fresh)

    refresh = recompute

    @property
    def count(self) -> int:
        return len(self.fresh_records())

    # ---------------------- Lifecycle ----------------------

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self):
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
            subscriptions, self._subscriptions = self._subscriptions, []
            for cell_id in self._cache:
                self._cache[cell_id] = []
        for subscription in subscriptions:
            subscription.unsubscribe()
        self.counts.close()
        self.nearby.close()
        logger.debug("Presence aggregator disposed")
