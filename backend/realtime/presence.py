"""
Presence publishing for riders and drivers.

Each online actor owns exactly one presence document at
cells/{cellId}/presence/{uid}. A heartbeat rewrites it every few minutes;
moving to a new cell deletes the old document and creates a new one.

Two timescales:
- expiresAt (24h): store-side hard delete, bounds storage only
- lastSeen + PRESENCE_STALE_SECONDS (4 min): the liveness test every reader
  applies locally. Expiry is never used to decide who is online.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from common.utils.geo import InvalidCoordinate, canonical_of, cell_id_of
from common.utils.scheduler import ThreadScheduler, TimerHandle

from .conf import geo_setting
from .exceptions import StoreUnavailable
from .store import SERVER_TIMESTAMP, DocumentSnapshot, DocumentStore, presence_path

logger = logging.getLogger(__name__)

ROLE_DRIVER = "driver"
ROLE_CLIENT = "client"

_ROLE_ALIASES = {
    "driver": ROLE_DRIVER,
    "client": ROLE_CLIENT,
    "rider": ROLE_CLIENT,
    "passenger": ROLE_CLIENT,
}

LocationProvider = Callable[[], Optional[Tuple[float, float]]]


def normalize_role(role: str) -> str:
    """Map a role name to its wire value ("driver" or "client")."""
    try:
        return _ROLE_ALIASES[role]
    except KeyError:
        raise ValueError(f"Unknown presence role {role!r}") from None


def is_fresh(timestamp: Optional[datetime], now: datetime, stale_seconds: float) -> bool:
    """True if timestamp is strictly within stale_seconds of now."""
    if timestamp is None:
        return False
    return now - timestamp < timedelta(seconds=stale_seconds)


@dataclass
class PresenceRecord:
    """Presence document as stored under a cell."""
    uid: str
    role: str
    lat: float
    lng: float
    cell_id: str
    last_seen: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    active_request_id: Optional[str] = None
    platform: str = "unknown"
    app: str = "unknown"

    @classmethod
    def from_document(cls, snapshot: DocumentSnapshot) -> "PresenceRecord":
        data = snapshot.data or {}
        return cls(
            uid=data.get("uid") or snapshot.id,
            role=ROLE_DRIVER if data.get("role") == ROLE_DRIVER else ROLE_CLIENT,
            lat=float(data.get("lat") or 0.0),
            lng=float(data.get("lng") or 0.0),
            cell_id=data.get("cellId") or "",
            last_seen=data.get("lastSeen"),
            expires_at=data.get("expiresAt"),
            updated_at=data.get("updatedAt"),
            active_request_id=data.get("activeRequestId"),
            platform=data.get("platform") or "unknown",
            app=data.get("app") or "unknown",
        )

    def is_fresh(self, now: datetime, stale_seconds: float) -> bool:
        return is_fresh(self.last_seen, now, stale_seconds)


class PresenceStore:
    """
    Publishes the calling actor's location into its cell bucket.

    Usage:
        presence = PresenceStore(store, uid="driver-1", role="driver", app="conductor")
        presence.start_heartbeat(lambda: (gps.lat, gps.lng))
        ...
        presence.go_offline()
    """

    def __init__(
        self,
        store: DocumentStore,
        uid: str,
        role: str,
        *,
        app: str = "unknown",
        platform: Optional[str] = None,
        scheduler=None,
        clock: Optional[Callable[[], datetime]] = None,
        step_seconds: Optional[int] = None,
        ttl_seconds: Optional[float] = None,
        heartbeat_interval: Optional[float] = None,
    ):
        self.uid = uid
        self.role = normalize_role(role)
        self.app = app
        self.platform = geo_setting("PLATFORM", platform)
        self.step_seconds = geo_setting("STEP_SECONDS", step_seconds)
        self.ttl_seconds = geo_setting("DOCUMENT_TTL_SECONDS", ttl_seconds)
        self.heartbeat_interval = geo_setting("HEARTBEAT_INTERVAL_SECONDS", heartbeat_interval)

        self._store = store
        self._scheduler = scheduler or ThreadScheduler()
        self._clock = clock or self._scheduler.now
        self._lock = threading.Lock()
        self._current_cell_id: Optional[str] = None
        self._heartbeat: Optional[TimerHandle] = None

    @property
    def current_cell_id(self) -> Optional[str]:
        return self._current_cell_id

    @property
    def heartbeat_running(self) -> bool:
        return self._heartbeat is not None and not self._heartbeat.cancelled

    # ---------------------- Publishing ----------------------

    def _document(self, lat: float, lng: float, cell_id: str, role: str, active_request_id) -> Dict[str, Any]:
        return {
            "uid": self.uid,
            "role": role,
            "lastSeen": SERVER_TIMESTAMP,
            "expiresAt": self._clock() + timedelta(seconds=self.ttl_seconds),
            "lat": lat,
            "lng": lng,
            "cellId": cell_id,
            "activeRequestId": active_request_id,
            "platform": self.platform,
            "app": self.app,
            "updatedAt": SERVER_TIMESTAMP,
        }

    def _delete_presence(self, cell_id: str):
        try:
            self._store.delete(presence_path(cell_id, self.uid))
            logger.debug("Deleted presence of %s from cell %s", self.uid, cell_id)
        except StoreUnavailable as e:
            # Old-cell leftovers go stale locally and expire store-side
            logger.warning("Failed to delete old presence of %s in cell %s: %s", self.uid, cell_id, e)

    def publish(
        self,
        lat: float,
        lng: float,
        role: Optional[str] = None,
        active_request_id: Optional[str] = None,
    ) -> str:
        """
        Write this actor's presence into the cell containing (lat, lng).

        Returns the cell id published to. Store failures are logged and the
        local cell is kept (optimistic); the next heartbeat corrects it.

        Raises:
            InvalidCoordinate: lat/lng is not a valid coordinate
        """
        cell_id = cell_id_of(canonical_of(lat, lng, self.step_seconds))
        role = normalize_role(role) if role else self.role

        with self._lock:
            previous = self._current_cell_id
            self._current_cell_id = cell_id

        if previous is not None and previous != cell_id:
            self._delete_presence(previous)

        try:
            self._store.set(
                presence_path(cell_id, self.uid),
                self._document(lat, lng, cell_id, role, active_request_id),
                merge=previous == cell_id,
            )
            logger.debug("Presence of %s updated in cell %s", self.uid, cell_id)
        except StoreUnavailable as e:
            logger.warning("Failed to publish presence of %s in cell %s: %s", self.uid, cell_id, e)
        return cell_id

    # ---------------------- Heartbeat ----------------------

    def start_heartbeat(
        self,
        location_provider: LocationProvider,
        active_request_id_provider: Optional[Callable[[], Optional[str]]] = None,
        interval: Optional[float] = None,
    ):
        """Publish now, then every interval seconds until stop() or go_offline()."""
        self.stop()
        interval = interval or self.heartbeat_interval

        def _beat():
            location = location_provider()
            if location is None:
                logger.debug("No location fix for %s, skipping heartbeat", self.uid)
                return
            active_request_id = active_request_id_provider() if active_request_id_provider else None
            try:
                self.publish(location[0], location[1], active_request_id=active_request_id)
            except InvalidCoordinate as e:
                logger.warning("Heartbeat for %s got an invalid location: %s", self.uid, e)

        _beat()
        self._heartbeat = self._scheduler.call_every(interval, _beat)
        logger.info("Heartbeat started for %s (interval=%ss)", self.uid, interval)

    def stop(self):
        """Cancel the heartbeat. The presence document is left in place."""
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None
            logger.info("Heartbeat stopped for %s", self.uid)

    def go_offline(self):
        """Cancel the heartbeat and delete the current presence document."""
        self.stop()
        with self._lock:
            cell_id, self._current_cell_id = self._current_cell_id, None
        if cell_id is not None:
            self._delete_presence(cell_id)
        logger.info("%s went offline", self.uid)
