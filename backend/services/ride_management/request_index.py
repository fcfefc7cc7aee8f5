"""
Ride request index.

Requests live at cells/{cellId}/requests/{requestId}, bucketed by the pickup
cell at creation and never moved.

Status writes are optimistic, unconditional last-writer-wins updates on the
caller's snapshot: the transition is validated locally, written, and the
updated record is returned even if the write failed (the failure is logged;
the next realtime snapshot corrects the caller). Two drivers racing to
assign the same open request both succeed locally and the later write wins
in the store.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple, Union

from common.utils.geo import canonical_of, cell_id_of, validate_coordinates
from common.utils.scheduler import ThreadScheduler, TimerHandle
from realtime.conf import geo_setting
from realtime.exceptions import DocumentNotFound, StoreUnavailable
from realtime.store import (
    REQUESTS_GROUP,
    SERVER_TIMESTAMP,
    DocumentStore,
    request_path,
    requests_collection,
)
from realtime.streams import Subscription

from .exceptions import MalformedRequestError, NotRequestParticipantError, RequestNotFoundError
from .records import (
    CANCEL_REASON_BY_CREATOR,
    CANCEL_REASON_BY_DRIVER,
    LocationPoint,
    RequestRecord,
    RequestStatus,
    newest_first,
    validate_transition,
)

logger = logging.getLogger(__name__)

PointLike = Union[LocationPoint, Tuple[float, float]]


def _as_point(point: PointLike) -> LocationPoint:
    if isinstance(point, LocationPoint):
        return point
    lat, lng = point
    return LocationPoint(lat=lat, lng=lng)


class RequestIndex:
    """
    Creates, transitions and watches ride requests for one actor (uid).

    Riders create and cancel; the assigned driver accepts, completes, and may
    cancel. Either participant may complete.
    """

    def __init__(
        self,
        store: DocumentStore,
        uid: str,
        *,
        display_name: Optional[str] = None,
        scheduler=None,
        clock: Optional[Callable[[], datetime]] = None,
        step_seconds: Optional[int] = None,
        ttl_seconds: Optional[float] = None,
        heartbeat_interval: Optional[float] = None,
    ):
        self.uid = uid
        self.display_name = display_name
        self.step_seconds = geo_setting("STEP_SECONDS", step_seconds)
        self.ttl_seconds = geo_setting("DOCUMENT_TTL_SECONDS", ttl_seconds)
        self.heartbeat_interval = geo_setting("REQUEST_HEARTBEAT_INTERVAL_SECONDS", heartbeat_interval)

        self.store = store
        self.scheduler = scheduler or ThreadScheduler()
        self.clock = clock or self.scheduler.now
        self._heartbeat: Optional[TimerHandle] = None

    # ===================== Creation & Reads =====================

    def create_request(self, pickup: PointLike, dropoff: Optional[PointLike] = None) -> RequestRecord:
        """
        Create an open request bucketed at the pickup cell.

        Raises:
            InvalidCoordinate: pickup or dropoff is not a valid coordinate
            StoreUnavailable: the request could not be written
        """
        pickup = _as_point(pickup)
        dropoff = _as_point(dropoff) if dropoff is not None else None
        cell_id = cell_id_of(canonical_of(pickup.lat, pickup.lng, self.step_seconds))
        if dropoff is not None:
            validate_coordinates(dropoff.lat, dropoff.lng)

        now = self.clock()
        record = RequestRecord(
            request_id=uuid.uuid4().hex,
            created_by_uid=self.uid,
            pickup=pickup,
            dropoff=dropoff,
            cell_id=cell_id,
            status=RequestStatus.OPEN,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
            last_heartbeat=now,
            client_name=self.display_name,
        )

        document = record.to_document()
        document.update(createdAt=SERVER_TIMESTAMP, updatedAt=SERVER_TIMESTAMP, lastHeartbeat=SERVER_TIMESTAMP)
        self.store.set(request_path(cell_id, record.request_id), document)

        logger.info("Request %s created in cell %s by %s", record.request_id, cell_id, self.uid)
        return record

    def get_request(self, cell_id: str, request_id: str) -> RequestRecord:
        snapshot = self.store.get(request_path(cell_id, request_id))
        if not snapshot.exists:
            raise RequestNotFoundError(f"Request {request_id} not found in cell {cell_id}")
        return RequestRecord.from_document(snapshot)

    # ===================== Transitions =====================

    def _ensure_participant(self, record: RequestRecord):
        if not record.is_participant(self.uid):
            raise NotRequestParticipantError(
                f"{self.uid} is not a participant of request {record.request_id}"
            )

    def _write(self, record: RequestRecord, fields: dict, action: str):
        try:
            self.store.update(request_path(record.cell_id, record.request_id), fields)
        except DocumentNotFound:
            raise RequestNotFoundError(f"Request {record.request_id} no longer exists")
        except StoreUnavailable as e:
            logger.warning("Failed to %s request %s: %s", action, record.request_id, e)

    def _transition(self, record: RequestRecord, target: str, **changes) -> RequestRecord:
        validate_transition(record.status, target)

        fields = {"status": target, "updatedAt": SERVER_TIMESTAMP}
        if "assigned_driver_uid" in changes:
            fields["assignedDriverUid"] = changes["assigned_driver_uid"]
        if changes.get("driver_name") is not None:
            fields["driverName"] = changes["driver_name"]
        if changes.get("cancel_reason") is not None:
            fields["cancelReason"] = changes["cancel_reason"]

        self._write(record, fields, target)
        logger.info("Request %s: %s -> %s (by %s)", record.request_id, record.status, target, self.uid)
        return record.with_changes(status=target, updated_at=self.clock(), **changes)

    def assign_request(self, record: RequestRecord, driver_name: Optional[str] = None) -> RequestRecord:
        """Claim an open request for this actor as the driver (open -> assigned)."""
        if self.uid == record.created_by_uid:
            raise NotRequestParticipantError(
                f"{self.uid} created request {record.request_id} and cannot claim it as driver"
            )
        return self._transition(
            record,
            RequestStatus.ASSIGNED,
            assigned_driver_uid=self.uid,
            driver_name=driver_name or self.display_name,
        )

    def complete_request(self, record: RequestRecord) -> RequestRecord:
        """Confirm pickup (assigned -> completed). Already completed is a no-op."""
        if record.status == RequestStatus.COMPLETED:
            return record
        self._ensure_participant(record)
        return self._transition(record, RequestStatus.COMPLETED)

    def cancel_request(self, record: RequestRecord, reason: Optional[str] = None) -> RequestRecord:
        """Cancel an open or assigned request (creator or assigned driver only)."""
        self._ensure_participant(record)
        if reason is None:
            reason = CANCEL_REASON_BY_CREATOR if self.uid == record.created_by_uid else CANCEL_REASON_BY_DRIVER
        return self._transition(record, RequestStatus.CANCELLED, cancel_reason=reason)

    # ===================== Liveness Signals =====================

    def update_heartbeat(self, record: RequestRecord):
        """Refresh lastHeartbeat while the creator is still waiting."""
        try:
            self._write(record, {"lastHeartbeat": SERVER_TIMESTAMP}, "heartbeat")
        except RequestNotFoundError:
            logger.warning("Heartbeat for missing request %s", record.request_id)

    def start_heartbeat(self, record: RequestRecord, interval: Optional[float] = None):
        """Heartbeat record every interval seconds until stop_heartbeat()."""
        self.stop_heartbeat()
        self._heartbeat = self.scheduler.call_every(
            interval or self.heartbeat_interval, lambda: self.update_heartbeat(record)
        )

    def stop_heartbeat(self):
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None

    def update_driver_location(self, record: RequestRecord, lat: float, lng: float):
        """Publish the assigned driver's position on the request document."""
        validate_coordinates(lat, lng)
        self._write(
            record,
            {"driverLat": lat, "driverLng": lng, "driverLocationUpdatedAt": SERVER_TIMESTAMP},
            "update driver location on",
        )

    # ===================== Watches =====================

    def _records_from(self, docs) -> List[RequestRecord]:
        records = []
        for doc in docs:
            try:
                records.append(RequestRecord.from_document(doc))
            except MalformedRequestError as e:
                logger.warning("Skipping malformed request document %s: %s", doc.path, e)
        return records

    def watch_request(
        self,
        cell_id: str,
        request_id: str,
        on_change: Callable[[Optional[RequestRecord]], None],
        on_error=None,
    ) -> Subscription:
        """Follow one request. on_change gets None once the document is gone."""
        def _on_snapshot(snapshot):
            on_change(RequestRecord.from_document(snapshot) if snapshot.exists else None)

        return self.store.watch_document(request_path(cell_id, request_id), _on_snapshot, on_error)

    def watch_open_requests_in_cell(
        self,
        cell_id: str,
        on_change: Callable[[List[RequestRecord]], None],
        on_error=None,
    ) -> Subscription:
        def _on_snapshot(docs):
            on_change(newest_first(self._records_from(docs)))

        return self.store.watch_collection(
            requests_collection(cell_id),
            [("status", "==", RequestStatus.OPEN)],
            _on_snapshot,
            on_error,
        )

    def watch_my_requests(
        self,
        on_change: Callable[[List[RequestRecord]], None],
        on_error=None,
    ) -> Subscription:
        """Active requests created by this actor, across every cell."""
        def _on_snapshot(docs):
            on_change(newest_first(self._records_from(docs)))

        return self.store.watch_group(
            REQUESTS_GROUP,
            [("createdByUid", "==", self.uid), ("status", "in", list(RequestStatus.ACTIVE))],
            _on_snapshot,
            on_error,
        )

    def discover(self, lat: float, lng: float, **kwargs):
        """Start an expanding search for open requests around (lat, lng)."""
        from services.matching import RequestDiscovery

        discovery = RequestDiscovery(self, **kwargs)
        discovery.start(lat, lng)
        return discovery
