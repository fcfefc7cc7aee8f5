"""Ride request documents and the request status state machine."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional

from realtime.presence import is_fresh
from realtime.store import DocumentSnapshot

from .exceptions import InvalidTransitionError, MalformedRequestError


class RequestStatus:
    OPEN = "open"
    ASSIGNED = "assigned"
    CANCELLED = "cancelled"
    COMPLETED = "completed"

    CHOICES = (OPEN, ASSIGNED, CANCELLED, COMPLETED)
    ACTIVE = (OPEN, ASSIGNED)
    TERMINAL = (CANCELLED, COMPLETED)


ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    RequestStatus.OPEN: frozenset({RequestStatus.ASSIGNED, RequestStatus.CANCELLED}),
    RequestStatus.ASSIGNED: frozenset({RequestStatus.COMPLETED, RequestStatus.CANCELLED}),
    RequestStatus.CANCELLED: frozenset(),
    RequestStatus.COMPLETED: frozenset(),
}

CANCEL_REASON_BY_CREATOR = "cancelled_by_creator"
CANCEL_REASON_BY_DRIVER = "cancelled_by_driver"
CANCEL_REASON_STALE_COUNTERPART = "stale_counterpart"


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def validate_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)


@dataclass(frozen=True)
class LocationPoint:
    lat: float
    lng: float
    address: Optional[str] = None

    @classmethod
    def from_map(cls, data: Dict[str, Any]) -> "LocationPoint":
        return cls(lat=float(data["lat"]), lng=float(data["lng"]), address=data.get("address"))

    def to_map(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"lat": self.lat, "lng": self.lng}
        if self.address is not None:
            data["address"] = self.address
        return data


@dataclass(frozen=True)
class RequestRecord:
    """A ride request, bucketed forever at its pickup cell."""
    request_id: str
    created_by_uid: str
    pickup: LocationPoint
    cell_id: str
    status: str = RequestStatus.OPEN
    dropoff: Optional[LocationPoint] = None
    assigned_driver_uid: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    last_heartbeat: Optional[datetime] = None
    driver_lat: Optional[float] = None
    driver_lng: Optional[float] = None
    driver_location_updated_at: Optional[datetime] = None
    client_name: Optional[str] = None
    driver_name: Optional[str] = None
    cancel_reason: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_document(cls, snapshot: DocumentSnapshot) -> "RequestRecord":
        data = dict(snapshot.data or {})
        dropoff = data.pop("dropoff", None)
        status = data.pop("status", RequestStatus.OPEN)
        try:
            pickup = LocationPoint.from_map(data.pop("pickup"))
            dropoff = LocationPoint.from_map(dropoff) if dropoff else None
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedRequestError(f"Request {snapshot.id} has an unreadable location: {e!r}") from e
        return cls(
            request_id=data.pop("requestId", None) or snapshot.id,
            created_by_uid=data.pop("createdByUid", ""),
            pickup=pickup,
            cell_id=data.pop("cellId", ""),
            status=status if status in RequestStatus.CHOICES else RequestStatus.OPEN,
            dropoff=dropoff,
            assigned_driver_uid=data.pop("assignedDriverUid", None),
            created_at=data.pop("createdAt", None),
            updated_at=data.pop("updatedAt", None),
            expires_at=data.pop("expiresAt", None),
            last_heartbeat=data.pop("lastHeartbeat", None),
            driver_lat=data.pop("driverLat", None),
            driver_lng=data.pop("driverLng", None),
            driver_location_updated_at=data.pop("driverLocationUpdatedAt", None),
            client_name=data.pop("clientName", None),
            driver_name=data.pop("driverName", None),
            cancel_reason=data.pop("cancelReason", None),
            extra=data,
        )

    def to_document(self) -> Dict[str, Any]:
        data = {
            "requestId": self.request_id,
            "createdByUid": self.created_by_uid,
            "pickup": self.pickup.to_map(),
            "dropoff": self.dropoff.to_map() if self.dropoff else None,
            "status": self.status,
            "assignedDriverUid": self.assigned_driver_uid,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "cellId": self.cell_id,
            "expiresAt": self.expires_at,
            "lastHeartbeat": self.last_heartbeat,
        }
        if self.client_name is not None:
            data["clientName"] = self.client_name
        if self.driver_name is not None:
            data["driverName"] = self.driver_name
        return data

    @property
    def is_active(self) -> bool:
        return self.status in RequestStatus.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.status in RequestStatus.TERMINAL

    def is_participant(self, uid: str) -> bool:
        return uid == self.created_by_uid or (uid is not None and uid == self.assigned_driver_uid)

    def last_activity(self) -> Optional[datetime]:
        """Most recent of updatedAt and the creator's lastHeartbeat."""
        stamps = [ts for ts in (self.updated_at, self.last_heartbeat) if ts is not None]
        return max(stamps) if stamps else self.created_at

    def is_fresh(self, now: datetime, stale_seconds: float) -> bool:
        """Open requests go stale when their creator stops touching them."""
        if self.status != RequestStatus.OPEN:
            return True
        return is_fresh(self.last_activity(), now, stale_seconds)

    def with_changes(self, **changes) -> "RequestRecord":
        return replace(self, **changes)


def newest_first(records: List[RequestRecord]) -> List[RequestRecord]:
    return sorted(
        records,
        key=lambda r: (r.created_at.timestamp() if r.created_at else 0.0, r.request_id),
        reverse=True,
    )
