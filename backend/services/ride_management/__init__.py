"""
Ride management service - ride request lifecycle.

This module handles:
    - Creating ride requests bucketed by pickup cell
    - Status transitions (assign, complete, cancel)
    - Rider heartbeats and driver position on assigned requests
    - Watching single requests, open requests per cell, and own requests
"""

from .request_index import RequestIndex
from .records import (
    ALLOWED_TRANSITIONS,
    CANCEL_REASON_BY_CREATOR,
    CANCEL_REASON_BY_DRIVER,
    CANCEL_REASON_STALE_COUNTERPART,
    LocationPoint,
    RequestRecord,
    RequestStatus,
    can_transition,
    newest_first,
    validate_transition,
)
from .exceptions import (
    InvalidTransitionError,
    MalformedRequestError,
    NotRequestParticipantError,
    RequestNotFoundError,
)

__all__ = [
    # Index
    "RequestIndex",
    # Records & state machine
    "ALLOWED_TRANSITIONS",
    "CANCEL_REASON_BY_CREATOR",
    "CANCEL_REASON_BY_DRIVER",
    "CANCEL_REASON_STALE_COUNTERPART",
    "LocationPoint",
    "RequestRecord",
    "RequestStatus",
    "can_transition",
    "newest_first",
    "validate_transition",
    # Exceptions
    "InvalidTransitionError",
    "MalformedRequestError",
    "NotRequestParticipantError",
    "RequestNotFoundError",
]
