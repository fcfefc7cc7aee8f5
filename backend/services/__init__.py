"""
Services package - Business logic layer.

This package contains the request and matching logic that runs on top of the
realtime document store, decoupled from any transport.

Modules:
    - ride_management: Ride request index and status state machine
    - matching: Expanding request discovery and assignment liveness
"""

# Expose commonly used names at package level
from .ride_management import (
    RequestIndex,
    RequestRecord,
    RequestStatus,
    LocationPoint,
    RequestNotFoundError,
    InvalidTransitionError,
    MalformedRequestError,
    NotRequestParticipantError,
)
from .matching import (
    RequestDiscovery,
    DiscoveryState,
    AssignedRequestWatchdog,
    StaleCounterpart,
)

__all__ = [
    # Ride management
    "RequestIndex",
    "RequestRecord",
    "RequestStatus",
    "LocationPoint",
    # Matching
    "RequestDiscovery",
    "DiscoveryState",
    "AssignedRequestWatchdog",
    "StaleCounterpart",
    # Exceptions
    "RequestNotFoundError",
    "InvalidTransitionError",
    "MalformedRequestError",
    "NotRequestParticipantError",
]
