"""
Matching service - drivers finding requests and keeping assignments alive.

This module handles:
    - Expanding search for open requests (own cell, then the 3x3 block)
    - Cancelling assigned requests whose counterpart went silent
"""

from .request_discovery import DiscoveryState, RequestDiscovery
from .liveness import AssignedRequestWatchdog, StaleCounterpart, counterpart_signal

__all__ = [
    "DiscoveryState",
    "RequestDiscovery",
    "AssignedRequestWatchdog",
    "StaleCounterpart",
    "counterpart_signal",
]
