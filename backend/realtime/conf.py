"""
Geo-cell settings.

Library defaults merged with the GEO_CELLS dict from Django settings. Component
constructors take explicit overrides that win over both.
"""

import os
from typing import Any, Dict

from django.conf import settings

GEO_CELL_DEFAULTS: Dict[str, Any] = {
    # Grid
    "STEP_SECONDS": 30,

    # Store-side hard delete horizon for presence and request documents
    "DOCUMENT_TTL_SECONDS": 24 * 60 * 60,

    # Presence
    "HEARTBEAT_INTERVAL_SECONDS": 3 * 60,
    "PRESENCE_STALE_SECONDS": 4 * 60,       # slightly more than one missed heartbeat
    "SUBSCRIPTION_LOOKBACK_SECONDS": 60 * 60,  # bounds initial payload only
    "PLATFORM": "python",

    # Requests
    "EXPANSION_DELAY_SECONDS": 20,
    "REQUEST_STALE_SECONDS": 3 * 60,
    "REQUEST_HEARTBEAT_INTERVAL_SECONDS": 30,
    "COUNTERPART_STALE_SECONDS": 3 * 60,
    "WATCHDOG_INTERVAL_SECONDS": 30,

    # Driver location tracking during an assigned request
    "TRACKER_SAMPLING_INTERVAL_SECONDS": 30,
    "TRACKER_BUFFER_SIZE": 3,
    "TRACKER_MOVEMENT_THRESHOLD_METERS": 3.0,
    "TRACKER_KEEPALIVE_SECONDS": 60,   # parked drivers still refresh driverLocationUpdatedAt

    # Store backend: "memory" or "redis"
    "STORE_BACKEND": "memory",
    "REDIS_URL": os.getenv("REDIS_URL", "redis://localhost:6379/0"),
}


def get_geo_cell_config() -> Dict[str, Any]:
    """Defaults overlaid with settings.GEO_CELLS."""
    config = dict(GEO_CELL_DEFAULTS)
    config.update(getattr(settings, "GEO_CELLS", {}) or {})
    return config


def geo_setting(name: str, override: Any = None) -> Any:
    """Return override when given, otherwise the configured value for name."""
    if override is not None:
        return override
    return get_geo_cell_config()[name]
