"""
Driver-side services.

DriverLocationTracker publishes the assigned driver's position onto the
request document. Positions are sampled every TRACKER_SAMPLING_INTERVAL_SECONDS
into a small rolling buffer; the buffer average is only published once it
moved more than TRACKER_MOVEMENT_THRESHOLD_METERS from the last published
point, so a parked car does not write every sample. A parked position is still
republished every TRACKER_KEEPALIVE_SECONDS; the rider reads
driverLocationUpdatedAt as the driver's liveness signal.
"""

import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Deque, Optional, Tuple

from common.utils.geo import InvalidCoordinate, calculate_distance, validate_coordinates
from realtime.conf import geo_setting
from services.ride_management import RequestIndex, RequestNotFoundError, RequestRecord

logger = logging.getLogger(__name__)

LocationProvider = Callable[[], Optional[Tuple[float, float]]]


class DriverLocationTracker:
    def __init__(
        self,
        request_index: RequestIndex,
        location_provider: LocationProvider,
        *,
        sampling_interval: Optional[float] = None,
        buffer_size: Optional[int] = None,
        movement_threshold: Optional[float] = None,
        keepalive_seconds: Optional[float] = None,
    ):
        self.sampling_interval = geo_setting("TRACKER_SAMPLING_INTERVAL_SECONDS", sampling_interval)
        self.buffer_size = geo_setting("TRACKER_BUFFER_SIZE", buffer_size)
        self.movement_threshold = geo_setting("TRACKER_MOVEMENT_THRESHOLD_METERS", movement_threshold)
        self.keepalive_seconds = geo_setting("TRACKER_KEEPALIVE_SECONDS", keepalive_seconds)

        self._index = request_index
        self._location_provider = location_provider
        self._buffer: Deque[Tuple[float, float]] = deque(maxlen=self.buffer_size)
        self._record: Optional[RequestRecord] = None
        self._timer = None
        self.last_published: Optional[Tuple[float, float]] = None
        self._last_published_at: Optional[datetime] = None

    @property
    def tracking(self) -> bool:
        return self._timer is not None

    def start_tracking(self, record: RequestRecord):
        """Sample immediately, then every sampling interval, for this request."""
        self.stop_tracking()
        self._record = record
        self.sample()
        self._timer = self._index.scheduler.call_every(self.sampling_interval, self.sample)
        logger.info("Tracking driver %s on request %s", self._index.uid, record.request_id)

    def stop_tracking(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._record = None
        self._buffer.clear()
        self.last_published = None
        self._last_published_at = None

    dispose = stop_tracking

    def _average(self) -> Tuple[float, float]:
        count = len(self._buffer)
        return (
            sum(lat for lat, _ in self._buffer) / count,
            sum(lng for _, lng in self._buffer) / count,
        )

    def _keepalive_due(self) -> bool:
        elapsed = self._index.clock() - self._last_published_at
        return elapsed >= timedelta(seconds=self.keepalive_seconds)

    def sample(self) -> bool:
        """Take one sample. Returns True if a position was published."""
        if self._record is None:
            return False
        position = self._location_provider()
        if position is None:
            return False
        try:
            validate_coordinates(*position)
        except InvalidCoordinate as e:
            logger.warning("Discarding invalid driver position %s: %s", position, e)
            return False
        self._buffer.append(position)

        lat, lng = self._average()
        if self.last_published is not None:
            moved = calculate_distance(self.last_published[0], self.last_published[1], lat, lng)
            if moved <= self.movement_threshold and not self._keepalive_due():
                return False

        try:
            self._index.update_driver_location(self._record, lat, lng)
        except RequestNotFoundError:
            logger.info("Request %s is gone, stopping tracker", self._record.request_id)
            self.stop_tracking()
            return False

        self.last_published = (lat, lng)
        self._last_published_at = self._index.clock()
        return True
