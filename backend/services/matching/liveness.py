"""
Liveness watchdog for assigned requests.

Once a request is assigned, each participant watches the other one:
    - the rider watches the driver's position updates on the request
    - the driver watches the rider's heartbeats on the request

If the counterpart stays silent longer than COUNTERPART_STALE_SECONDS the
request is cancelled with reason "stale_counterpart" and a StaleCounterpart
event is emitted.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from realtime.conf import geo_setting
from realtime.presence import is_fresh
from realtime.streams import EventStream
from services.ride_management import (
    CANCEL_REASON_STALE_COUNTERPART,
    InvalidTransitionError,
    NotRequestParticipantError,
    RequestIndex,
    RequestNotFoundError,
    RequestRecord,
    RequestStatus,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StaleCounterpart:
    request: RequestRecord
    counterpart_uid: Optional[str]
    last_signal: Optional[datetime]
    detected_at: datetime


def counterpart_signal(record: RequestRecord, uid: str) -> Optional[datetime]:
    """Latest liveness timestamp of the participant that is not uid."""
    if uid == record.created_by_uid:
        stamps = [ts for ts in (record.driver_location_updated_at, record.updated_at) if ts is not None]
        return max(stamps) if stamps else record.created_at
    return record.last_activity()


class AssignedRequestWatchdog:
    """
    Watches one assigned request from a participant's side.

    Usage:
        watchdog = AssignedRequestWatchdog(request_index, record)
        watchdog.events.listen(on_stale)
        watchdog.start()
        ...
        watchdog.dispose()
    """

    def __init__(
        self,
        request_index: RequestIndex,
        record: RequestRecord,
        *,
        stale_seconds: Optional[float] = None,
        check_interval: Optional[float] = None,
    ):
        self.stale_seconds = geo_setting("COUNTERPART_STALE_SECONDS", stale_seconds)
        self.check_interval = geo_setting("WATCHDOG_INTERVAL_SECONDS", check_interval)

        self._index = request_index
        self._record: Optional[RequestRecord] = record
        self._lock = threading.RLock()
        self._subscription = None
        self._timer = None
        self._fired = False

        self.events: EventStream[StaleCounterpart] = EventStream(f"watchdog:{record.request_id}")

    @property
    def record(self) -> Optional[RequestRecord]:
        return self._record

    @property
    def running(self) -> bool:
        return self._timer is not None

    @property
    def counterpart_uid(self) -> Optional[str]:
        record = self._record
        if record is None:
            return None
        if self._index.uid == record.created_by_uid:
            return record.assigned_driver_uid
        return record.created_by_uid

    def start(self):
        if self.running or self.events.closed:
            return
        record = self._record
        self._timer = self._index.scheduler.call_every(self.check_interval, self.check)
        subscription = self._index.watch_request(
            record.cell_id, record.request_id, self._on_change, self._on_error
        )
        with self._lock:
            if self._timer is not None:
                self._subscription = subscription
                subscription = None
        # the initial snapshot already showed the request gone or finished
        if subscription is not None:
            subscription.unsubscribe()
            return
        logger.debug("Watchdog started for request %s", record.request_id)

    def stop(self):
        with self._lock:
            timer, self._timer = self._timer, None
            subscription, self._subscription = self._subscription, None
        if timer is not None:
            timer.cancel()
        if subscription is not None:
            subscription.unsubscribe()

    def dispose(self):
        self.stop()
        self.events.close()

    # ---------------------- Checks ----------------------

    def _on_change(self, record: Optional[RequestRecord]):
        with self._lock:
            self._record = record
        # finished, or reassigned to another driver
        if record is None or record.is_terminal or not record.is_participant(self._index.uid):
            self.stop()

    def _on_error(self, error):
        logger.warning("Watchdog subscription failed: %s", error)

    def check(self) -> Optional[StaleCounterpart]:
        """Cancel the request if the counterpart went silent. Returns the event if it fired."""
        with self._lock:
            record = self._record
            if self._fired or record is None or record.status != RequestStatus.ASSIGNED:
                return None
            now = self._index.clock()
            last_signal = counterpart_signal(record, self._index.uid)
            if is_fresh(last_signal, now, self.stale_seconds):
                return None
            self._fired = True

        event = StaleCounterpart(
            request=record,
            counterpart_uid=self.counterpart_uid,
            last_signal=last_signal,
            detected_at=now,
        )
        logger.info(
            "Counterpart %s of request %s silent since %s, cancelling",
            event.counterpart_uid,
            record.request_id,
            last_signal,
        )
        try:
            cancelled = self._index.cancel_request(record, reason=CANCEL_REASON_STALE_COUNTERPART)
        except (InvalidTransitionError, NotRequestParticipantError, RequestNotFoundError) as e:
            logger.warning("Could not cancel stale request %s: %s", record.request_id, e)
        else:
            with self._lock:
                self._record = cancelled

        self.stop()
        self.events.emit(event)
        return event
