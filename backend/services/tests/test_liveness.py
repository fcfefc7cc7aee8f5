from django.test import SimpleTestCase

from common.utils.scheduler import ManualScheduler
from realtime.store import InMemoryDocumentStore
from services.matching import AssignedRequestWatchdog, StaleCounterpart, counterpart_signal
from services.ride_management import CANCEL_REASON_STALE_COUNTERPART, RequestIndex, RequestStatus

PICKUP = (40.4168, -3.7038)


class AssignedRequestWatchdogTests(SimpleTestCase):
    def setUp(self):
        self.scheduler = ManualScheduler()
        self.store = InMemoryDocumentStore(clock=self.scheduler.now)
        self.rider = RequestIndex(self.store, "rider-1", scheduler=self.scheduler)
        self.driver = RequestIndex(self.store, "driver-1", scheduler=self.scheduler)
        self.record = self.driver.assign_request(self.rider.create_request(PICKUP))

    def _watchdog(self, index):
        watchdog = AssignedRequestWatchdog(index, self.record)
        self.addCleanup(watchdog.dispose)
        events = []
        watchdog.events.listen(events.append)
        watchdog.start()
        return watchdog, events

    def _stored(self):
        return self.rider.get_request(self.record.cell_id, self.record.request_id)

    def test_driver_cancels_when_rider_goes_silent(self):
        watchdog, events = self._watchdog(self.driver)

        self.scheduler.advance(150)
        self.assertEqual(events, [])

        self.scheduler.advance(30)
        self.assertEqual(len(events), 1)
        event = events[0]
        self.assertIsInstance(event, StaleCounterpart)
        self.assertEqual(event.counterpart_uid, "rider-1")
        self.assertEqual(event.detected_at, self.scheduler.now())

        stored = self._stored()
        self.assertEqual(stored.status, RequestStatus.CANCELLED)
        self.assertEqual(stored.cancel_reason, CANCEL_REASON_STALE_COUNTERPART)
        self.assertFalse(watchdog.running)

    def test_rider_heartbeat_keeps_request_alive(self):
        self.rider.start_heartbeat(self.record)
        watchdog, events = self._watchdog(self.driver)
        self.scheduler.advance(30 * 60)
        self.assertEqual(events, [])
        self.assertEqual(self._stored().status, RequestStatus.ASSIGNED)
        self.assertTrue(watchdog.running)

    def test_rider_cancels_when_driver_stops_reporting(self):
        watchdog, events = self._watchdog(self.rider)
        timer = self.scheduler.call_every(60, lambda: self.driver.update_driver_location(self.record, *PICKUP))

        self.scheduler.advance(600)
        self.assertEqual(events, [])

        timer.cancel()
        self.scheduler.advance(180)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].counterpart_uid, "driver-1")
        self.assertEqual(self._stored().cancel_reason, CANCEL_REASON_STALE_COUNTERPART)

    def test_stops_when_request_completes(self):
        watchdog, events = self._watchdog(self.driver)
        self.driver.complete_request(self.record)
        self.assertFalse(watchdog.running)
        self.scheduler.advance(600)
        self.assertEqual(events, [])
        self.assertEqual(self._stored().status, RequestStatus.COMPLETED)

    def test_stops_when_reassigned_to_another_driver(self):
        open_record = self.rider.create_request(PICKUP)
        self.record = self.driver.assign_request(open_record)
        watchdog, events = self._watchdog(self.driver)
        self.assertTrue(watchdog.running)

        other_driver = RequestIndex(self.store, "driver-2", scheduler=self.scheduler)
        other_driver.assign_request(open_record)
        self.assertFalse(watchdog.running)

        self.scheduler.advance(600)
        self.assertEqual(events, [])
        self.assertEqual(self._stored().assigned_driver_uid, "driver-2")
        self.assertEqual(self._stored().status, RequestStatus.ASSIGNED)

    def test_does_not_start_on_finished_request(self):
        self.record = self.driver.complete_request(self.record)
        watchdog, events = self._watchdog(self.driver)
        self.assertFalse(watchdog.running)
        self.assertEqual(self.store.active_watchers, 0)

    def test_check_ignores_open_requests(self):
        open_record = self.rider.create_request(PICKUP)
        watchdog = AssignedRequestWatchdog(self.driver, open_record)
        self.scheduler.advance(3600)
        self.assertIsNone(watchdog.check())

    def test_dispose_cancels_timer_and_subscription(self):
        watchdog, events = self._watchdog(self.driver)
        watchdog.dispose()
        self.assertEqual(self.scheduler.pending, 0)
        self.assertEqual(self.store.active_watchers, 0)
        self.assertTrue(watchdog.events.closed)


class CounterpartSignalTests(SimpleTestCase):
    def test_signal_depends_on_who_is_watching(self):
        scheduler = ManualScheduler()
        store = InMemoryDocumentStore(clock=scheduler.now)
        rider = RequestIndex(store, "rider-1", scheduler=scheduler)
        driver = RequestIndex(store, "driver-1", scheduler=scheduler)
        record = driver.assign_request(rider.create_request(PICKUP))

        scheduler.advance(40)
        driver.update_driver_location(record, *PICKUP)
        scheduler.advance(10)
        rider.update_heartbeat(record)
        stored = rider.get_request(record.cell_id, record.request_id)

        self.assertEqual(counterpart_signal(stored, "rider-1"), stored.driver_location_updated_at)
        self.assertEqual(counterpart_signal(stored, "driver-1"), stored.last_heartbeat)
