from unittest.mock import patch

from django.test import SimpleTestCase

from common.utils.scheduler import ManualScheduler
from realtime.store import InMemoryDocumentStore, request_path
from services.ride_management import RequestIndex

from .services import DriverLocationTracker

PICKUP = (40.4168, -3.7038)


class DriverLocationTrackerTests(SimpleTestCase):
    def setUp(self):
        self.scheduler = ManualScheduler()
        self.store = InMemoryDocumentStore(clock=self.scheduler.now)
        rider = RequestIndex(self.store, "rider-1", scheduler=self.scheduler)
        self.driver = RequestIndex(self.store, "driver-1", scheduler=self.scheduler)
        self.record = self.driver.assign_request(rider.create_request(PICKUP))
        self.positions = []

    def _tracker(self):
        tracker = DriverLocationTracker(self.driver, lambda: self.positions.pop(0) if self.positions else None)
        self.addCleanup(tracker.dispose)
        return tracker

    def _stored(self):
        return self.driver.get_request(self.record.cell_id, self.record.request_id)

    def test_first_sample_is_published_immediately(self):
        self.positions = [PICKUP]
        tracker = self._tracker()
        tracker.start_tracking(self.record)

        stored = self._stored()
        self.assertEqual((stored.driver_lat, stored.driver_lng), PICKUP)
        self.assertEqual(tracker.last_published, PICKUP)
        self.assertTrue(tracker.tracking)

    def test_parked_driver_only_republished_on_keepalive(self):
        self.positions = [PICKUP] * 5
        tracker = self._tracker()
        with patch.object(self.driver, "update_driver_location", wraps=self.driver.update_driver_location) as update:
            tracker.start_tracking(self.record)
            self.scheduler.advance(30)
            self.assertEqual(update.call_count, 1)

            self.scheduler.advance(30)
            self.assertEqual(update.call_count, 2)
        self.assertEqual(self._stored().driver_location_updated_at, self.scheduler.now())

    def test_moving_driver_publishes_buffer_average(self):
        moved = (PICKUP[0] + 0.001, PICKUP[1])
        self.positions = [PICKUP, moved]
        tracker = self._tracker()
        tracker.start_tracking(self.record)
        self.scheduler.advance(30)

        stored = self._stored()
        self.assertAlmostEqual(stored.driver_lat, PICKUP[0] + 0.0005, places=9)
        self.assertEqual(stored.driver_location_updated_at, self.scheduler.now())

    def test_buffer_keeps_last_samples_only(self):
        tracker = self._tracker()
        self.positions = [(PICKUP[0] + i * 0.001, PICKUP[1]) for i in range(5)]
        tracker.start_tracking(self.record)
        self.scheduler.advance(120)
        self.assertEqual(len(tracker._buffer), 3)
        self.assertAlmostEqual(tracker.last_published[0], PICKUP[0] + 0.003, places=9)

    def test_missing_and_invalid_fixes_are_skipped(self):
        self.positions = [None, (float("nan"), 0.0), PICKUP]
        tracker = self._tracker()
        tracker.start_tracking(self.record)
        self.assertIsNone(tracker.last_published)

        with self.assertLogs("drivers.services", level="WARNING"):
            self.scheduler.advance(30)
        self.assertIsNone(tracker.last_published)

        self.scheduler.advance(30)
        self.assertEqual(tracker.last_published, PICKUP)

    def test_stops_when_request_disappears(self):
        self.positions = [PICKUP, (PICKUP[0] + 0.01, PICKUP[1])]
        tracker = self._tracker()
        tracker.start_tracking(self.record)
        self.store.delete(request_path(self.record.cell_id, self.record.request_id))

        self.scheduler.advance(30)
        self.assertFalse(tracker.tracking)
        self.assertEqual(self.scheduler.pending, 0)

    def test_stop_tracking_cancels_sampling(self):
        self.positions = [PICKUP]
        tracker = self._tracker()
        tracker.start_tracking(self.record)
        tracker.stop_tracking()
        self.assertFalse(tracker.tracking)
        self.assertEqual(self.scheduler.pending, 0)
