from datetime import timedelta
from unittest.mock import patch

from django.test import SimpleTestCase

from common.utils.geo import InvalidCoordinate, cell_id_for
from common.utils.scheduler import ManualScheduler
from realtime.exceptions import StoreUnavailable
from realtime.store import InMemoryDocumentStore, request_path
from services.matching import AssignedRequestWatchdog
from services.ride_management import (
    CANCEL_REASON_BY_CREATOR,
    CANCEL_REASON_BY_DRIVER,
    InvalidTransitionError,
    LocationPoint,
    MalformedRequestError,
    NotRequestParticipantError,
    RequestIndex,
    RequestNotFoundError,
    RequestStatus,
    can_transition,
)

PICKUP = (-34.6037, -58.3816)
DROPOFF = (-34.6090, -58.3700)


class StateMachineTests(SimpleTestCase):
    def test_allowed_transitions(self):
        self.assertTrue(can_transition("open", "assigned"))
        self.assertTrue(can_transition("open", "cancelled"))
        self.assertTrue(can_transition("assigned", "completed"))
        self.assertTrue(can_transition("assigned", "cancelled"))

    def test_terminal_states_have_no_exits(self):
        for terminal in RequestStatus.TERMINAL:
            for target in RequestStatus.CHOICES:
                self.assertFalse(can_transition(terminal, target))

    def test_open_cannot_complete(self):
        self.assertFalse(can_transition("open", "completed"))


class RequestIndexTests(SimpleTestCase):
    def setUp(self):
        self.scheduler = ManualScheduler()
        self.store = InMemoryDocumentStore(clock=self.scheduler.now)
        self.rider = RequestIndex(self.store, "rider-1", display_name="Ana", scheduler=self.scheduler)
        self.driver = RequestIndex(self.store, "driver-1", display_name="Luis", scheduler=self.scheduler)
        self.other_driver = RequestIndex(self.store, "driver-2", scheduler=self.scheduler)

    def _stored(self, record):
        return self.rider.get_request(record.cell_id, record.request_id)

    def test_create_buckets_by_pickup_cell(self):
        record = self.rider.create_request(PICKUP, LocationPoint(*DROPOFF, address="Obelisco"))

        self.assertEqual(record.cell_id, cell_id_for(*PICKUP))
        stored = self._stored(record)
        self.assertEqual(stored.status, RequestStatus.OPEN)
        self.assertEqual(stored.created_by_uid, "rider-1")
        self.assertIsNone(stored.assigned_driver_uid)
        self.assertEqual(stored.dropoff.address, "Obelisco")
        self.assertEqual(stored.client_name, "Ana")
        self.assertEqual(stored.created_at, self.scheduler.now())
        self.assertEqual(stored.expires_at, self.scheduler.now() + timedelta(hours=24))

    def test_create_with_invalid_pickup_writes_nothing(self):
        with self.assertRaises(InvalidCoordinate):
            self.rider.create_request((91.0, 0.0))
        self.assertEqual(len(self.store), 0)

    def test_create_propagates_store_failure(self):
        with patch.object(self.store, "set", side_effect=StoreUnavailable("offline")):
            with self.assertRaises(StoreUnavailable):
                self.rider.create_request(PICKUP)

    def test_get_missing_request_raises(self):
        with self.assertRaises(RequestNotFoundError):
            self.rider.get_request(cell_id_for(*PICKUP), "nope")

    def test_full_lifecycle(self):
        record = self.rider.create_request(PICKUP)
        assigned = self.driver.assign_request(record)
        self.assertEqual(assigned.status, RequestStatus.ASSIGNED)
        self.assertEqual(assigned.assigned_driver_uid, "driver-1")

        stored = self._stored(record)
        self.assertEqual(stored.status, RequestStatus.ASSIGNED)
        self.assertEqual(stored.driver_name, "Luis")
        # The bucket never moves
        self.assertEqual(stored.cell_id, record.cell_id)

        completed = self.rider.complete_request(stored)
        self.assertEqual(completed.status, RequestStatus.COMPLETED)
        self.assertEqual(self._stored(record).status, RequestStatus.COMPLETED)

    def test_complete_twice_is_noop(self):
        record = self.driver.assign_request(self.rider.create_request(PICKUP))
        completed = self.driver.complete_request(record)
        self.assertIs(self.driver.complete_request(completed), completed)

    def test_invalid_transitions_raise(self):
        record = self.rider.create_request(PICKUP)
        with self.assertRaises(InvalidTransitionError):
            self.rider.complete_request(record)

        cancelled = self.rider.cancel_request(record)
        with self.assertRaises(InvalidTransitionError):
            self.driver.assign_request(cancelled)
        with self.assertRaises(InvalidTransitionError):
            self.rider.cancel_request(cancelled)

    def test_cancel_reason_depends_on_actor(self):
        first = self.rider.cancel_request(self.rider.create_request(PICKUP))
        self.assertEqual(first.cancel_reason, CANCEL_REASON_BY_CREATOR)

        second = self.driver.assign_request(self.rider.create_request(PICKUP))
        second = self.driver.cancel_request(second)
        self.assertEqual(self._stored(second).cancel_reason, CANCEL_REASON_BY_DRIVER)

    def test_only_participants_cancel_or_complete(self):
        record = self.driver.assign_request(self.rider.create_request(PICKUP))
        with self.assertRaises(NotRequestParticipantError):
            self.other_driver.cancel_request(record)
        with self.assertRaises(NotRequestParticipantError):
            self.other_driver.complete_request(record)

    def test_creator_cannot_claim_own_request(self):
        record = self.rider.create_request(PICKUP)
        with self.assertRaises(NotRequestParticipantError):
            self.rider.assign_request(record)
        self.assertEqual(self._stored(record).status, RequestStatus.OPEN)

    def test_racing_assignments_last_writer_wins(self):
        record = self.rider.create_request(PICKUP)

        first = self.driver.assign_request(record)
        self.scheduler.advance(1)
        second = self.other_driver.assign_request(record)

        # Both succeed locally on their own snapshot
        self.assertEqual(first.assigned_driver_uid, "driver-1")
        self.assertEqual(second.assigned_driver_uid, "driver-2")
        self.assertEqual(self._stored(record).assigned_driver_uid, "driver-2")

    def test_losing_driver_watchdog_stands_down(self):
        record = self.rider.create_request(PICKUP)
        first = self.driver.assign_request(record)
        self.other_driver.assign_request(record)

        watchdog = AssignedRequestWatchdog(self.driver, first)
        self.addCleanup(watchdog.dispose)
        events = []
        watchdog.events.listen(events.append)
        watchdog.start()
        self.assertFalse(watchdog.running)

        self.scheduler.advance(200)
        self.assertEqual(events, [])
        self.assertEqual(self.scheduler.pending, 0)
        stored = self._stored(record)
        self.assertEqual(stored.status, RequestStatus.ASSIGNED)
        self.assertEqual(stored.assigned_driver_uid, "driver-2")

    def test_write_failure_is_logged_and_result_optimistic(self):
        record = self.rider.create_request(PICKUP)
        with patch.object(self.store, "update", side_effect=StoreUnavailable("offline")):
            with self.assertLogs("services.ride_management.request_index", level="WARNING"):
                assigned = self.driver.assign_request(record)
        self.assertEqual(assigned.status, RequestStatus.ASSIGNED)
        self.assertEqual(self._stored(record).status, RequestStatus.OPEN)

    def test_transition_on_deleted_request_raises_not_found(self):
        record = self.rider.create_request(PICKUP)
        self.store.delete(request_path(record.cell_id, record.request_id))
        with self.assertRaises(RequestNotFoundError):
            self.driver.assign_request(record)

    def test_heartbeat_refreshes_last_heartbeat(self):
        record = self.rider.create_request(PICKUP)
        self.rider.start_heartbeat(record)
        self.scheduler.advance(95)

        self.assertEqual(self._stored(record).last_heartbeat, record.created_at + timedelta(seconds=90))
        self.rider.stop_heartbeat()
        self.assertEqual(self.scheduler.pending, 0)

    def test_driver_location_written_on_request(self):
        record = self.driver.assign_request(self.rider.create_request(PICKUP))
        self.driver.update_driver_location(record, -34.6040, -58.3810)

        stored = self._stored(record)
        self.assertEqual((stored.driver_lat, stored.driver_lng), (-34.6040, -58.3810))
        self.assertEqual(stored.driver_location_updated_at, self.scheduler.now())

    def test_watch_request_follows_changes_until_deleted(self):
        record = self.rider.create_request(PICKUP)
        seen = []
        self.rider.watch_request(record.cell_id, record.request_id, seen.append)

        self.driver.assign_request(record)
        self.store.delete(request_path(record.cell_id, record.request_id))

        self.assertEqual([r.status if r else None for r in seen], ["open", "assigned", None])

    def test_watch_open_requests_in_cell(self):
        cell_id = cell_id_for(*PICKUP)
        seen = []
        self.driver.watch_open_requests_in_cell(cell_id, lambda records: seen.append(len(records)))

        first = self.rider.create_request(PICKUP)
        self.scheduler.advance(1)
        self.rider.create_request(PICKUP)
        self.driver.assign_request(first)

        self.assertEqual(seen, [0, 1, 2, 1])

    def test_malformed_request_is_skipped_not_the_whole_cell(self):
        cell_id = cell_id_for(*PICKUP)
        good = self.rider.create_request(PICKUP)
        self.store.set(request_path(cell_id, "broken"), {"status": "open", "createdByUid": "rider-9", "cellId": cell_id})

        latest = []
        with self.assertLogs("services.ride_management.request_index", level="WARNING"):
            self.driver.watch_open_requests_in_cell(cell_id, latest.append)
        self.assertEqual([r.request_id for r in latest[-1]], [good.request_id])

    def test_malformed_request_raises_on_direct_read(self):
        cell_id = cell_id_for(*PICKUP)
        self.store.set(request_path(cell_id, "broken"), {"status": "open", "pickup": {"lat": "north"}})
        with self.assertRaises(MalformedRequestError):
            self.driver.get_request(cell_id, "broken")

    def test_watch_my_requests_spans_cells_newest_first(self):
        latest = []
        self.rider.watch_my_requests(latest.append)

        older = self.rider.create_request(PICKUP)
        self.scheduler.advance(5)
        newer = self.rider.create_request(DROPOFF)
        self.other_driver.create_request(PICKUP)
        self.assertNotEqual(older.cell_id, newer.cell_id)

        self.assertEqual([r.request_id for r in latest[-1]], [newer.request_id, older.request_id])

        self.rider.cancel_request(older)
        self.assertEqual([r.request_id for r in latest[-1]], [newer.request_id])
