from datetime import timedelta
from io import StringIO

from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import SimpleTestCase
from django.utils import timezone
from unittest.mock import patch

from common.utils.scheduler import ManualScheduler
from drivers.services import DriverLocationTracker
from realtime.aggregator import PresenceAggregator
from realtime.exceptions import StoreUnavailable
from realtime.presence import PresenceStore
from realtime.store import InMemoryDocumentStore, request_path
from services.matching import AssignedRequestWatchdog, DiscoveryState
from services.ride_management import RequestIndex, RequestStatus

from .tasks import purge_expired_documents

RIDER_AT = (4.7410, -74.0721)
# Same block, one cell east of the rider
DRIVER_AT = (4.7410, -74.0721 + 30 / 3600)


class RideMatchingFlowTests(SimpleTestCase):
	def setUp(self):
		self.scheduler = ManualScheduler()
		self.store = InMemoryDocumentStore(clock=self.scheduler.now)

		self.rider_presence = PresenceStore(self.store, 'rider-1', 'rider', app='pasajero', scheduler=self.scheduler)
		self.driver_presence = PresenceStore(self.store, 'driver-1', 'driver', app='conductor', scheduler=self.scheduler)
		self.rider = RequestIndex(self.store, 'rider-1', display_name='Ana', scheduler=self.scheduler)
		self.driver = RequestIndex(self.store, 'driver-1', display_name='Luis', scheduler=self.scheduler)

	def test_rider_sees_assignment_and_completion(self):
		record = self.rider.create_request(RIDER_AT)
		rider_view = []
		subscription = self.rider.watch_request(record.cell_id, record.request_id, rider_view.append)
		self.addCleanup(subscription.unsubscribe)

		discovery = self.driver.discover(*RIDER_AT)
		self.addCleanup(discovery.dispose)
		self.assertEqual(discovery.state, DiscoveryState.NARROW)
		found = discovery.requests.latest
		self.assertEqual(len(found), 1)

		assigned = self.driver.assign_request(found[0])
		self.assertEqual(rider_view[-1].status, RequestStatus.ASSIGNED)
		self.assertEqual(rider_view[-1].assigned_driver_uid, 'driver-1')

		self.driver.complete_request(assigned)
		self.assertEqual(rider_view[-1].status, RequestStatus.COMPLETED)

	def test_request_found_assigned_tracked_and_completed(self):
		self.driver_presence.start_heartbeat(lambda: DRIVER_AT)
		self.rider_presence.start_heartbeat(lambda: RIDER_AT)

		drivers_nearby = PresenceAggregator(self.store, *RIDER_AT, role='driver')
		self.addCleanup(drivers_nearby.dispose)
		self.assertEqual(drivers_nearby.count, 1)

		record = self.rider.create_request(RIDER_AT)
		self.rider.start_heartbeat(record)

		discovery = self.driver.discover(*DRIVER_AT)
		self.addCleanup(discovery.dispose)
		self.assertEqual(discovery.requests.latest, [])

		self.scheduler.advance(20)
		self.assertEqual(discovery.state, DiscoveryState.WIDE)
		found = discovery.requests.latest
		self.assertEqual([r.request_id for r in found], [record.request_id])

		assigned = self.driver.assign_request(found[0])
		self.assertEqual(discovery.requests.latest, [])

		rider_watchdog = AssignedRequestWatchdog(self.rider, assigned)
		driver_watchdog = AssignedRequestWatchdog(self.driver, assigned)
		tracker = DriverLocationTracker(self.driver, lambda: DRIVER_AT)
		for component in (rider_watchdog, driver_watchdog):
			component.start()
			self.addCleanup(component.dispose)
		tracker.start_tracking(assigned)
		self.addCleanup(tracker.dispose)

		# Rider heartbeats and the parked driver's keepalive hold the assignment
		self.scheduler.advance(10 * 60)
		self.assertEqual(self.store.get(request_path(record.cell_id, record.request_id)).data['status'], 'assigned')

		completed = self.rider.complete_request(assigned)
		self.assertEqual(completed.status, RequestStatus.COMPLETED)
		self.assertFalse(rider_watchdog.running)
		self.assertFalse(driver_watchdog.running)

		self.rider.stop_heartbeat()
		self.rider_presence.go_offline()
		self.driver_presence.go_offline()
		tracker.stop_tracking()
		self.assertEqual(drivers_nearby.count, 0)


class PurgeExpiredDocumentsTests(SimpleTestCase):
	def setUp(self):
		# Documents written two days ago carry a 24h expiry that has passed
		self.scheduler = ManualScheduler(start=timezone.now() - timedelta(days=2))
		self.store = InMemoryDocumentStore(clock=self.scheduler.now)
		PresenceStore(self.store, 'driver-1', 'driver', scheduler=self.scheduler).publish(*DRIVER_AT)
		RequestIndex(self.store, 'rider-1', scheduler=self.scheduler).create_request(RIDER_AT)
		self.scheduler.advance(2 * 24 * 60 * 60 - 60)
		PresenceStore(self.store, 'driver-2', 'driver', scheduler=self.scheduler).publish(*DRIVER_AT)

	@patch('rides.tasks.get_document_store')
	def test_task_purges_expired_documents(self, mock_store):
		mock_store.return_value = self.store
		self.assertEqual(purge_expired_documents(), 2)
		self.assertEqual(len(self.store), 1)

	@patch('rides.tasks.get_document_store')
	def test_task_logs_store_failures(self, mock_store):
		mock_store.return_value.purge_expired.side_effect = StoreUnavailable('offline')
		with self.assertLogs('rides.tasks', level='ERROR'):
			self.assertEqual(purge_expired_documents(), 0)

	@patch('rides.management.commands.purge_expired_documents.get_document_store')
	def test_command_reports_purged_count(self, mock_store):
		mock_store.return_value = self.store
		out = StringIO()
		call_command('purge_expired_documents', stdout=out)
		self.assertIn('Purged 2 expired document(s).', out.getvalue())

	@patch('rides.management.commands.purge_expired_documents.get_document_store')
	def test_command_fails_when_store_unavailable(self, mock_store):
		mock_store.return_value.purge_expired.side_effect = StoreUnavailable('offline')
		with self.assertRaises(CommandError):
			call_command('purge_expired_documents', stdout=StringIO())
