from unittest.mock import patch

from django.test import SimpleTestCase

from common.utils.geo import cell_id_for, cell_ids_around
from common.utils.scheduler import ManualScheduler
from realtime.aggregator import PresenceAggregator
from realtime.exceptions import SubscriptionError
from realtime.presence import PresenceStore
from realtime.store import InMemoryDocumentStore, presence_collection, presence_path

CENTER = (0.5, 0.5)
# One cell north-east of CENTER
NEIGHBOR = (0.5 + 45 / 3600, 0.5 + 45 / 3600)
# Two cells north of CENTER, outside the 3x3 block
FAR = (0.5 + 75 / 3600, 0.5)


class PresenceAggregatorTests(SimpleTestCase):
    def setUp(self):
        self.scheduler = ManualScheduler()
        self.store = InMemoryDocumentStore(clock=self.scheduler.now)

    def _presence(self, uid, role="driver"):
        return PresenceStore(self.store, uid, role, scheduler=self.scheduler)

    def _aggregator(self, role="driver"):
        aggregator = PresenceAggregator(self.store, *CENTER, role=role)
        self.addCleanup(aggregator.dispose)
        return aggregator

    def test_subscribes_to_nine_cells(self):
        aggregator = self._aggregator()
        self.assertEqual(aggregator.cell_ids, cell_ids_around(*CENTER))
        self.assertEqual(self.store.active_watchers, 9)

    def test_counts_fresh_actors_across_neighborhood(self):
        self._presence("d1").publish(*CENTER)
        aggregator = self._aggregator()
        counts = []
        aggregator.counts.listen(counts.append)

        self._presence("d2").publish(*NEIGHBOR)
        self._presence("d3").publish(*FAR)

        self.assertEqual(counts, [1, 2])
        self.assertEqual(sorted(r.uid for r in aggregator.nearby.latest), ["d1", "d2"])

    def test_filters_by_role(self):
        self._presence("d1").publish(*CENTER)
        self._presence("r1", role="rider").publish(*CENTER)
        self.assertEqual(self._aggregator().count, 1)
        self.assertEqual(self._aggregator(role="client").count, 1)

    def test_silent_actor_goes_stale_before_expiry(self):
        self._presence("d1").publish(*CENTER)
        aggregator = self._aggregator()

        self.scheduler.advance(239)
        self.assertEqual(aggregator.refresh(), 1)

        self.scheduler.advance(1)
        self.assertEqual(aggregator.refresh(), 0)
        # The document is still there; expiry only bounds storage
        self.assertTrue(self.store.get(presence_path(cell_id_for(*CENTER), "d1")).exists)

    def test_heartbeat_keeps_actor_fresh(self):
        self._presence("d1").start_heartbeat(lambda: CENTER)
        aggregator = self._aggregator()
        self.scheduler.advance(30 * 60)
        self.assertEqual(aggregator.refresh(), 1)

    def test_moving_actor_is_counted_once(self):
        presence = self._presence("d1")
        presence.publish(*CENTER)
        aggregator = self._aggregator()
        presence.publish(*NEIGHBOR)
        self.assertEqual(aggregator.count, 1)

    def test_initial_payload_is_bounded_by_lookback(self):
        self._presence("d1").publish(*CENTER)
        self.scheduler.advance(2 * 60 * 60)
        aggregator = self._aggregator()
        self.assertEqual(aggregator.count, 0)
        self.assertEqual(aggregator._cache[cell_id_for(*CENTER)], [])

    def test_each_snapshot_replaces_the_cell_cache(self):
        presence = self._presence("d1")
        presence.publish(*CENTER)
        aggregator = self._aggregator()
        presence.go_offline()
        self.assertEqual(aggregator.count, 0)

    def test_subscription_error_is_surfaced_without_closing(self):
        aggregator = self._aggregator()
        errors = []
        aggregator.counts.listen(lambda n: None, on_error=errors.append)

        with self.assertLogs("realtime.aggregator", level="WARNING"):
            self.store.fail_watchers(presence_collection(cell_id_for(*CENTER)))

        self.assertIsInstance(errors[0], SubscriptionError)
        self.assertFalse(aggregator.counts.closed)
        self._presence("d1").publish(*CENTER)
        self.assertEqual(aggregator.counts.latest, 1)

    def test_dispose_releases_subscriptions(self):
        aggregator = self._aggregator()
        done = []
        aggregator.counts.listen(lambda n: None, on_done=lambda: done.append(True))
        aggregator.dispose()
        aggregator.dispose()

        self.assertEqual(self.store.active_watchers, 0)
        self.assertEqual(done, [True])
        self.assertTrue(aggregator.disposed)
        self.assertEqual(aggregator.refresh(), 0)

    def test_refresh_does_not_read(self):
        self._presence("d1").publish(*CENTER)
        aggregator = self._aggregator()
        self.scheduler.advance(300)
        with patch.object(self.store, "query", side_effect=AssertionError), \
                patch.object(self.store, "get", side_effect=AssertionError):
            self.assertEqual(aggregator.refresh(), 0)
