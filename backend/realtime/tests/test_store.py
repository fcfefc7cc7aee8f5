from datetime import timedelta

from django.test import SimpleTestCase

from common.utils.scheduler import ManualScheduler
from realtime.exceptions import DocumentNotFound, SubscriptionError
from realtime.store import (
    SERVER_TIMESTAMP,
    InMemoryDocumentStore,
    matches_filters,
    presence_collection,
    presence_path,
    request_path,
    split_path,
)


class PathTests(SimpleTestCase):
    def test_layout(self):
        self.assertEqual(presence_path("abc", "u1"), "cells/abc/presence/u1")
        self.assertEqual(request_path("abc", "r1"), "cells/abc/requests/r1")
        self.assertEqual(split_path("cells/abc/presence/u1"), ("cells/abc/presence", "u1"))

    def test_split_rejects_collection_only(self):
        with self.assertRaises(ValueError):
            split_path("cells")


class FilterTests(SimpleTestCase):
    def test_missing_field_never_matches(self):
        self.assertFalse(matches_filters({"role": "driver"}, [("lastSeen", ">=", 0)]))

    def test_incomparable_values_do_not_match(self):
        self.assertFalse(matches_filters({"lastSeen": None}, [("lastSeen", ">=", 0)]))

    def test_in_operator(self):
        self.assertTrue(matches_filters({"status": "open"}, [("status", "in", ["open", "assigned"])]))
        self.assertFalse(matches_filters({"status": "cancelled"}, [("status", "in", ["open", "assigned"])]))


class InMemoryDocumentStoreTests(SimpleTestCase):
    def setUp(self):
        self.scheduler = ManualScheduler()
        self.store = InMemoryDocumentStore(clock=self.scheduler.now)

    def test_server_timestamp_resolves_to_store_clock(self):
        self.store.set(presence_path("c1", "u1"), {"lastSeen": SERVER_TIMESTAMP})
        self.assertEqual(self.store.get(presence_path("c1", "u1")).data["lastSeen"], self.scheduler.now())

    def test_set_merge_keeps_other_fields(self):
        path = presence_path("c1", "u1")
        self.store.set(path, {"a": 1, "b": 2})
        self.store.set(path, {"b": 3}, merge=True)
        self.assertEqual(self.store.get(path).data, {"a": 1, "b": 3})
        self.store.set(path, {"c": 4})
        self.assertEqual(self.store.get(path).data, {"c": 4})

    def test_update_missing_document_raises(self):
        with self.assertRaises(DocumentNotFound):
            self.store.update(request_path("c1", "missing"), {"status": "open"})

    def test_reads_return_copies(self):
        path = presence_path("c1", "u1")
        self.store.set(path, {"nested": {"x": 1}})
        self.store.get(path).data["nested"]["x"] = 99
        self.assertEqual(self.store.get(path).data["nested"]["x"], 1)

    def test_query_group_spans_cells(self):
        self.store.set(request_path("c1", "r1"), {"createdByUid": "rider"})
        self.store.set(request_path("c2", "r2"), {"createdByUid": "rider"})
        self.store.set(presence_path("c1", "rider"), {"createdByUid": "rider"})
        docs = self.store.query_group("requests", [("createdByUid", "==", "rider")])
        self.assertEqual([doc.id for doc in docs], ["r1", "r2"])

    def test_collection_watch_gets_initial_and_full_results(self):
        results = []
        subscription = self.store.watch_collection(
            presence_collection("c1"), [("role", "==", "driver")], lambda docs: results.append([d.id for d in docs])
        )
        self.store.set(presence_path("c1", "d1"), {"role": "driver"})
        self.store.set(presence_path("c1", "r1"), {"role": "client"})
        self.store.set(presence_path("c2", "d2"), {"role": "driver"})
        self.store.delete(presence_path("c1", "d1"))

        self.assertEqual(results, [[], ["d1"], ["d1"], []])
        subscription.unsubscribe()
        self.store.set(presence_path("c1", "d3"), {"role": "driver"})
        self.assertEqual(len(results), 4)
        self.assertEqual(self.store.active_watchers, 0)

    def test_document_watch_reports_deletion(self):
        path = request_path("c1", "r1")
        self.store.set(path, {"status": "open"})
        snapshots = []
        self.store.watch_document(path, snapshots.append)
        self.store.delete(path)
        self.assertEqual([s.exists for s in snapshots], [True, False])

    def test_purge_expired_deletes_only_past_expiry(self):
        now = self.scheduler.now()
        self.store.set(presence_path("c1", "old"), {"expiresAt": now - timedelta(seconds=1)})
        self.store.set(presence_path("c1", "new"), {"expiresAt": now + timedelta(hours=1)})
        self.store.set(presence_path("c1", "forever"), {})

        self.assertEqual(self.store.purge_expired(), 1)
        self.assertFalse(self.store.get(presence_path("c1", "old")).exists)
        self.assertEqual(len(self.store), 2)

    def test_fail_watchers_delivers_subscription_error(self):
        errors = []
        self.store.watch_collection(presence_collection("c1"), None, lambda docs: None, errors.append)
        self.assertEqual(self.store.fail_watchers(presence_collection("c1")), 1)
        self.assertIsInstance(errors[0], SubscriptionError)

    def test_raising_error_listener_does_not_block_others(self):
        def broken(error):
            raise RuntimeError("listener bug")

        errors = []
        self.store.watch_collection(presence_collection("c1"), None, lambda docs: None, broken)
        self.store.watch_collection(presence_collection("c1"), None, lambda docs: None, errors.append)
        with self.assertLogs("realtime.store", level="ERROR"):
            self.assertEqual(self.store.fail_watchers(presence_collection("c1")), 2)
        self.assertEqual(len(errors), 1)

    def test_raising_listener_is_logged(self):
        def broken(docs):
            raise RuntimeError("listener bug")

        with self.assertLogs("realtime.store", level="ERROR"):
            self.store.watch_collection(presence_collection("c1"), None, broken)
