from django.test import SimpleTestCase

from realtime.streams import EventStream, Subscription


class SubscriptionTests(SimpleTestCase):
    def test_unsubscribe_is_idempotent(self):
        calls = []
        subscription = Subscription(lambda: calls.append(1))
        subscription.unsubscribe()
        subscription.unsubscribe()
        self.assertEqual(calls, [1])
        self.assertFalse(subscription.active)


class EventStreamTests(SimpleTestCase):
    def test_latest_value_replayed_to_new_listener(self):
        stream = EventStream("counts")
        stream.emit(3)
        seen = []
        stream.listen(seen.append)
        stream.emit(4)
        self.assertEqual(seen, [3, 4])

    def test_unsubscribed_listener_stops_receiving(self):
        stream = EventStream()
        seen = []
        subscription = stream.listen(seen.append)
        stream.emit(1)
        subscription.unsubscribe()
        stream.emit(2)
        self.assertEqual(seen, [1])

    def test_errors_go_to_error_callback(self):
        stream = EventStream()
        errors = []
        stream.listen(lambda value: None, on_error=errors.append)
        error = RuntimeError("denied")
        stream.emit_error(error)
        self.assertEqual(errors, [error])

    def test_close_notifies_once_and_drops_values(self):
        stream = EventStream()
        seen, done = [], []
        stream.listen(seen.append, on_done=lambda: done.append(True))
        stream.close()
        stream.close()
        stream.emit(5)
        self.assertEqual(seen, [])
        self.assertEqual(done, [True])
        self.assertTrue(stream.closed)

    def test_raising_listener_does_not_block_others(self):
        stream = EventStream()
        seen = []

        def broken(value):
            raise ValueError("boom")

        stream.listen(broken)
        stream.listen(seen.append)
        with self.assertLogs("realtime.streams", level="ERROR"):
            stream.emit(7)
        self.assertEqual(seen, [7])
