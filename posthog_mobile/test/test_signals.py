import threading
import unittest

from posthog_mobile.signals import MainDispatcher, Signal


class TestSignal(unittest.TestCase):
    def test_publish_calls_receivers(self):
        signal = Signal("test")
        calls = []
        signal.subscribe(lambda: calls.append("a"))
        signal.subscribe(lambda: calls.append("b"))

        signal.publish()

        self.assertEqual(calls, ["a", "b"])

    def test_subscribe_as_decorator_and_unsubscribe(self):
        signal = Signal("test")
        calls = []

        @signal.subscribe
        def receiver():
            calls.append(1)

        signal.subscribe(receiver)
        signal.publish()
        signal.unsubscribe(receiver)
        signal.publish()

        self.assertEqual(calls, [1])

    def test_failing_receiver_does_not_stop_others(self):
        signal = Signal("test")
        calls = []

        def failing():
            raise Exception("receiver failed")

        signal.subscribe(failing)
        signal.subscribe(lambda: calls.append(1))

        with self.assertLogs("posthog_mobile", level="ERROR"):
            signal.publish()

        self.assertEqual(calls, [1])

    def test_publish_on_dispatcher_thread(self):
        dispatcher = MainDispatcher()
        signal = Signal("test", dispatcher)
        delivered = threading.Event()
        thread_names = []

        def receiver():
            thread_names.append(threading.current_thread().name)
            delivered.set()

        signal.subscribe(receiver)
        signal.publish()

        self.assertTrue(delivered.wait(5))
        dispatcher.close()
        self.assertTrue(thread_names[0].startswith("posthog-main"))

    def test_closed_dispatcher_drops_callbacks(self):
        dispatcher = MainDispatcher()
        dispatcher.close()
        self.assertIsNone(dispatcher.dispatch(lambda: None))
