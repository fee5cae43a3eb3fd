import threading
import unittest

from scheduling import ThreadingScheduler, monotonic_ms


class TestScheduling(unittest.TestCase):
    def test_monotonic_ms(self):
        first = monotonic_ms()
        second = monotonic_ms()
        self.assertGreaterEqual(second, first)

    def test_threading_scheduler_runs_callback(self):
        fired = threading.Event()
        scheduler = ThreadingScheduler()
        handle = scheduler.schedule(0.0, fired.set)
        self.assertTrue(fired.wait(2.0))
        self.assertTrue(handle.daemon)

    def test_cancel_prevents_callback(self):
        fired = threading.Event()
        scheduler = ThreadingScheduler()
        handle = scheduler.schedule(5.0, fired.set)
        scheduler.cancel(handle)
        scheduler.cancel(None)
        handle.join(1.0)
        self.assertFalse(fired.is_set())


if __name__ == "__main__":
    unittest.main()
