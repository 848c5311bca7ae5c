from __future__ import annotations

import threading
import time
import unittest

from iskahomes.realtime.debounce import RefreshDebouncer


class RefreshDebouncerTestCase(unittest.TestCase):
    def test_burst_collapses_into_one_call(self):
        fired = threading.Event()
        calls = []

        def refresh():
            calls.append(time.monotonic())
            fired.set()

        debouncer = RefreshDebouncer(0.05, refresh)
        for _ in range(5):
            debouncer.trigger()
        self.assertTrue(debouncer.pending)
        self.assertTrue(fired.wait(2.0))
        time.sleep(0.1)
        self.assertEqual(len(calls), 1)
        self.assertEqual(debouncer.calls, 1)
        self.assertFalse(debouncer.pending)

    def test_flush_runs_pending_call_immediately(self):
        calls = []
        debouncer = RefreshDebouncer(10.0, lambda: calls.append(1))
        self.assertFalse(debouncer.flush())
        debouncer.trigger()
        self.assertTrue(debouncer.flush())
        self.assertEqual(calls, [1])
        self.assertFalse(debouncer.pending)

    def test_cancel_drops_pending_call(self):
        calls = []
        debouncer = RefreshDebouncer(0.02, lambda: calls.append(1))
        debouncer.trigger()
        debouncer.cancel()
        time.sleep(0.1)
        self.assertEqual(calls, [])
        self.assertEqual(debouncer.calls, 0)

    def test_failing_refresh_is_logged_not_raised(self):
        def boom():
            raise RuntimeError("network down")

        debouncer = RefreshDebouncer(10.0, boom)
        debouncer.trigger()
        with self.assertLogs("iskahomes.realtime.debounce", level="ERROR"):
            self.assertTrue(debouncer.flush())
        self.assertEqual(debouncer.calls, 1)


if __name__ == "__main__":
    unittest.main()
