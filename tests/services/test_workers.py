"""
Tests for PollingWorker and RateLimiter.
"""

import threading
import time

from pharmatrace.services.workers import PollingWorker, RateLimiter


class CountingWorker(PollingWorker):
    name = "counting"

    def __init__(self, fail_first=False):
        super().__init__(interval_seconds=0.01)
        self.ticks = 0
        self.fail_first = fail_first
        self.ticked = threading.Event()

    def tick(self) -> int:
        self.ticks += 1
        if self.fail_first and self.ticks == 1:
            raise RuntimeError("first tick fails")
        if self.ticks >= 3:
            self.ticked.set()
        return 1


class TestPollingWorker:

    def test_runs_until_stopped(self):
        worker = CountingWorker()
        worker.start()
        try:
            assert worker.ticked.wait(timeout=5)
            assert worker.is_running
        finally:
            worker.stop(timeout=5)

        assert not worker.is_running
        assert worker.stopping

    def test_failing_tick_does_not_kill_loop(self, captured_logs):
        worker = CountingWorker(fail_first=True)
        worker.start()
        try:
            assert worker.ticked.wait(timeout=5)
        finally:
            worker.stop(timeout=5)

        assert any(r["message"] == "worker_tick_failed" for r in captured_logs())

    def test_start_is_idempotent(self):
        worker = CountingWorker()
        worker.start()
        thread = worker._thread
        try:
            worker.start()
            assert worker._thread is thread
        finally:
            worker.stop(timeout=5)


class TestRateLimiter:

    def test_spaces_calls(self):
        limiter = RateLimiter(rate_per_second=20)

        start = time.monotonic()
        for _ in range(3):
            assert limiter.acquire()

        assert time.monotonic() - start >= 0.09

    def test_zero_rate_is_unlimited(self):
        limiter = RateLimiter(rate_per_second=0)

        assert all(limiter.acquire() for _ in range(100))

    def test_stop_interrupts_wait(self):
        stop = threading.Event()
        limiter = RateLimiter(rate_per_second=0.01, stop_event=stop)
        assert limiter.acquire()

        stop.set()

        assert not limiter.acquire()
