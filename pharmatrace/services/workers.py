"""
PollingWorker -- in-process background loop shared by the retry and alert
workers.

Contract:
    - ``tick()`` does one unit of work and returns a count (public for tests).
    - ``start()`` / ``stop()`` run ``tick()`` on a daemon thread every
      ``interval_seconds`` until stopped.
    - A failing tick is logged and the loop keeps going.
    - ``stop()`` lets the current tick finish.
"""

from __future__ import annotations

import threading
import time

from pharmatrace.logging_config import get_logger

logger = get_logger("services.workers")


class PollingWorker:
    """Base class: subclasses implement ``tick()``."""

    name = "worker"

    def __init__(self, interval_seconds: float = 5.0):
        self._interval = interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> int:
        raise NotImplementedError

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name=f"pharmatrace-{self.name}",
            daemon=True,
        )
        self._thread.start()
        logger.info("worker_started", extra={"worker": self.name, "interval": self._interval})

    def stop(self, timeout: float = 30.0) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("worker_stopped", extra={"worker": self.name})

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("worker_tick_failed", extra={"worker": self.name})
            self._stop_event.wait(timeout=self._interval)


class RateLimiter:
    """Spaces calls at least ``1 / rate_per_second`` apart."""

    def __init__(self, rate_per_second: float, stop_event: threading.Event | None = None):
        self._min_interval = 1.0 / rate_per_second if rate_per_second > 0 else 0.0
        self._next_allowed = 0.0
        self._lock = threading.Lock()
        self._stop_event = stop_event

    def acquire(self) -> bool:
        """Block until a slot is free.  False if stopped while waiting."""
        with self._lock:
            now = time.monotonic()
            wait = max(self._next_allowed - now, 0.0)
            self._next_allowed = max(now, self._next_allowed) + self._min_interval
        if wait > 0:
            if self._stop_event is not None:
                return not self._stop_event.wait(timeout=wait)
            time.sleep(wait)
        return True
