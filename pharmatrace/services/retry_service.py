"""
RetryService -- drains due RETRY rows of the event log.

Contract:
    ``run_due()`` picks RETRY rows whose next_attempt_at has passed and
    re-applies each one in its own transaction, at most ``concurrency`` at a
    time and at most ``rate_per_second`` starts per second.  Rows touching
    the same batch are never retried concurrently: only the earliest one per
    batch runs in a given pass.

    After a pass that resolved anything, ``on_resolved`` is called so the
    indexer can move the cursor past blocks that no longer hold retries.

Invariants enforced:
    - Exhausted rows become FAILED with a dead-letter entry, never dropped.
    - Retries never block new-block processing (separate worker thread).
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Callable

from sqlalchemy.orm import Session

from pharmatrace.domain.clock import Clock, SystemClock
from pharmatrace.domain.dtos import EventOutcome, OutcomeStatus
from pharmatrace.domain.status import EventLogStatus
from pharmatrace.logging_config import get_logger
from pharmatrace.models.event_log import EventLog
from pharmatrace.selectors.event_log_selector import EventLogSelector
from pharmatrace.services.event_processor import EventProcessor
from pharmatrace.services.workers import PollingWorker, RateLimiter

logger = get_logger("services.retry")


class RetryService:

    def __init__(
        self,
        session_factory: Callable[[], Session],
        processor: EventProcessor,
        clock: Clock | None = None,
        concurrency: int = 5,
        rate_per_second: float = 10.0,
        on_resolved: Callable[[], None] | None = None,
    ):
        self._session_factory = session_factory
        self._processor = processor
        self._clock = clock or SystemClock()
        self._concurrency = max(concurrency, 1)
        self._rate = rate_per_second
        self._on_resolved = on_resolved

    def due_keys(self, limit: int | None = None) -> list[tuple[str, int]]:
        """Due RETRY rows, earliest first, at most one per batch."""
        session = self._session_factory()
        try:
            rows = EventLogSelector(session).due_retries(
                self._clock.now(), limit or self._concurrency * 10,
            )
        finally:
            session.close()

        keys: list[tuple[str, int]] = []
        seen_batches: set[int] = set()
        for transaction_hash, log_index, batch_id in rows:
            if batch_id is not None:
                if batch_id in seen_batches:
                    continue
                seen_batches.add(batch_id)
            keys.append((transaction_hash, log_index))
        return keys

    def retry_one(self, key: tuple[str, int]) -> EventOutcome | None:
        session = self._session_factory()
        try:
            row = session.get(EventLog, key)
            if row is None or row.status != EventLogStatus.RETRY.value:
                session.rollback()
                return None
            outcome = self._processor.retry_log(session, row)
            session.commit()
            return outcome
        except Exception:
            session.rollback()
            logger.exception(
                "event_retry_pass_failed",
                extra={"transaction_hash": key[0], "log_index": key[1]},
            )
            raise
        finally:
            session.close()

    def run_due(self, stop_event=None) -> list[EventOutcome]:
        keys = self.due_keys()
        if not keys:
            return []

        limiter = RateLimiter(self._rate, stop_event)
        outcomes: list[EventOutcome] = []
        with ThreadPoolExecutor(
            max_workers=self._concurrency, thread_name_prefix="pharmatrace-retry",
        ) as pool:
            futures = []
            for key in keys:
                if not limiter.acquire():
                    break
                futures.append(pool.submit(self.retry_one, key))
            for future in futures:
                try:
                    outcome = future.result()
                except Exception:
                    # Already logged with traceback; the row stays RETRY
                    continue
                if outcome is not None:
                    outcomes.append(outcome)

        resolved = [o for o in outcomes if o.status != OutcomeStatus.RETRY]
        logger.info(
            "retry_pass_completed",
            extra={"attempted": len(outcomes), "resolved": len(resolved)},
        )
        if resolved and self._on_resolved is not None:
            self._on_resolved()
        return outcomes


class RetryWorker(PollingWorker):
    name = "retry-worker"

    def __init__(self, service: RetryService, interval_seconds: float = 1.0):
        super().__init__(interval_seconds)
        self._service = service

    def tick(self) -> int:
        return len(self._service.run_due(self._stop_event))
