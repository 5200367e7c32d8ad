"""
Indexer -- process lifecycle of the event indexing engine.

Contract:
    ``start_sync()``  bootstrap the cursor, take the sync flag, catch up to
                      the chain head, release the flag, then start the live
                      thread and the retry and alert workers.
    ``stop()``        finish the in-flight block, then stop every loop.
    ``catch_up()``    one bounded pass from cursor+1 to the current head.
    ``poll_once()``   one live step (public for tests and cron-style use).
    ``process_transaction(tx)``  forced synchronous processing of one
                      transaction's logs, failures surfaced to the caller.

Invariants enforced:
    - Logs are applied one at a time, in (block, log_index) order.
    - One commit per block; the cursor advances only after that commit.
    - The cursor never passes a block that still has RETRY rows.
    - Catch-up drains to the head before live mode starts.
    - Cancellation is checked between blocks only.

Failure modes:
    - SyncAlreadyRunningError: another pass holds a fresh sync flag.
    - ChainRewindError: head below the cursor and reset_on_rewind is off.
    - LedgerUnavailableError: a window fetch failed; the pass ends and the
      cursor stays at the last fully committed block.
"""

from __future__ import annotations

import threading
from typing import Callable
from uuid import uuid4

from sqlalchemy.orm import Session

from pharmatrace.config.schema import IndexerConfig
from pharmatrace.domain.clock import Clock, SystemClock
from pharmatrace.domain.dtos import EventOutcome, SyncReport, TransactionResult
from pharmatrace.domain.retry_policy import RetryPolicy
from pharmatrace.exceptions import (
    ChainRewindError,
    PharmaTraceError,
    SyncAlreadyRunningError,
    TransactionNotFoundError,
    TransactionRejectedError,
)
from pharmatrace.ledger.ipfs import ManifestFetcher
from pharmatrace.ledger.source import BlockLogs, EventSource, LedgerClient
from pharmatrace.logging_config import LogContext, get_logger
from pharmatrace.selectors.event_log_selector import EventLogSelector
from pharmatrace.services.batch_projector import BatchProjector
from pharmatrace.services.event_processor import EventProcessor
from pharmatrace.services.notification_service import (
    AlertWorker,
    NotificationService,
    Notifier,
)
from pharmatrace.services.recall_service import RecallService
from pharmatrace.services.retry_service import RetryService, RetryWorker
from pharmatrace.services.sync_cursor import SyncCursor

logger = get_logger("services.indexer")


class Indexer:

    def __init__(
        self,
        config: IndexerConfig,
        client: LedgerClient,
        session_factory: Callable[[], Session],
        clock: Clock | None = None,
        notifier: Notifier | None = None,
        manifest_fetcher: ManifestFetcher | None = None,
    ):
        self._config = config
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

        if manifest_fetcher is None and config.ipfs_gateway:
            manifest_fetcher = ManifestFetcher(config.ipfs_gateway)

        self.source = EventSource(
            client,
            chunk_size=config.chunk_size,
            poll_interval_seconds=config.poll_interval_seconds,
        )
        self.cursor = SyncCursor(
            session_factory,
            clock=self._clock,
            contract_address=config.contract_address,
            chain_id=config.chain_id,
            deployment_block=config.deployment_block,
            stale_after_seconds=config.stale_sync_after_seconds,
        )
        self.processor = EventProcessor(
            projector=BatchProjector(
                recall_service=RecallService(max_depth=config.trace.max_depth),
                role_of=config.role_of,
                manifest_fetcher=manifest_fetcher,
                clock=self._clock,
            ),
            clock=self._clock,
            retry_policy=RetryPolicy(
                max_attempts=config.retry.max_attempts,
                base_delay_seconds=config.retry.base_delay_seconds,
            ),
        )
        self.retry_service = RetryService(
            session_factory,
            self.processor,
            clock=self._clock,
            concurrency=config.retry.concurrency,
            rate_per_second=config.retry.rate_per_second,
            on_resolved=self.settle_cursor,
        )
        self.notifications = NotificationService(
            session_factory,
            notifier=notifier,
            clock=self._clock,
            policy=RetryPolicy(
                max_attempts=config.alerts.max_attempts,
                base_delay_seconds=config.alerts.base_delay_seconds,
            ),
            batch_size=config.alerts.batch_size,
        )
        self._retry_worker = RetryWorker(
            self.retry_service, interval_seconds=config.retry.poll_interval_seconds,
        )
        self._alert_worker = AlertWorker(
            self.notifications, interval_seconds=config.alerts.poll_interval_seconds,
        )

        self._stop_event = threading.Event()
        self._live_thread: threading.Thread | None = None
        self._cursor_lock = threading.Lock()
        self._delivered_through: int | None = None
        self._holds_sync_flag = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start_sync(self) -> SyncReport:
        """Catch up, then hand over to the live thread and workers."""
        if self.is_running:
            raise SyncAlreadyRunningError()

        self._stop_event.clear()
        self.cursor.ensure()
        if not self.cursor.try_enter_sync():
            raise SyncAlreadyRunningError()
        self._holds_sync_flag = True
        try:
            report = self.catch_up()
        finally:
            self._release_sync_flag()

        if self._stop_event.is_set():
            return report

        self._live_thread = threading.Thread(
            target=self._run_live,
            name="pharmatrace-live",
            daemon=True,
        )
        self._live_thread.start()
        self._retry_worker.start()
        self._alert_worker.start()
        logger.info("indexer_started", extra={"cursor": report.cursor})
        return report

    def stop(self, timeout: float = 30.0) -> None:
        """Finish the in-flight block, then stop the live loop and workers."""
        self._stop_event.set()
        if self._live_thread is not None and self._live_thread.is_alive():
            self._live_thread.join(timeout=timeout)
        self._retry_worker.stop(timeout=timeout)
        self._alert_worker.stop(timeout=timeout)
        self._release_sync_flag()
        logger.info("indexer_stopped")

    @property
    def is_running(self) -> bool:
        return self._live_thread is not None and self._live_thread.is_alive()

    # -------------------------------------------------------------------------
    # Passes
    # -------------------------------------------------------------------------

    def catch_up(self) -> SyncReport:
        """Process every block from cursor+1 to the current head."""
        state = self.cursor.ensure()
        head = self.source.head()
        last = state.last_processed_block

        if head < last:
            last = self._handle_rewind(head, last)

        self._delivered_through = last
        start = last + 1
        outcomes: list[EventOutcome] = []
        blocks = 0
        with LogContext.bind(correlation_id=f"catch-up-{uuid4().hex[:12]}"):
            logger.info("catch_up_started", extra={"from_block": start, "to_block": head})
            for block in self.source.catch_up(start, head):
                outcomes.extend(self.process_block(block))
                if not block.is_window_end:
                    blocks += 1
                if self._stop_event.is_set():
                    logger.info("catch_up_interrupted", extra={"block_number": block.block_number})
                    break

        cursor = self.cursor.get().last_processed_block
        report = SyncReport(
            from_block=start,
            to_block=head,
            blocks_seen=blocks,
            cursor=cursor,
            outcomes=tuple(outcomes),
        )
        logger.info(
            "catch_up_completed",
            extra={
                "cursor": cursor,
                "processed": report.processed,
                "failed": report.failed,
                "retrying": report.retrying,
                "skipped": report.skipped,
            },
        )
        return report

    def poll_once(self) -> SyncReport:
        """Process whatever arrived since the last delivered block."""
        if self._delivered_through is None:
            self._delivered_through = self.cursor.ensure().last_processed_block
        start = self._delivered_through + 1
        head = self.source.head()
        outcomes: list[EventOutcome] = []
        blocks = 0
        if head >= start:
            for block in self.source.iter_blocks(start, head):
                outcomes.extend(self.process_block(block))
                if not block.is_window_end:
                    blocks += 1
                if self._stop_event.is_set():
                    break
        self.settle_cursor()
        return SyncReport(
            from_block=start,
            to_block=head,
            blocks_seen=blocks,
            cursor=self.cursor.get().last_processed_block,
            outcomes=tuple(outcomes),
        )

    def process_block(self, block: BlockLogs) -> list[EventOutcome]:
        """Apply one block's logs in one transaction, then move the cursor."""
        outcomes: list[EventOutcome] = []
        if block.logs:
            session = self._session_factory()
            try:
                with LogContext.bind(block_number=block.block_number):
                    for raw in block.logs:
                        outcomes.append(self.processor.process_log(session, raw))
                session.commit()
            except Exception:
                session.rollback()
                logger.error(
                    "block_commit_failed",
                    extra={"block_number": block.block_number},
                    exc_info=True,
                )
                raise
            finally:
                session.close()

        if self._delivered_through is None or block.block_number > self._delivered_through:
            self._delivered_through = block.block_number
        self.settle_cursor()
        return outcomes

    def settle_cursor(self) -> int:
        """Advance the cursor as far as delivered blocks and open retries allow."""
        with self._cursor_lock:
            current = self.cursor.get().last_processed_block
            if self._delivered_through is None:
                return current
            target = self._delivered_through
            session = self._session_factory()
            try:
                lowest_retry = EventLogSelector(session).lowest_retry_block()
            finally:
                session.close()
            if lowest_retry is not None:
                target = min(target, lowest_retry - 1)
            if target <= current:
                return current
            return self.cursor.advance(target, expected=current)

    # -------------------------------------------------------------------------
    # Forced path
    # -------------------------------------------------------------------------

    def process_transaction(self, transaction_hash: str) -> TransactionResult:
        """
        Process one transaction's logs now.

        Raises:
            TransactionNotFoundError: unknown transaction or no contract logs.
            TransactionRejectedError: a log failed decoding or an invariant
                check (its FAILED row is already committed).
        """
        try:
            block_number = self.source.client.get_transaction_receipt(transaction_hash)
        except Exception as exc:
            raise TransactionNotFoundError(transaction_hash, f"receipt lookup failed: {exc}") from exc
        if block_number is None:
            raise TransactionNotFoundError(transaction_hash, "unknown transaction")

        logs = [
            log for log in self.source.fetch_window(block_number, block_number)
            if log.transaction_hash == transaction_hash
        ]
        if not logs:
            raise TransactionNotFoundError(transaction_hash, "transaction emitted no contract logs")

        session = self._session_factory()
        try:
            with LogContext.bind(
                correlation_id=f"tx-{transaction_hash[:18]}",
                transaction_hash=transaction_hash,
                block_number=block_number,
            ):
                outcomes = tuple(self.processor.process_log(session, raw) for raw in logs)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        result = TransactionResult(
            transaction_hash=transaction_hash,
            block_number=block_number,
            outcomes=outcomes,
        )
        rejections = [o for o in outcomes if o.is_rejection]
        if rejections:
            failures = [f"{o.event_name}#{o.log_index} {o.error_code}: {o.error}" for o in rejections]
            logger.error(
                "transaction_rejected",
                extra={"transaction_hash": transaction_hash, "failures": failures},
            )
            raise TransactionRejectedError(transaction_hash, outcomes, failures)

        logger.info(
            "transaction_processed",
            extra={
                "transaction_hash": transaction_hash,
                "processed": result.processed,
                "skipped": result.skipped,
                "retrying": result.retrying,
            },
        )
        return result

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _handle_rewind(self, head: int, last: int) -> int:
        if not self._config.reset_on_rewind:
            logger.error("chain_rewind_detected", extra={"head": head, "last_processed_block": last})
            raise ChainRewindError(head, last)
        target = self.cursor.start_block
        logger.warning(
            "chain_rewind_reset",
            extra={"head": head, "last_processed_block": last, "reset_to": target},
        )
        self.cursor.reset(target)
        return target

    def _release_sync_flag(self) -> None:
        if self._holds_sync_flag:
            self.cursor.exit_sync()
            self._holds_sync_flag = False

    def _run_live(self) -> None:
        """Live loop: poll for new heads until stopped; restart after errors."""
        while not self._stop_event.is_set():
            start = (self._delivered_through if self._delivered_through is not None
                     else self.cursor.get().last_processed_block) + 1
            try:
                with LogContext.bind(correlation_id=f"live-{uuid4().hex[:12]}"):
                    for block in self.source.live(start, self._stop_event):
                        self.process_block(block)
            except PharmaTraceError as exc:
                logger.warning("live_pass_failed", extra={"error": str(exc), "error_code": exc.code})
                # Restart from the durable cursor
                self._delivered_through = None
            except Exception:
                logger.exception("live_pass_unexpected_error")
                self._delivered_through = None
            self._stop_event.wait(timeout=self._config.poll_interval_seconds)
