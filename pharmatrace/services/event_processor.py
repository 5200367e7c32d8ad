"""
EventProcessor -- exactly-once application of ledger log entries.

Contract:
    ``process_log(session, raw)`` handles one log entry inside the caller's
    transaction and returns an EventOutcome.  It never commits; the caller
    commits once per block and only then advances the cursor.

    1. Deduplicate: an EventLog row for (transaction_hash, log_index) in any
       status short-circuits to SKIPPED.  RETRY rows belong to the retry
       pipeline.
    2. Decode: UnknownEvent -> FAILED row (DECODING_ERROR), non-blocking.
    3. Apply inside a SAVEPOINT; insert the PROCESSED row in the same
       savepoint so projection and audit row commit together.
    4. On failure the savepoint is rolled back and the row is written as
       RETRY (transient) or FAILED (everything else).

    ``retry_log(session, row)`` re-applies a RETRY row and moves it to
    PROCESSED, to the next attempt, or to FAILED plus a dead letter.

Invariants enforced:
    - One EventLog row per (transaction_hash, log_index), ever.
    - A failed event leaves no projection change behind.
    - Errors local to one event never propagate to the block.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session

from pharmatrace.domain.clock import Clock, SystemClock
from pharmatrace.domain.dtos import EventOutcome, OutcomeStatus
from pharmatrace.domain.events import DecodedEvent, RawLog, UnknownEvent, audit_args, decode_log
from pharmatrace.domain.retry_policy import RetryPolicy
from pharmatrace.domain.status import EventLogStatus
from pharmatrace.exceptions import (
    DecodingError,
    InvariantViolationError,
    PharmaTraceError,
    RetryExhaustedError,
    TransientError,
)
from pharmatrace.logging_config import LogContext, get_logger
from pharmatrace.models.dead_letter import DeadLetter
from pharmatrace.models.event_log import EventLog
from pharmatrace.services.batch_projector import BatchProjector

logger = get_logger("services.event_processor")

UNEXPECTED_ERROR_CODE = "UNEXPECTED_ERROR"
INTEGRITY_ERROR_CODE = "INTEGRITY_ERROR"


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (TransientError, OperationalError)):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


def _batch_id_of(event: DecodedEvent) -> int | None:
    return getattr(event, "batch_id", None)


def _event_name_of(event: DecodedEvent, raw: RawLog) -> str | None:
    return event.event_name.value if event.event_name is not None else raw.event_name


class EventProcessor:

    def __init__(
        self,
        projector: BatchProjector | None = None,
        clock: Clock | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self._projector = projector or BatchProjector()
        self._clock = clock or SystemClock()
        self._policy = retry_policy or RetryPolicy()

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._policy

    # -------------------------------------------------------------------------
    # First delivery
    # -------------------------------------------------------------------------

    def process_log(self, session: Session, raw: RawLog) -> EventOutcome:
        existing = session.get(EventLog, raw.key)
        if existing is not None:
            return self._skipped(raw, existing)

        event = decode_log(raw)
        batch_id = _batch_id_of(event)
        event_name = _event_name_of(event, raw)

        with LogContext.bind(
            transaction_hash=raw.transaction_hash,
            block_number=raw.block_number,
            event_name=event_name,
            batch_id=batch_id,
        ):
            if isinstance(event, UnknownEvent):
                error = DecodingError(raw.event_name, event.reason)
                logger.warning(
                    "event_decoding_failed",
                    extra={"log_index": raw.log_index, "reason": event.reason},
                )
                self._insert_row(session, raw, event, EventLogStatus.FAILED, error=error, attempts=0)
                return self._outcome(raw, event, OutcomeStatus.FAILED, error)

            error = self._try_apply(session, raw, event, attempts=1)
            if error is None:
                logger.info("event_processed", extra={"log_index": raw.log_index})
                return self._outcome(raw, event, OutcomeStatus.PROCESSED)

            if isinstance(error, IntegrityError):
                # Another writer may have recorded this log first
                existing = session.get(EventLog, raw.key)
                if existing is not None:
                    logger.info("event_duplicate_detected", extra={"log_index": raw.log_index})
                    return self._skipped(raw, existing)

            if is_transient(error):
                if self._policy.is_exhausted(1):
                    self._insert_row(session, raw, event, EventLogStatus.RETRY, error=error, attempts=1)
                    return self._exhaust(session, session.get(EventLog, raw.key), event, error)
                self._insert_row(
                    session, raw, event, EventLogStatus.RETRY, error=error, attempts=1,
                    next_attempt_at=self._policy.next_attempt_at(self._clock.now(), 1),
                )
                logger.warning(
                    "event_scheduled_for_retry",
                    extra={"log_index": raw.log_index, "attempts": 1, "error": str(error)},
                )
                return self._outcome(raw, event, OutcomeStatus.RETRY, error)

            self._log_failure(raw, error)
            self._insert_row(session, raw, event, EventLogStatus.FAILED, error=error, attempts=1)
            return self._outcome(raw, event, OutcomeStatus.FAILED, error)

    # -------------------------------------------------------------------------
    # Retry delivery
    # -------------------------------------------------------------------------

    def retry_log(self, session: Session, row: EventLog) -> EventOutcome:
        """Re-apply a RETRY row.  The row is updated in place; never re-inserted."""
        raw = RawLog(
            block_number=row.block_number,
            transaction_hash=row.transaction_hash,
            log_index=row.log_index,
            event_name=row.event_name,
            args=dict(row.raw_args or {}),
            block_timestamp=row.block_timestamp,
        )
        if row.status != EventLogStatus.RETRY.value:
            return self._skipped(raw, row)

        event = decode_log(raw)
        attempts = row.attempts + 1
        with LogContext.bind(
            transaction_hash=raw.transaction_hash,
            block_number=raw.block_number,
            event_name=_event_name_of(event, raw),
            batch_id=_batch_id_of(event),
        ):
            if isinstance(event, UnknownEvent):
                error = DecodingError(raw.event_name, event.reason)
                self._finish_row(row, EventLogStatus.FAILED, attempts, error=error)
                return self._outcome(raw, event, OutcomeStatus.FAILED, error)

            error = self._apply(session, raw, event)
            if error is None:
                row.args = audit_args(event)
                self._finish_row(row, EventLogStatus.PROCESSED, attempts)
                logger.info("event_retry_succeeded", extra={"attempts": attempts})
                return self._outcome(raw, event, OutcomeStatus.PROCESSED)

            if is_transient(error):
                if self._policy.is_exhausted(attempts):
                    row.attempts = attempts
                    return self._exhaust(session, row, event, error)
                row.attempts = attempts
                row.error = str(error)
                row.error_code = getattr(error, "code", type(error).__name__)
                row.next_attempt_at = self._policy.next_attempt_at(self._clock.now(), attempts)
                logger.warning(
                    "event_scheduled_for_retry",
                    extra={"attempts": attempts, "error": str(error)},
                )
                return self._outcome(raw, event, OutcomeStatus.RETRY, error)

            self._log_failure(raw, error)
            self._finish_row(row, EventLogStatus.FAILED, attempts, error=error)
            return self._outcome(raw, event, OutcomeStatus.FAILED, error)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _apply(self, session: Session, raw: RawLog, event: DecodedEvent) -> BaseException | None:
        """Apply projection changes in a savepoint.  Returns the error, if any."""
        try:
            with session.begin_nested():
                self._projector.apply(session, event, raw)
        except Exception as exc:
            return exc
        return None

    def _try_apply(
        self, session: Session, raw: RawLog, event: DecodedEvent, attempts: int,
    ) -> BaseException | None:
        """Apply and insert the PROCESSED row in one savepoint."""
        try:
            with session.begin_nested():
                self._projector.apply(session, event, raw)
                session.add(self._new_row(raw, event, EventLogStatus.PROCESSED, attempts=attempts))
                session.flush()
        except Exception as exc:
            return exc
        return None

    def _new_row(
        self,
        raw: RawLog,
        event: DecodedEvent,
        status: EventLogStatus,
        attempts: int,
        error: BaseException | None = None,
        next_attempt_at=None,
    ) -> EventLog:
        now = self._clock.now()
        keep_raw = status == EventLogStatus.RETRY
        return EventLog(
            transaction_hash=raw.transaction_hash,
            log_index=raw.log_index,
            event_name=_event_name_of(event, raw),
            batch_id=_batch_id_of(event),
            block_number=raw.block_number,
            args=audit_args(event),
            status=status.value,
            error=str(error) if error is not None else None,
            error_code=self._code(error),
            attempts=attempts,
            next_attempt_at=next_attempt_at,
            raw_args=dict(raw.args) if keep_raw else None,
            block_timestamp=raw.block_timestamp,
            processed_at=now if status != EventLogStatus.RETRY else None,
        )

    def _insert_row(self, session: Session, raw: RawLog, event: DecodedEvent,
                    status: EventLogStatus, attempts: int,
                    error: BaseException | None = None, next_attempt_at=None) -> None:
        session.add(self._new_row(raw, event, status, attempts, error, next_attempt_at))
        session.flush()

    def _finish_row(self, row: EventLog, status: EventLogStatus, attempts: int,
                    error: BaseException | None = None) -> None:
        row.status = status.value
        row.attempts = attempts
        row.error = str(error) if error is not None else None
        row.error_code = self._code(error)
        row.next_attempt_at = None
        row.raw_args = None
        row.processed_at = self._clock.now()

    def _exhaust(self, session: Session, row: EventLog, event: DecodedEvent,
                 error: BaseException) -> EventOutcome:
        exhausted = RetryExhaustedError(row.transaction_hash, row.log_index, row.attempts, str(error))
        session.add(DeadLetter(
            transaction_hash=row.transaction_hash,
            log_index=row.log_index,
            block_number=row.block_number,
            event_name=row.event_name,
            payload=self._dead_letter_payload(row),
            error=str(error),
            attempts=row.attempts,
            reviewed=False,
        ))
        raw = RawLog(row.block_number, row.transaction_hash, row.log_index, row.event_name)
        self._finish_row(row, EventLogStatus.FAILED, row.attempts, error=exhausted)
        session.flush()
        logger.error(
            "event_dead_lettered",
            extra={"attempts": row.attempts, "last_error": str(error)},
        )
        return self._outcome(raw, event, OutcomeStatus.FAILED, exhausted)

    @staticmethod
    def _dead_letter_payload(row: EventLog) -> dict[str, Any]:
        return {
            "event_name": row.event_name,
            "args": dict(row.raw_args or {}),
            "block_timestamp": row.block_timestamp,
            "error_code": row.error_code,
        }

    @staticmethod
    def _code(error: BaseException | None) -> str | None:
        if error is None:
            return None
        if isinstance(error, PharmaTraceError):
            return error.code
        if isinstance(error, IntegrityError):
            return INTEGRITY_ERROR_CODE
        return UNEXPECTED_ERROR_CODE

    @staticmethod
    def _log_failure(raw: RawLog, error: BaseException) -> None:
        if isinstance(error, InvariantViolationError):
            logger.error(
                "event_invariant_violation",
                extra={"log_index": raw.log_index, "error_code": error.code, "error": str(error)},
            )
        elif isinstance(error, (PharmaTraceError, IntegrityError)):
            logger.error(
                "event_application_failed",
                extra={"log_index": raw.log_index, "error": str(error)},
            )
        else:
            logger.error(
                "event_application_unexpected_error",
                extra={"log_index": raw.log_index, "error": str(error)},
                exc_info=error,
            )

    def _outcome(
        self,
        raw: RawLog,
        event: DecodedEvent,
        status: OutcomeStatus,
        error: BaseException | None = None,
    ) -> EventOutcome:
        return EventOutcome(
            transaction_hash=raw.transaction_hash,
            log_index=raw.log_index,
            block_number=raw.block_number,
            event_name=_event_name_of(event, raw),
            batch_id=_batch_id_of(event),
            status=status,
            error_code=self._code(error),
            error=str(error) if error is not None else None,
        )

    @staticmethod
    def _skipped(raw: RawLog, existing: EventLog) -> EventOutcome:
        return EventOutcome(
            transaction_hash=raw.transaction_hash,
            log_index=raw.log_index,
            block_number=existing.block_number,
            event_name=existing.event_name,
            batch_id=existing.batch_id,
            status=OutcomeStatus.SKIPPED,
            error_code=existing.error_code,
            error=existing.error,
            existing_status=EventLogStatus(existing.status),
        )
