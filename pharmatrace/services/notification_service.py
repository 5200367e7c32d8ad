"""
NotificationService -- alert queue writer and bounded-retry delivery.

Contract:
    - ``enqueue_alert()`` inserts one AlertQueue row per natural key and is a
      no-op if the key already exists.  Runs inside the caller's transaction
      (the event savepoint), so an alert exists iff its event was applied.
    - ``process_alerts()`` delivers due PENDING rows through a Notifier.
      Each attempt increments ``attempts``; success sets SENT (terminal);
      after ``max_attempts`` failures the row is FAILED.

Delivery never blocks event processing: it runs from its own worker with
its own sessions.
"""

from __future__ import annotations

from typing import Callable, Protocol

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pharmatrace.domain.clock import Clock, SystemClock
from pharmatrace.domain.dtos import AlertStats, AlertView
from pharmatrace.domain.retry_policy import RetryPolicy
from pharmatrace.domain.status import AlertStatus, AlertType
from pharmatrace.logging_config import get_logger
from pharmatrace.models.alert import AlertQueueEntry
from pharmatrace.selectors.event_log_selector import AlertSelector
from pharmatrace.services.workers import PollingWorker

logger = get_logger("services.notification")


def enqueue_alert(
    session: Session,
    *,
    dedupe_key: str,
    batch_id: int,
    alert_type: AlertType,
    recipient: str,
    message: str,
) -> bool:
    """Insert an alert unless its natural key exists.  Returns True if inserted."""
    exists = session.execute(
        select(AlertQueueEntry.id).where(AlertQueueEntry.dedupe_key == dedupe_key)
    ).first()
    if exists is not None:
        return False
    try:
        with session.begin_nested():
            session.add(AlertQueueEntry(
                dedupe_key=dedupe_key,
                batch_id=batch_id,
                alert_type=alert_type.value,
                recipient=recipient,
                message=message,
                status=AlertStatus.PENDING.value,
                attempts=0,
            ))
            session.flush()
    except IntegrityError:
        logger.debug("alert_already_enqueued", extra={"dedupe_key": dedupe_key})
        return False
    logger.info(
        "alert_enqueued",
        extra={
            "alert_type": alert_type.value,
            "recipient": recipient,
            "dedupe_key": dedupe_key,
        },
    )
    return True


class Notifier(Protocol):
    """Delivery transport.  Raise to signal a failed attempt."""

    def send(self, alert: AlertView) -> None:
        ...


class LoggingNotifier:
    """Default transport: writes the alert to the log."""

    def send(self, alert: AlertView) -> None:
        logger.info(
            "alert_delivered",
            extra={
                "alert_id": alert.id,
                "alert_type": alert.alert_type.value,
                "recipient": alert.recipient,
                "batch_id": alert.batch_id,
                "alert_message": alert.message,
            },
        )


class NotificationService:

    def __init__(
        self,
        session_factory: Callable[[], Session],
        notifier: Notifier | None = None,
        clock: Clock | None = None,
        policy: RetryPolicy | None = None,
        batch_size: int = 100,
    ):
        self._session_factory = session_factory
        self._notifier = notifier or LoggingNotifier()
        self._clock = clock or SystemClock()
        self._policy = policy or RetryPolicy()
        self._batch_size = batch_size

    def process_alerts(self, limit: int | None = None) -> dict[str, int]:
        """Deliver due PENDING alerts.  Returns counts of sent/retrying/failed."""
        now = self._clock.now()
        counts = {"sent": 0, "retrying": 0, "failed": 0}
        session = self._session_factory()
        try:
            alerts = session.execute(
                select(AlertQueueEntry)
                .where(
                    AlertQueueEntry.status == AlertStatus.PENDING.value,
                    AlertQueueEntry.attempts < self._policy.max_attempts,
                    or_(
                        AlertQueueEntry.next_attempt_at == None,  # noqa: E711
                        AlertQueueEntry.next_attempt_at <= now,
                    ),
                )
                .order_by(AlertQueueEntry.id)
                .limit(limit or self._batch_size)
            ).scalars().all()

            for alert in alerts:
                counts[self._deliver(alert, now)] += 1
                session.commit()
            return counts
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _deliver(self, alert: AlertQueueEntry, now) -> str:
        alert.attempts += 1
        try:
            self._notifier.send(AlertView.from_model(alert))
        except Exception as exc:
            alert.error = str(exc)
            if self._policy.is_exhausted(alert.attempts):
                alert.status = AlertStatus.FAILED.value
                alert.next_attempt_at = None
                logger.error(
                    "alert_delivery_failed",
                    extra={"alert_id": alert.id, "attempts": alert.attempts, "error": str(exc)},
                )
                return "failed"
            alert.next_attempt_at = self._policy.next_attempt_at(now, alert.attempts)
            logger.warning(
                "alert_delivery_retry",
                extra={"alert_id": alert.id, "attempts": alert.attempts, "error": str(exc)},
            )
            return "retrying"

        alert.status = AlertStatus.SENT.value
        alert.sent_at = now
        alert.error = None
        alert.next_attempt_at = None
        return "sent"

    def get_alert_stats(self) -> AlertStats:
        session = self._session_factory()
        try:
            return AlertSelector(session).stats()
        finally:
            session.close()


class AlertWorker(PollingWorker):
    name = "alert-worker"

    def __init__(self, service: NotificationService, interval_seconds: float = 5.0):
        super().__init__(interval_seconds)
        self._service = service

    def tick(self) -> int:
        counts = self._service.process_alerts()
        return sum(counts.values())
