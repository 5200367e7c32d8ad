"""
Module: pharmatrace.selectors.event_log_selector
Responsibility: Read queries over the EventLog audit trail, the alert queue
    and the dead-letter store.
Architecture position: Selectors.
"""

from datetime import datetime

from sqlalchemy import func, select

from pharmatrace.domain.dtos import (
    AlertStats,
    AlertView,
    DeadLetterView,
    EventLogView,
    Page,
)
from pharmatrace.domain.status import AlertStatus, EventLogStatus
from pharmatrace.models.alert import AlertQueueEntry
from pharmatrace.models.dead_letter import DeadLetter
from pharmatrace.models.event_log import EventLog
from pharmatrace.selectors.base import BaseSelector, clamp_page


class EventLogSelector(BaseSelector):

    def list_events(
        self,
        event_name: str | None = None,
        batch_id: int | None = None,
        status: EventLogStatus | str | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> Page[EventLogView]:
        """Audit entries, newest block first."""
        page, limit = clamp_page(page, limit)
        conditions = []
        if event_name is not None:
            conditions.append(EventLog.event_name == event_name)
        if batch_id is not None:
            conditions.append(EventLog.batch_id == batch_id)
        if status is not None:
            conditions.append(EventLog.status == EventLogStatus(status).value)

        total = self.session.execute(
            select(func.count()).select_from(EventLog).where(*conditions)
        ).scalar_one()
        rows = self.session.execute(
            select(EventLog)
            .where(*conditions)
            .order_by(EventLog.block_number.desc(), EventLog.log_index.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars().all()
        return Page(
            items=tuple(EventLogView.from_model(r) for r in rows),
            total=total,
            page=page,
            limit=limit,
        )

    def due_retries(self, now: datetime, limit: int) -> list[tuple[str, int, int | None]]:
        """(transaction_hash, log_index, batch_id) of RETRY rows whose next attempt
        time has passed, oldest position first."""
        rows = self.session.execute(
            select(EventLog.transaction_hash, EventLog.log_index, EventLog.batch_id)
            .where(
                EventLog.status == EventLogStatus.RETRY.value,
                EventLog.next_attempt_at <= now,
            )
            .order_by(EventLog.block_number, EventLog.log_index)
            .limit(limit)
        ).all()
        return [(r.transaction_hash, r.log_index, r.batch_id) for r in rows]

    def lowest_retry_block(self) -> int | None:
        return self.session.execute(
            select(func.min(EventLog.block_number)).where(
                EventLog.status == EventLogStatus.RETRY.value,
            )
        ).scalar_one()


class AlertSelector(BaseSelector):

    def for_batch(self, batch_id: int, alert_type: str | None = None) -> tuple[AlertView, ...]:
        conditions = [AlertQueueEntry.batch_id == batch_id]
        if alert_type is not None:
            conditions.append(AlertQueueEntry.alert_type == alert_type)
        rows = self.session.execute(
            select(AlertQueueEntry).where(*conditions).order_by(AlertQueueEntry.id)
        ).scalars().all()
        return tuple(AlertView.from_model(r) for r in rows)

    def stats(self) -> AlertStats:
        rows = self.session.execute(
            select(AlertQueueEntry.status, func.count()).group_by(AlertQueueEntry.status)
        ).all()
        counts = {status: n for status, n in rows}
        return AlertStats(
            pending=counts.get(AlertStatus.PENDING.value, 0),
            sent=counts.get(AlertStatus.SENT.value, 0),
            failed=counts.get(AlertStatus.FAILED.value, 0),
        )


class DeadLetterSelector(BaseSelector):

    def list_entries(self, include_reviewed: bool = False, limit: int = 100) -> tuple[DeadLetterView, ...]:
        stmt = select(DeadLetter).order_by(DeadLetter.id)
        if not include_reviewed:
            stmt = stmt.where(DeadLetter.reviewed == False)  # noqa: E712
        rows = self.session.execute(stmt.limit(limit)).scalars().all()
        return tuple(DeadLetterView.from_model(r) for r in rows)
