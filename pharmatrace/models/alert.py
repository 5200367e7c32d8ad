"""
Module: pharmatrace.models.alert
Responsibility: Outbound notification queue (recall and transfer alerts).
Architecture position: Models.

Invariants enforced:
    - dedupe_key is unique: enqueueing the same natural key twice is a no-op.
    - attempts increments only on a delivery attempt.
    - SENT is terminal.
"""

from datetime import datetime

from sqlalchemy import Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from pharmatrace.db.base import Base, TimestampedMixin
from pharmatrace.domain.status import AlertStatus


class AlertQueueEntry(TimestampedMixin, Base):
    __tablename__ = "alert_queue"

    __table_args__ = (
        Index("idx_alert_status_next", "status", "next_attempt_at"),
        Index("idx_alert_batch_recipient", "batch_id", "recipient"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    dedupe_key: Mapped[str] = mapped_column(String(300), nullable=False, unique=True)
    batch_id: Mapped[int] = mapped_column(nullable=False)
    alert_type: Mapped[str] = mapped_column(String(30), nullable=False)
    recipient: Mapped[str] = mapped_column(String(64), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AlertStatus.PENDING.value,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[str | None] = mapped_column(Text)
    next_attempt_at: Mapped[datetime | None] = mapped_column()
    sent_at: Mapped[datetime | None] = mapped_column()

    def __repr__(self) -> str:
        return f"<Alert {self.alert_type} batch={self.batch_id} to={self.recipient} {self.status}>"
