"""
Module: pharmatrace.models.event_log
Responsibility: Immutable audit record, one row per ledger log entry seen.
Architecture position: Models.  May import from db/base.py, domain/ and
    exceptions.py only.

Invariants enforced:
    - (transaction_hash, log_index) is the primary key: the sole
      deduplication mechanism.
    - PROCESSED and FAILED rows are terminal: the before_update listener
      rejects any change.  RETRY rows may move to PROCESSED or FAILED.

Failure modes:
    - IntegrityError on a second insert of the same log entry.
    - ImmutabilityViolationError on an update to a terminal row.
"""

from datetime import datetime

from sqlalchemy import JSON, Index, String, Text, event, inspect
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.orm.attributes import get_history

from pharmatrace.db.base import Base
from pharmatrace.domain.status import EventLogStatus
from pharmatrace.exceptions import ImmutabilityViolationError
from pharmatrace.logging_config import get_logger

logger = get_logger("models.event_log")

TERMINAL_STATUSES = frozenset({EventLogStatus.PROCESSED.value, EventLogStatus.FAILED.value})


class EventLog(Base):
    """Audit trail entry for one ledger log."""

    __tablename__ = "event_logs"

    __table_args__ = (
        Index("idx_event_log_batch", "batch_id"),
        Index("idx_event_log_name", "event_name"),
        Index("idx_event_log_status_next", "status", "next_attempt_at"),
        Index("idx_event_log_block", "block_number"),
    )

    transaction_hash: Mapped[str] = mapped_column(String(80), primary_key=True)
    log_index: Mapped[int] = mapped_column(primary_key=True, autoincrement=False)

    event_name: Mapped[str | None] = mapped_column(String(40))
    batch_id: Mapped[int | None] = mapped_column()
    block_number: Mapped[int] = mapped_column(nullable=False)

    # Decoded payload (no financial fields)
    args: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    status: Mapped[str] = mapped_column(String(20), nullable=False)
    error: Mapped[str | None] = mapped_column(Text)
    error_code: Mapped[str | None] = mapped_column(String(50))

    # Retry bookkeeping (meaningful while status == RETRY)
    attempts: Mapped[int] = mapped_column(nullable=False, default=0)
    next_attempt_at: Mapped[datetime | None] = mapped_column()
    # Raw payload kept so a RETRY row can be re-applied without the ledger
    raw_args: Mapped[dict | None] = mapped_column(JSON)
    block_timestamp: Mapped[int | None] = mapped_column()

    processed_at: Mapped[datetime | None] = mapped_column()

    def __repr__(self) -> str:
        return f"<EventLog {self.transaction_hash}:{self.log_index} {self.event_name} {self.status}>"


@event.listens_for(EventLog, "before_update")
def prevent_terminal_event_log_update(mapper, connection, target):
    """Reject updates to rows that were already PROCESSED or FAILED."""
    history = get_history(target, "status")
    if history.deleted:
        previous = history.deleted[0]
    else:
        previous = target.status

    if previous not in TERMINAL_STATUSES:
        return

    changed = [attr.key for attr in inspect(target).attrs if attr.history.has_changes()]
    if not changed:
        return

    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "EventLog",
            "transaction_hash": target.transaction_hash,
            "log_index": target.log_index,
            "fields": changed,
        },
    )
    raise ImmutabilityViolationError(
        f"EventLog {target.transaction_hash}:{target.log_index} is {previous} "
        f"and cannot be modified (fields: {', '.join(changed)})"
    )
