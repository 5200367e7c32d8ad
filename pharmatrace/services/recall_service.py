"""
RecallService -- cascade of a BatchRecalled event over the descendant graph.

Contract:
    ``cascade(session, batch_id, ...)`` runs inside the recall event's
    savepoint.  It marks every descendant RECALLED and enqueues exactly one
    RECALL alert per distinct descendant owner, keyed ``recall:{batch}:{owner}``.

Invariants enforced:
    - The traversal has no node cap: every descendant is reached.  Cycles
      and chains deeper than ``max_depth`` still raise
      CycleOrDepthExceededError, which fails the recall event.
    - Descendant rows are locked (SELECT ... FOR UPDATE) in batch_id order
      before they are changed.
    - One alert per (recalled batch, recipient), however many affected
      batches that recipient holds.
    - Re-running the cascade for an already recalled batch is a no-op:
      statuses are already RECALLED and every alert key already exists.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from pharmatrace.domain.status import AlertType, BatchStatus, TransitionCause, validate_transition
from pharmatrace.logging_config import get_logger
from pharmatrace.models.batch import Batch
from pharmatrace.selectors.trace_selector import DEFAULT_MAX_DEPTH, TraceSelector
from pharmatrace.services.notification_service import enqueue_alert

logger = get_logger("services.recall")

# Bound for a single IN (...) clause
_LOCK_CHUNK = 500


@dataclass(frozen=True)
class CascadeResult:
    batch_id: int
    descendants: int
    newly_recalled: int
    recipients: tuple[str, ...]
    alerts_enqueued: int


def recall_dedupe_key(batch_id: int, recipient: str) -> str:
    return f"recall:{batch_id}:{recipient}"


def lock_batches(session: Session, batch_ids: list[int]) -> list[Batch]:
    """Lock and re-read the given batches, lowest id first."""
    ordered = sorted(batch_ids)
    locked: list[Batch] = []
    for i in range(0, len(ordered), _LOCK_CHUNK):
        chunk = ordered[i:i + _LOCK_CHUNK]
        locked.extend(
            session.execute(
                select(Batch)
                .where(Batch.batch_id.in_(chunk))
                .order_by(Batch.batch_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalars().all()
        )
    return locked


class RecallService:

    def __init__(self, max_depth: int = DEFAULT_MAX_DEPTH):
        self._max_depth = max_depth

    def cascade(
        self,
        session: Session,
        batch_id: int,
        reason: str = "",
        recalled_by: str | None = None,
    ) -> CascadeResult:
        downstream = TraceSelector(
            session, max_depth=self._max_depth, max_nodes=None,
        ).downstream(batch_id)

        newly_recalled = 0
        for model in lock_batches(session, [view.batch_id for view in downstream.batches]):
            if model.status == BatchStatus.RECALLED.value:
                continue
            model.status = validate_transition(
                model.batch_id, model.status, BatchStatus.RECALLED, TransitionCause.RECALL,
            ).value
            model.recall_reason = reason or None
            model.clear_pending_transfer()
            newly_recalled += 1

        enqueued = 0
        for owner in downstream.owners:
            message = (
                f"Batch #{batch_id} has been recalled"
                + (f": {reason}" if reason else "")
                + ". You hold affected downstream stock."
            )
            if enqueue_alert(
                session,
                dedupe_key=recall_dedupe_key(batch_id, owner),
                batch_id=batch_id,
                alert_type=AlertType.RECALL,
                recipient=owner,
                message=message,
            ):
                enqueued += 1
        session.flush()

        logger.info(
            "recall_cascade_completed",
            extra={
                "batch_id": batch_id,
                "recalled_by": recalled_by,
                "descendants": len(downstream.batches),
                "newly_recalled": newly_recalled,
                "recipients": len(downstream.owners),
                "alerts_enqueued": enqueued,
            },
        )
        return CascadeResult(
            batch_id=batch_id,
            descendants=len(downstream.batches),
            newly_recalled=newly_recalled,
            recipients=downstream.owners,
            alerts_enqueued=enqueued,
        )
