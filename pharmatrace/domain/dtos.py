"""
DTOs -- Immutable data structures returned across the service boundary.

Responsibility:
    Read models for batches, lineage, the audit trail, alerts and dead
    letters, plus the result types of the write/control operations
    (per-event outcomes, transaction results, sync reports).

Architecture position:
    Domain -- zero I/O.  ``from_model()`` class methods are boundary
    converters invoked from selectors and services only.

Invariants enforced:
    - Financial fields never appear on a DTO; they stay in the store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from pharmatrace.domain.status import AlertStatus, AlertType, BatchStatus, EventLogStatus

if TYPE_CHECKING:
    from pharmatrace.models.alert import AlertQueueEntry as AlertModel
    from pharmatrace.models.batch import Batch as BatchModel
    from pharmatrace.models.dead_letter import DeadLetter as DeadLetterModel
    from pharmatrace.models.event_log import EventLog as EventLogModel
    from pharmatrace.models.sync_state import SyncState as SyncStateModel

T = TypeVar("T")


@dataclass(frozen=True)
class BatchView:
    batch_id: int
    batch_number: str
    manufacturer: str
    owner: str
    parent_batch_id: int
    quantity: int
    status: BatchStatus
    unit: str | None = None
    product_name: str | None = None
    strength: str | None = None
    packing_type: str | None = None
    expiry_date: str | None = None
    ingredients: Any = None
    storage_temp: str | None = None
    ipfs_hash: str | None = None
    transaction_hash: str | None = None
    block_number: int | None = None
    pending_recipient: str | None = None
    pending_quantity: int | None = None
    recall_reason: str | None = None
    metadata_history: tuple[dict[str, Any], ...] = ()
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_root(self) -> bool:
        return self.parent_batch_id == 0

    @classmethod
    def from_model(cls, model: BatchModel) -> BatchView:
        return cls(
            batch_id=model.batch_id,
            batch_number=model.batch_number,
            manufacturer=model.manufacturer,
            owner=model.owner,
            parent_batch_id=model.parent_batch_id,
            quantity=model.quantity,
            status=BatchStatus(model.status),
            unit=model.unit,
            product_name=model.product_name,
            strength=model.strength,
            packing_type=model.packing_type,
            expiry_date=model.expiry_date,
            ingredients=model.ingredients,
            storage_temp=model.storage_temp,
            ipfs_hash=model.ipfs_hash,
            transaction_hash=model.transaction_hash,
            block_number=model.block_number,
            pending_recipient=model.pending_recipient,
            pending_quantity=model.pending_quantity,
            recall_reason=model.recall_reason,
            metadata_history=tuple(model.metadata_history or ()),
            created_at=model.created_at,
            updated_at=model.updated_at,
        )


@dataclass(frozen=True)
class Page(Generic[T]):
    items: tuple[T, ...]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        if self.limit <= 0:
            return 0
        return -(-self.total // self.limit)


# =============================================================================
# Lineage
# =============================================================================


@dataclass(frozen=True)
class DownstreamResult:
    """Descendants of ``root_batch_id`` grouped by generation (level 1 = children)."""

    root_batch_id: int
    levels: tuple[tuple[BatchView, ...], ...]
    truncated: bool = False

    @property
    def batches(self) -> tuple[BatchView, ...]:
        return tuple(b for level in self.levels for b in level)

    @property
    def owners(self) -> tuple[str, ...]:
        seen: dict[str, None] = {}
        for batch in self.batches:
            seen.setdefault(batch.owner, None)
        return tuple(seen)

    @property
    def depth(self) -> int:
        return len(self.levels)


@dataclass(frozen=True)
class TraceResult:
    batch: BatchView
    upstream: tuple[BatchView, ...]   # ancestors only, root first
    downstream: DownstreamResult


@dataclass(frozen=True)
class SearchResult:
    query: str
    exact: bool
    batches: tuple[BatchView, ...]


@dataclass(frozen=True)
class RecallImpact:
    """Descendants of a batch grouped for an operator.  Quantity includes the batch itself."""

    batch_id: int
    current_status: BatchStatus
    total_descendants: int
    total_quantity: int
    unit: str | None
    by_owner: dict[str, tuple[int, ...]]
    by_status: dict[str, int]
    truncated: bool = False

    @property
    def affected_owners(self) -> int:
        return len(self.by_owner)


# =============================================================================
# Audit trail
# =============================================================================


@dataclass(frozen=True)
class EventLogView:
    transaction_hash: str
    log_index: int
    event_name: str | None
    batch_id: int | None
    block_number: int
    args: dict[str, Any]
    status: EventLogStatus
    error: str | None
    error_code: str | None
    attempts: int
    processed_at: datetime | None

    @classmethod
    def from_model(cls, model: EventLogModel) -> EventLogView:
        return cls(
            transaction_hash=model.transaction_hash,
            log_index=model.log_index,
            event_name=model.event_name,
            batch_id=model.batch_id,
            block_number=model.block_number,
            args=dict(model.args or {}),
            status=EventLogStatus(model.status),
            error=model.error,
            error_code=model.error_code,
            attempts=model.attempts,
            processed_at=model.processed_at,
        )


@dataclass(frozen=True)
class SyncStateView:
    last_processed_block: int
    contract_address: str | None
    chain_id: int | None
    is_syncing: bool
    last_synced_at: datetime | None

    @classmethod
    def default(cls) -> SyncStateView:
        return cls(
            last_processed_block=0,
            contract_address=None,
            chain_id=None,
            is_syncing=False,
            last_synced_at=None,
        )

    @classmethod
    def from_model(cls, model: SyncStateModel) -> SyncStateView:
        return cls(
            last_processed_block=model.last_processed_block,
            contract_address=model.contract_address,
            chain_id=model.chain_id,
            is_syncing=model.is_syncing,
            last_synced_at=model.last_synced_at,
        )


@dataclass(frozen=True)
class AlertView:
    id: int
    batch_id: int
    alert_type: AlertType
    recipient: str
    message: str
    status: AlertStatus
    attempts: int
    error: str | None

    @classmethod
    def from_model(cls, model: AlertModel) -> AlertView:
        return cls(
            id=model.id,
            batch_id=model.batch_id,
            alert_type=AlertType(model.alert_type),
            recipient=model.recipient,
            message=model.message,
            status=AlertStatus(model.status),
            attempts=model.attempts,
            error=model.error,
        )


@dataclass(frozen=True)
class AlertStats:
    pending: int = 0
    sent: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.sent + self.failed


@dataclass(frozen=True)
class DeadLetterView:
    id: int
    transaction_hash: str
    log_index: int
    block_number: int
    event_name: str | None
    payload: dict[str, Any]
    error: str
    attempts: int
    reviewed: bool
    review_note: str | None
    created_at: datetime | None

    @classmethod
    def from_model(cls, model: DeadLetterModel) -> DeadLetterView:
        return cls(
            id=model.id,
            transaction_hash=model.transaction_hash,
            log_index=model.log_index,
            block_number=model.block_number,
            event_name=model.event_name,
            payload=dict(model.payload or {}),
            error=model.error,
            attempts=model.attempts,
            reviewed=model.reviewed,
            review_note=model.review_note,
            created_at=model.created_at,
        )


# =============================================================================
# Write-side results
# =============================================================================


class OutcomeStatus(str, Enum):
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"
    RETRY = "RETRY"
    SKIPPED = "SKIPPED"  # Already recorded; no-op


@dataclass(frozen=True)
class EventOutcome:
    transaction_hash: str
    log_index: int
    block_number: int
    event_name: str | None
    batch_id: int | None
    status: OutcomeStatus
    error_code: str | None = None
    error: str | None = None
    # Status of the row already on record when status is SKIPPED
    existing_status: EventLogStatus | None = None

    @property
    def is_rejection(self) -> bool:
        return (
            self.status == OutcomeStatus.FAILED
            or self.existing_status == EventLogStatus.FAILED
        )


def _count(outcomes: tuple[EventOutcome, ...], status: OutcomeStatus) -> int:
    return sum(1 for o in outcomes if o.status == status)


@dataclass(frozen=True)
class TransactionResult:
    transaction_hash: str
    block_number: int
    outcomes: tuple[EventOutcome, ...]

    @property
    def processed(self) -> int:
        return _count(self.outcomes, OutcomeStatus.PROCESSED)

    @property
    def skipped(self) -> int:
        return _count(self.outcomes, OutcomeStatus.SKIPPED)

    @property
    def retrying(self) -> int:
        return _count(self.outcomes, OutcomeStatus.RETRY)

    @property
    def failed(self) -> int:
        return _count(self.outcomes, OutcomeStatus.FAILED)


@dataclass(frozen=True)
class SyncReport:
    from_block: int
    to_block: int
    blocks_seen: int
    cursor: int
    outcomes: tuple[EventOutcome, ...] = field(default_factory=tuple)

    @property
    def processed(self) -> int:
        return _count(self.outcomes, OutcomeStatus.PROCESSED)

    @property
    def failed(self) -> int:
        return _count(self.outcomes, OutcomeStatus.FAILED)

    @property
    def retrying(self) -> int:
        return _count(self.outcomes, OutcomeStatus.RETRY)

    @property
    def skipped(self) -> int:
        return _count(self.outcomes, OutcomeStatus.SKIPPED)
