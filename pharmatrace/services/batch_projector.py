"""
BatchProjector -- applies one decoded ledger event to the Batch projection.

Contract:
    ``apply(session, event, raw)`` mutates Batch rows (and enqueues alerts)
    inside the caller's savepoint.  It never commits and never writes the
    EventLog row; the EventProcessor owns both.

Invariants enforced:
    - quantity never goes negative (QuantityUnderflowError before any write).
    - Every batch that is changed is first loaded with SELECT ... FOR UPDATE
      and a fresh read, so a concurrent retry and live pass cannot lose an
      update to each other.
    - Every status change goes through ``validate_transition``.
    - owner changes only on transfer acceptance or split-and-send.
    - parent_batch_id is set once at insert and must reference a batch that
      is already projected (UnknownParentError otherwise).
    - MetadataAdded never touches quantity, status or owner.

Failure modes:
    - InvariantViolationError subclasses: state does not allow the event.
    - ManifestUnavailableError (transient) from the manifest fetcher.
    - OperationalError (transient) on a lock timeout or deadlock.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from pharmatrace.domain.clock import Clock, SystemClock
from pharmatrace.domain.events import (
    BatchCreated,
    BatchRecalled,
    BatchSplit,
    BatchTransfer,
    BulkBatchCreated,
    LedgerEvent,
    MetadataAdded,
    RawLog,
    StatusUpdate,
    Transfer,
    TransferInitiated,
    extract_descriptive,
    extract_financials,
)
from pharmatrace.domain.status import (
    AlertType,
    BatchStatus,
    ParticipantRole,
    TransitionCause,
    acceptance_status,
    validate_transition,
)
from pharmatrace.exceptions import (
    BatchAlreadyExistsError,
    BatchNotProjectedError,
    QuantityUnderflowError,
    TransferStateError,
    UnknownParentError,
)
from pharmatrace.ledger.ipfs import ManifestFetcher
from pharmatrace.logging_config import get_logger
from pharmatrace.models.batch import Batch
from pharmatrace.selectors.batch_selector import BatchSelector
from pharmatrace.services.notification_service import enqueue_alert
from pharmatrace.services.recall_service import RecallService

logger = get_logger("services.projector")

PENDING_BATCH_NUMBER = "Pending-BN-{batch_id}"

# Fields a derived batch copies from its parent
INHERITED_FIELDS = (
    "manufacturer",
    "unit",
    "product_name",
    "strength",
    "packing_type",
    "expiry_date",
    "ingredients",
    "storage_temp",
    "ipfs_hash",
    "financials",
)


def _unknown_role(address: str) -> ParticipantRole:
    return ParticipantRole.UNKNOWN


def _lock_batch(session: Session, batch_id: int) -> Batch | None:
    # Fresh read under a row lock; the identity map may hold a stale copy
    return session.execute(
        select(Batch)
        .where(Batch.batch_id == batch_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


class BatchProjector:

    def __init__(
        self,
        recall_service: RecallService | None = None,
        role_of: Callable[[str], ParticipantRole] | None = None,
        manifest_fetcher: ManifestFetcher | None = None,
        clock: Clock | None = None,
    ):
        self._recall = recall_service or RecallService()
        self._role_of = role_of or _unknown_role
        self._manifest = manifest_fetcher
        self._clock = clock or SystemClock()
        self._handlers: dict[type, Callable[[Session, Any, RawLog], None]] = {
            BatchCreated: self._batch_created,
            BulkBatchCreated: self._bulk_batch_created,
            BatchSplit: self._batch_split,
            TransferInitiated: self._transfer_initiated,
            Transfer: self._transfer_accepted,
            BatchTransfer: self._batch_transfer,
            StatusUpdate: self._status_update,
            MetadataAdded: self._metadata_added,
            BatchRecalled: self._batch_recalled,
        }

    def apply(self, session: Session, event: LedgerEvent, raw: RawLog) -> None:
        self._handlers[type(event)](session, event, raw)
        session.flush()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _event_time(self, raw: RawLog) -> datetime:
        if raw.block_timestamp is not None:
            return datetime.fromtimestamp(raw.block_timestamp, tz=timezone.utc)
        return self._clock.now()

    @staticmethod
    def _require(session: Session, batch_id: int, event_name: str) -> Batch:
        batch = _lock_batch(session, batch_id)
        if batch is None:
            raise BatchNotProjectedError(batch_id, event_name)
        return batch

    @staticmethod
    def _batch_number_taken(session: Session, batch_number: str) -> bool:
        return BatchSelector(session).batch_number_taken(batch_number)

    @staticmethod
    def _check_quantity(batch: Batch, requested: int) -> None:
        if requested <= 0:
            raise TransferStateError(batch.batch_id, "quantity must be positive")
        if requested > batch.quantity:
            raise QuantityUnderflowError(batch.batch_id, batch.quantity, requested)

    def _insert_root(
        self,
        session: Session,
        raw: RawLog,
        batch_id: int,
        manufacturer: str,
        quantity: int,
        batch_number: str | None,
        ipfs_hash: str | None = None,
        descriptive: dict[str, Any] | None = None,
    ) -> Batch:
        if session.get(Batch, batch_id) is not None:
            raise BatchAlreadyExistsError(batch_id)
        number = batch_number or PENDING_BATCH_NUMBER.format(batch_id=batch_id)
        if self._batch_number_taken(session, number):
            raise BatchAlreadyExistsError(batch_id, batch_number=number)
        batch = Batch(
            batch_id=batch_id,
            batch_number=number,
            manufacturer=manufacturer,
            owner=manufacturer,
            parent_batch_id=0,
            quantity=quantity,
            status=BatchStatus.CREATED.value,
            ipfs_hash=ipfs_hash,
            metadata_history=[],
            transaction_hash=raw.transaction_hash,
            block_number=raw.block_number,
            **(descriptive or {}),
        )
        session.add(batch)
        return batch

    def _insert_child(
        self,
        session: Session,
        raw: RawLog,
        parent: Batch,
        child_id: int,
        owner: str,
        quantity: int,
        status: BatchStatus,
        batch_number: str,
    ) -> Batch:
        if self._batch_number_taken(session, batch_number):
            raise BatchAlreadyExistsError(child_id, batch_number=batch_number)
        child = Batch(
            batch_id=child_id,
            batch_number=batch_number,
            owner=owner,
            parent_batch_id=parent.batch_id,
            quantity=quantity,
            status=status.value,
            metadata_history=[],
            transaction_hash=raw.transaction_hash,
            block_number=raw.block_number,
            **{name: getattr(parent, name) for name in INHERITED_FIELDS},
        )
        session.add(child)
        return child

    def _split_number(self, session: Session, parent: Batch, child_id: int, explicit: str | None) -> str:
        if explicit:
            return explicit
        preferred = f"{parent.batch_number}-split"
        if not self._batch_number_taken(session, preferred):
            return preferred
        return f"{parent.batch_number}-split-{child_id}"

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def _batch_created(self, session: Session, event: BatchCreated, raw: RawLog) -> None:
        self._insert_root(
            session,
            raw,
            batch_id=event.batch_id,
            manufacturer=event.manufacturer,
            quantity=event.quantity,
            batch_number=event.batch_number,
            ipfs_hash=event.ipfs_hash,
            descriptive=event.descriptive,
        )

    def _bulk_batch_created(self, session: Session, event: BulkBatchCreated, raw: RawLog) -> None:
        ids = [item.batch_id for item in event.items]
        existing = session.execute(
            select(Batch.batch_id).where(Batch.batch_id.in_(ids))
        ).scalars().first()
        if existing is not None:
            raise BatchAlreadyExistsError(existing)
        for item in event.items:
            self._insert_root(
                session,
                raw,
                batch_id=item.batch_id,
                manufacturer=event.manufacturer,
                quantity=item.quantity,
                batch_number=item.batch_number,
            )
            session.flush()

    # -------------------------------------------------------------------------
    # Derivation
    # -------------------------------------------------------------------------

    def _batch_split(self, session: Session, event: BatchSplit, raw: RawLog) -> None:
        parent = _lock_batch(session, event.parent_batch_id)
        if parent is None:
            raise UnknownParentError(event.child_batch_id, event.parent_batch_id)
        if session.get(Batch, event.child_batch_id) is not None:
            raise BatchAlreadyExistsError(event.child_batch_id)
        if parent.status == BatchStatus.RECALLED.value:
            raise TransferStateError(parent.batch_id, "recalled batch cannot be split")
        self._check_quantity(parent, event.quantity)

        number = self._split_number(session, parent, event.child_batch_id, event.batch_number)
        parent.quantity -= event.quantity
        self._insert_child(
            session,
            raw,
            parent,
            child_id=event.child_batch_id,
            owner=event.recipient,
            quantity=event.quantity,
            status=BatchStatus.CREATED,
            batch_number=number,
        )
        enqueue_alert(
            session,
            dedupe_key=f"split:{raw.transaction_hash}:{raw.log_index}",
            batch_id=event.child_batch_id,
            alert_type=AlertType.BATCH_SPLIT,
            recipient=event.recipient,
            message=(
                f"{event.quantity} units of batch {parent.batch_number} were split "
                f"into batch {number} for you."
            ),
        )

    def _batch_transfer(self, session: Session, event: BatchTransfer, raw: RawLog) -> None:
        """Split-and-send: child goes straight to the recipient."""
        parent = _lock_batch(session, event.parent_batch_id)
        if parent is None:
            raise UnknownParentError(event.new_batch_id, event.parent_batch_id)
        if session.get(Batch, event.new_batch_id) is not None:
            raise BatchAlreadyExistsError(event.new_batch_id)
        if parent.status not in (BatchStatus.CREATED.value, BatchStatus.IN_TRANSIT.value):
            raise TransferStateError(
                parent.batch_id, f"cannot split-and-send from status {parent.status}",
            )
        if event.sender != parent.owner:
            raise TransferStateError(
                parent.batch_id, f"sender {event.sender} is not the owner {parent.owner}",
            )
        self._check_quantity(parent, event.quantity)

        parent.quantity -= event.quantity
        number = f"{parent.batch_number}-{event.new_batch_id}"
        self._insert_child(
            session,
            raw,
            parent,
            child_id=event.new_batch_id,
            owner=event.recipient,
            quantity=event.quantity,
            status=acceptance_status(self._role_of(event.recipient)),
            batch_number=number,
        )
        enqueue_alert(
            session,
            dedupe_key=f"split:{raw.transaction_hash}:{raw.log_index}",
            batch_id=event.new_batch_id,
            alert_type=AlertType.BATCH_SPLIT,
            recipient=event.recipient,
            message=(
                f"{event.quantity} units of batch {parent.batch_number} were sent "
                f"to you as batch {number}."
            ),
        )

    # -------------------------------------------------------------------------
    # Transfers
    # -------------------------------------------------------------------------

    def _transfer_initiated(self, session: Session, event: TransferInitiated, raw: RawLog) -> None:
        batch = self._require(session, event.batch_id, event.event_name.value)
        if batch.has_pending_transfer:
            raise TransferStateError(
                batch.batch_id, f"transfer to {batch.pending_recipient} already pending",
            )
        if event.sender != batch.owner:
            raise TransferStateError(
                batch.batch_id, f"sender {event.sender} is not the owner {batch.owner}",
            )
        quantity = event.quantity if event.quantity is not None else batch.quantity
        self._check_quantity(batch, quantity)

        batch.status = validate_transition(
            batch.batch_id, batch.status, BatchStatus.IN_TRANSIT, TransitionCause.TRANSFER_INITIATED,
        ).value
        batch.pending_recipient = event.recipient
        batch.pending_quantity = quantity
        batch.pending_initiated_at = self._event_time(raw)

        enqueue_alert(
            session,
            dedupe_key=f"transfer-pending:{raw.transaction_hash}:{raw.log_index}",
            batch_id=batch.batch_id,
            alert_type=AlertType.TRANSFER_PENDING,
            recipient=event.recipient,
            message=f"{quantity} units of batch {batch.batch_number} are awaiting your acceptance.",
        )

    def _transfer_accepted(self, session: Session, event: Transfer, raw: RawLog) -> None:
        batch = self._require(session, event.batch_id, event.event_name.value)
        if not batch.has_pending_transfer:
            # Not in transit at all: report the illegal edge
            validate_transition(
                batch.batch_id, batch.status, BatchStatus.DELIVERED, TransitionCause.TRANSFER_ACCEPTED,
            )
            raise TransferStateError(batch.batch_id, "no pending transfer to accept")
        if event.recipient != batch.pending_recipient:
            raise TransferStateError(
                batch.batch_id,
                f"recipient {event.recipient} does not match pending {batch.pending_recipient}",
            )

        quantity = event.quantity if event.quantity is not None else (
            batch.pending_quantity if batch.pending_quantity is not None else batch.quantity
        )
        self._check_quantity(batch, quantity)
        previous_owner = batch.owner
        role_status = acceptance_status(self._role_of(event.recipient))

        if quantity == batch.quantity:
            batch.status = validate_transition(
                batch.batch_id, batch.status, role_status, TransitionCause.TRANSFER_ACCEPTED,
            ).value
            batch.owner = event.recipient
            batch.clear_pending_transfer()
        else:
            self._accept_partial(session, raw, batch, event, quantity, role_status)

        enqueue_alert(
            session,
            dedupe_key=f"transfer-accepted:{raw.transaction_hash}:{raw.log_index}",
            batch_id=batch.batch_id,
            alert_type=AlertType.TRANSFER_ACCEPTED,
            recipient=previous_owner,
            message=(
                f"{event.recipient} accepted {quantity} units of batch {batch.batch_number}."
            ),
        )

    def _accept_partial(
        self,
        session: Session,
        raw: RawLog,
        source: Batch,
        event: Transfer,
        quantity: int,
        role_status: BatchStatus,
    ) -> None:
        if event.new_batch_id is None:
            raise TransferStateError(source.batch_id, "partial acceptance requires newBatchId")

        destination = _lock_batch(session, event.new_batch_id)
        if destination is not None:
            if destination.owner != event.recipient:
                raise BatchAlreadyExistsError(event.new_batch_id)
            if destination.status == BatchStatus.RECALLED.value:
                raise TransferStateError(destination.batch_id, "destination batch is recalled")

        source.status = validate_transition(
            source.batch_id, source.status, BatchStatus.CREATED, TransitionCause.TRANSFER_ACCEPTED,
        ).value
        source.quantity -= quantity
        source.clear_pending_transfer()

        if destination is not None:
            destination.quantity += quantity
        else:
            self._insert_child(
                session,
                raw,
                source,
                child_id=event.new_batch_id,
                owner=event.recipient,
                quantity=quantity,
                status=role_status,
                batch_number=f"{source.batch_number}-{event.new_batch_id}",
            )

    # -------------------------------------------------------------------------
    # Status, metadata, recall
    # -------------------------------------------------------------------------

    def _status_update(self, session: Session, event: StatusUpdate, raw: RawLog) -> None:
        batch = self._require(session, event.batch_id, event.event_name.value)
        batch.status = validate_transition(
            batch.batch_id, batch.status, event.status, TransitionCause.STATUS_UPDATE,
        ).value

    def _metadata_added(self, session: Session, event: MetadataAdded, raw: RawLog) -> None:
        batch = self._require(session, event.batch_id, event.event_name.value)

        updates: dict[str, Any] = {}
        financials: dict[str, Any] = {}
        manifest_batch_number = None
        if self._manifest is not None:
            manifest = self._manifest.fetch(event.ipfs_hash)
            if manifest is not None:
                props = manifest.get("properties") or {}
                if not isinstance(props, dict):
                    props = {}
                updates.update(extract_descriptive(props))
                if manifest.get("name"):
                    updates["product_name"] = manifest["name"]
                financials = extract_financials(props)
                manifest_batch_number = props.get("batchNumber") or manifest.get("batchNumber")
        updates.update(event.fields)

        for column, value in updates.items():
            setattr(batch, column, value)
        if financials:
            batch.financials = {**(batch.financials or {}), **financials}
        if (
            manifest_batch_number
            and batch.batch_number.startswith("Pending-BN-")
            and not self._batch_number_taken(session, str(manifest_batch_number))
        ):
            batch.batch_number = str(manifest_batch_number)

        batch.ipfs_hash = event.ipfs_hash
        batch.metadata_history = [
            *(batch.metadata_history or []),
            {
                "ipfs_hash": event.ipfs_hash,
                "added_by": event.added_by,
                "block_number": raw.block_number,
                "transaction_hash": raw.transaction_hash,
            },
        ]

    def _batch_recalled(self, session: Session, event: BatchRecalled, raw: RawLog) -> None:
        batch = self._require(session, event.batch_id, event.event_name.value)
        batch.status = validate_transition(
            batch.batch_id, batch.status, BatchStatus.RECALLED, TransitionCause.RECALL,
        ).value
        batch.recall_reason = event.reason or None
        batch.clear_pending_transfer()
        session.flush()
        self._recall.cascade(
            session, batch.batch_id, reason=event.reason, recalled_by=event.recalled_by,
        )
