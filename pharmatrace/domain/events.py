"""
Ledger event variants and the pure decoder.

Contract:
    ``decode_log(raw)`` maps a raw log entry to exactly one variant of the
    closed event set, or to ``UnknownEvent`` carrying the reason.  It never
    raises: a malformed payload is data, not an exception.

Conventions:
    - Addresses are lower-cased.
    - Integer arguments are coerced from int/str and must be non-negative.
    - Descriptive fields use the projection's snake_case column names.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Mapping, Union

from pharmatrace.domain.status import BatchStatus


class LedgerEventName(str, Enum):
    """Closed set of event names emitted by the batch contract."""

    BATCH_CREATED = "BatchCreated"
    BATCH_SPLIT = "BatchSplit"
    TRANSFER_INITIATED = "TransferInitiated"
    TRANSFER = "Transfer"
    STATUS_UPDATE = "StatusUpdate"
    METADATA_ADDED = "MetadataAdded"
    BATCH_RECALLED = "BatchRecalled"
    BATCH_TRANSFER = "BatchTransfer"
    BULK_BATCH_CREATED = "BulkBatchCreated"


# Contract-side status enum order for StatusUpdate(uint8).
CONTRACT_STATUS_ORDER: tuple[BatchStatus, ...] = (
    BatchStatus.CREATED,
    BatchStatus.IN_TRANSIT,
    BatchStatus.DELIVERED,
    BatchStatus.RECALLED,
    BatchStatus.SOLD,
)

# Ledger/manifest key -> projection column.
DESCRIPTIVE_FIELDS: dict[str, str] = {
    "productName": "product_name",
    "strength": "strength",
    "dosageStrength": "strength",
    "packingType": "packing_type",
    "expiryDate": "expiry_date",
    "expiry": "expiry_date",
    "ingredients": "ingredients",
    "storageTemp": "storage_temp",
    "unit": "unit",
}

# Never copied into the audit trail.
FINANCIAL_FIELDS: dict[str, str] = {
    "baseUnitCost": "base_unit_cost",
    "baseUnitPrice": "base_unit_price",
    "currency": "currency",
}


@dataclass(frozen=True)
class RawLog:
    """One undecoded log entry as delivered by the ledger client."""

    block_number: int
    transaction_hash: str
    log_index: int
    event_name: str | None
    args: Mapping[str, Any] = field(default_factory=dict)
    block_timestamp: int | None = None

    @property
    def key(self) -> tuple[str, int]:
        return (self.transaction_hash, self.log_index)

    @property
    def position(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


# =============================================================================
# Variants
# =============================================================================


@dataclass(frozen=True)
class BatchCreated:
    batch_id: int
    manufacturer: str
    quantity: int
    batch_number: str | None = None
    ipfs_hash: str | None = None
    descriptive: dict[str, Any] = field(default_factory=dict)

    event_name = LedgerEventName.BATCH_CREATED


@dataclass(frozen=True)
class BulkItem:
    batch_id: int
    quantity: int
    batch_number: str | None = None


@dataclass(frozen=True)
class BulkBatchCreated:
    manufacturer: str
    items: tuple[BulkItem, ...]

    event_name = LedgerEventName.BULK_BATCH_CREATED

    @property
    def batch_id(self) -> int:
        return self.items[0].batch_id if self.items else 0


@dataclass(frozen=True)
class BatchSplit:
    parent_batch_id: int
    child_batch_id: int
    recipient: str
    quantity: int
    batch_number: str | None = None

    event_name = LedgerEventName.BATCH_SPLIT

    @property
    def batch_id(self) -> int:
        return self.parent_batch_id


@dataclass(frozen=True)
class TransferInitiated:
    batch_id: int
    sender: str
    recipient: str
    quantity: int | None = None

    event_name = LedgerEventName.TRANSFER_INITIATED


@dataclass(frozen=True)
class Transfer:
    """Acceptance of a pending transfer, full or partial."""

    batch_id: int
    sender: str
    recipient: str
    quantity: int | None = None
    new_batch_id: int | None = None

    event_name = LedgerEventName.TRANSFER


@dataclass(frozen=True)
class BatchTransfer:
    """Split-and-send: a new child batch owned by the recipient."""

    parent_batch_id: int
    new_batch_id: int
    sender: str
    recipient: str
    quantity: int

    event_name = LedgerEventName.BATCH_TRANSFER

    @property
    def batch_id(self) -> int:
        return self.parent_batch_id


@dataclass(frozen=True)
class StatusUpdate:
    batch_id: int
    status: BatchStatus

    event_name = LedgerEventName.STATUS_UPDATE


@dataclass(frozen=True)
class MetadataAdded:
    batch_id: int
    ipfs_hash: str
    added_by: str
    fields: dict[str, Any] = field(default_factory=dict)

    event_name = LedgerEventName.METADATA_ADDED


@dataclass(frozen=True)
class BatchRecalled:
    batch_id: int
    recalled_by: str
    reason: str

    event_name = LedgerEventName.BATCH_RECALLED


@dataclass(frozen=True)
class UnknownEvent:
    """Fallback variant for any log that does not decode."""

    raw_event_name: str | None
    reason: str
    batch_id: int | None = None

    event_name = None


LedgerEvent = Union[
    BatchCreated,
    BulkBatchCreated,
    BatchSplit,
    TransferInitiated,
    Transfer,
    BatchTransfer,
    StatusUpdate,
    MetadataAdded,
    BatchRecalled,
]
DecodedEvent = Union[LedgerEvent, UnknownEvent]


def audit_args(event: DecodedEvent) -> dict[str, Any]:
    """JSON-safe payload recorded on the EventLog row."""
    payload = asdict(event)
    for key, value in list(payload.items()):
        if isinstance(value, Enum):
            payload[key] = value.value
    return payload


# =============================================================================
# Decoder
# =============================================================================


class _Malformed(Exception):
    pass


def _get(args: Mapping[str, Any], *keys: str, required: bool = True) -> Any:
    for key in keys:
        if key in args and args[key] is not None:
            return args[key]
    if required:
        raise _Malformed(f"missing argument '{keys[0]}'")
    return None


def _int(args: Mapping[str, Any], *keys: str, required: bool = True) -> int | None:
    value = _get(args, *keys, required=required)
    if value is None:
        return None
    if isinstance(value, bool):
        raise _Malformed(f"argument '{keys[0]}' is not an integer")
    try:
        if isinstance(value, str) and value.lower().startswith("0x"):
            number = int(value, 16)
        else:
            number = int(value)
    except (TypeError, ValueError):
        raise _Malformed(f"argument '{keys[0]}' is not an integer") from None
    if number < 0:
        raise _Malformed(f"argument '{keys[0]}' is negative")
    return number


def _addr(args: Mapping[str, Any], *keys: str) -> str:
    value = _get(args, *keys)
    if not isinstance(value, str) or not value:
        raise _Malformed(f"argument '{keys[0]}' is not an address")
    return value.lower()


def _str(args: Mapping[str, Any], *keys: str, required: bool = False) -> str | None:
    value = _get(args, *keys, required=required)
    return None if value is None else str(value)


def _status(value: Any) -> BatchStatus:
    if isinstance(value, str) and not value.strip().isdigit():
        try:
            return BatchStatus(value.strip().upper())
        except ValueError:
            raise _Malformed(f"unknown status '{value}'") from None
    try:
        index = int(value)
    except (TypeError, ValueError):
        raise _Malformed(f"unknown status '{value}'") from None
    if not 0 <= index < len(CONTRACT_STATUS_ORDER):
        raise _Malformed(f"status index {index} out of range")
    return CONTRACT_STATUS_ORDER[index]


def extract_descriptive(source: Mapping[str, Any]) -> dict[str, Any]:
    """Pick descriptive fields out of event args or a manifest."""
    out: dict[str, Any] = {}
    for key, column in DESCRIPTIVE_FIELDS.items():
        if source.get(key) is not None and column not in out:
            out[column] = source[key]
    return out


def extract_financials(source: Mapping[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, column in FINANCIAL_FIELDS.items():
        if source.get(key) is not None:
            out[column] = source[key]
    return out


def _decode_bulk(args: Mapping[str, Any]) -> BulkBatchCreated:
    manufacturer = _addr(args, "manufacturer")
    items: list[BulkItem] = []
    raw_items = args.get("items")
    if raw_items is not None:
        if not isinstance(raw_items, (list, tuple)) or not raw_items:
            raise _Malformed("argument 'items' must be a non-empty list")
        for entry in raw_items:
            if not isinstance(entry, Mapping):
                raise _Malformed("bulk item is not an object")
            items.append(BulkItem(
                batch_id=_int(entry, "batchId"),
                quantity=_int(entry, "quantity"),
                batch_number=_str(entry, "batchNumber"),
            ))
    else:
        first = _int(args, "firstBatchId")
        count = _int(args, "count")
        quantity = _int(args, "quantity")
        if count == 0:
            raise _Malformed("argument 'count' is zero")
        items = [BulkItem(batch_id=first + i, quantity=quantity) for i in range(count)]
    ids = [item.batch_id for item in items]
    if len(set(ids)) != len(ids):
        raise _Malformed("duplicate batch id in bulk payload")
    return BulkBatchCreated(manufacturer=manufacturer, items=tuple(items))


def _decode(name: LedgerEventName, args: Mapping[str, Any]) -> LedgerEvent:
    if name == LedgerEventName.BATCH_CREATED:
        return BatchCreated(
            batch_id=_int(args, "batchId"),
            manufacturer=_addr(args, "manufacturer"),
            quantity=_int(args, "quantity"),
            batch_number=_str(args, "batchNumber"),
            ipfs_hash=_str(args, "ipfsHash"),
            descriptive=extract_descriptive(args),
        )
    if name == LedgerEventName.BULK_BATCH_CREATED:
        return _decode_bulk(args)
    if name == LedgerEventName.BATCH_SPLIT:
        return BatchSplit(
            parent_batch_id=_int(args, "parentBatchId", "batchId"),
            child_batch_id=_int(args, "childBatchId", "newBatchId"),
            recipient=_addr(args, "recipient", "to"),
            quantity=_int(args, "quantity"),
            batch_number=_str(args, "batchNumber"),
        )
    if name == LedgerEventName.TRANSFER_INITIATED:
        return TransferInitiated(
            batch_id=_int(args, "batchId"),
            sender=_addr(args, "from"),
            recipient=_addr(args, "to"),
            quantity=_int(args, "quantity", required=False),
        )
    if name == LedgerEventName.TRANSFER:
        return Transfer(
            batch_id=_int(args, "batchId"),
            sender=_addr(args, "from"),
            recipient=_addr(args, "to"),
            quantity=_int(args, "quantity", required=False),
            new_batch_id=_int(args, "newBatchId", required=False),
        )
    if name == LedgerEventName.BATCH_TRANSFER:
        return BatchTransfer(
            parent_batch_id=_int(args, "parentBatchId"),
            new_batch_id=_int(args, "newBatchId"),
            sender=_addr(args, "from"),
            recipient=_addr(args, "to"),
            quantity=_int(args, "quantity"),
        )
    if name == LedgerEventName.STATUS_UPDATE:
        return StatusUpdate(
            batch_id=_int(args, "batchId"),
            status=_status(_get(args, "status")),
        )
    if name == LedgerEventName.METADATA_ADDED:
        ipfs_hash = _str(args, "ipfsHash", required=True)
        if not ipfs_hash:
            raise _Malformed("argument 'ipfsHash' is empty")
        return MetadataAdded(
            batch_id=_int(args, "batchId"),
            ipfs_hash=ipfs_hash,
            added_by=_addr(args, "addedBy"),
            fields=extract_descriptive(args),
        )
    # BATCH_RECALLED
    return BatchRecalled(
        batch_id=_int(args, "batchId"),
        recalled_by=_addr(args, "recalledBy"),
        reason=_str(args, "reason") or "",
    )


def decode_log(raw: RawLog) -> DecodedEvent:
    """Map a raw log entry to its event variant.  Never raises."""
    try:
        name = LedgerEventName(raw.event_name)
    except ValueError:
        return UnknownEvent(
            raw_event_name=raw.event_name,
            reason=f"unrecognized event name '{raw.event_name}'",
        )

    args = raw.args if isinstance(raw.args, Mapping) else {}
    try:
        return _decode(name, args)
    except _Malformed as exc:
        batch_id = args.get("batchId")
        return UnknownEvent(
            raw_event_name=raw.event_name,
            reason=str(exc),
            batch_id=batch_id if isinstance(batch_id, int) and batch_id >= 0 else None,
        )
