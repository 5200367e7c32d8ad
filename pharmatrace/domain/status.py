"""
Batch status state machine and the closed status enums of the projection.

Pure domain code.  Every status change made by the projector goes through
``validate_transition``; nothing else may assign ``Batch.status``.

State machine (cause -> allowed edges):

    STATUS_UPDATE       CREATED -> IN_TRANSIT
                        IN_TRANSIT -> DELIVERED
                        CREATED -> SOLD
                        any -> RECALLED
    TRANSFER_INITIATED  CREATED -> IN_TRANSIT
                        DELIVERED -> IN_TRANSIT   (onward shipment by the holder)
    TRANSFER_ACCEPTED   IN_TRANSIT -> CREATED | SOLD | DELIVERED
    RECALL              any -> RECALLED
"""

from enum import Enum

from pharmatrace.exceptions import IllegalStatusTransitionError


class BatchStatus(str, Enum):
    """Lifecycle status of a projected batch."""

    CREATED = "CREATED"
    IN_TRANSIT = "IN_TRANSIT"
    SOLD = "SOLD"
    RECALLED = "RECALLED"
    DELIVERED = "DELIVERED"


class EventLogStatus(str, Enum):
    """Outcome of applying one ledger log entry."""

    PROCESSED = "PROCESSED"  # Applied; terminal and immutable
    FAILED = "FAILED"        # Decoding/invariant failure or retries exhausted; terminal
    RETRY = "RETRY"          # Transient failure; owned by the retry pipeline


class AlertType(str, Enum):
    RECALL = "RECALL"
    TRANSFER_PENDING = "TRANSFER_PENDING"
    TRANSFER_ACCEPTED = "TRANSFER_ACCEPTED"
    BATCH_SPLIT = "BATCH_SPLIT"


class AlertStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"      # Terminal
    FAILED = "FAILED"  # Terminal after max attempts


class ParticipantRole(str, Enum):
    """Supply-chain role of a ledger address."""

    MANUFACTURER = "MANUFACTURER"
    DISTRIBUTOR = "DISTRIBUTOR"
    PHARMACY = "PHARMACY"
    UNKNOWN = "UNKNOWN"


class TransitionCause(str, Enum):
    """What is asking for the status change."""

    STATUS_UPDATE = "status_update"
    TRANSFER_INITIATED = "transfer_initiated"
    TRANSFER_ACCEPTED = "transfer_accepted"
    RECALL = "recall"


_ALL = frozenset(BatchStatus)

STATUS_UPDATE_EDGES: frozenset[tuple[BatchStatus, BatchStatus]] = frozenset(
    {
        (BatchStatus.CREATED, BatchStatus.IN_TRANSIT),
        (BatchStatus.IN_TRANSIT, BatchStatus.DELIVERED),
        (BatchStatus.CREATED, BatchStatus.SOLD),
    }
    | {(s, BatchStatus.RECALLED) for s in _ALL}
)

ALLOWED_EDGES: dict[TransitionCause, frozenset[tuple[BatchStatus, BatchStatus]]] = {
    TransitionCause.STATUS_UPDATE: STATUS_UPDATE_EDGES,
    TransitionCause.TRANSFER_INITIATED: frozenset({
        (BatchStatus.CREATED, BatchStatus.IN_TRANSIT),
        (BatchStatus.DELIVERED, BatchStatus.IN_TRANSIT),
    }),
    TransitionCause.TRANSFER_ACCEPTED: frozenset({
        (BatchStatus.IN_TRANSIT, BatchStatus.CREATED),
        (BatchStatus.IN_TRANSIT, BatchStatus.SOLD),
        (BatchStatus.IN_TRANSIT, BatchStatus.DELIVERED),
    }),
    TransitionCause.RECALL: frozenset({(s, BatchStatus.RECALLED) for s in _ALL}),
}


def is_allowed(
    current: BatchStatus,
    target: BatchStatus,
    cause: TransitionCause,
) -> bool:
    """Check an edge against the table for ``cause``."""
    return (current, target) in ALLOWED_EDGES[cause]


def validate_transition(
    batch_id: int,
    current: BatchStatus | str,
    target: BatchStatus | str,
    cause: TransitionCause,
) -> BatchStatus:
    """
    Return ``target`` as a BatchStatus if the edge is allowed.

    Raises:
        IllegalStatusTransitionError: edge not in the table for ``cause``.
    """
    current = BatchStatus(current)
    target = BatchStatus(target)
    if not is_allowed(current, target, cause):
        raise IllegalStatusTransitionError(batch_id, current.value, target.value)
    return target


def acceptance_status(role: ParticipantRole) -> BatchStatus:
    """Status a fully accepted transfer lands in, by recipient role."""
    if role == ParticipantRole.PHARMACY:
        return BatchStatus.SOLD
    return BatchStatus.DELIVERED
