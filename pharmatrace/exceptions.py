"""
Typed exception hierarchy for the indexer.

Every error has a typed class (catch by type, not message), a ``code``
class attribute (machine-readable), and structured attributes carrying the
context needed to log or surface it.

    PharmaTraceError (base)
    |
    +-- TransientError                 retried with backoff
    |   +-- LedgerUnavailableError
    |   +-- ManifestUnavailableError
    |
    +-- DecodingError                  logged FAILED, non-blocking
    |
    +-- InvariantViolationError        logged FAILED, surfaced prominently
    |   +-- BatchAlreadyExistsError
    |   +-- BatchNotProjectedError
    |   +-- UnknownParentError
    |   +-- QuantityUnderflowError
    |   +-- IllegalStatusTransitionError
    |   +-- TransferStateError
    |
    +-- BatchNotFoundError             404-equivalent on read paths
    +-- CycleOrDepthExceededError      malformed lineage
    +-- RetryExhaustedError            moved to dead-letter
    +-- DeadLetterNotFoundError
    |
    +-- SyncError
    |   +-- CursorConflictError
    |   +-- CursorRegressionError
    |   +-- SyncAlreadyRunningError
    |   +-- ChainRewindError
    |
    +-- TransactionError               forced processTransaction path
    |   +-- TransactionNotFoundError
    |   +-- TransactionRejectedError
    |
    +-- ImmutabilityViolationError
    +-- ConfigError

Propagation policy: errors local to one event never abort the block or the
sync loop. Cursor write errors abort the current pass only.
"""

from typing import Any


class PharmaTraceError(Exception):
    """
    Base exception for all indexer errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    identification.
    """

    code: str = "PHARMATRACE_ERROR"


# Transient errors


class TransientError(PharmaTraceError):
    """A failure expected to clear on retry (store or network hiccup)."""

    code: str = "TRANSIENT"

    def __init__(self, message: str):
        self.reason = message
        super().__init__(message)


class LedgerUnavailableError(TransientError):
    """A ledger query for a block range failed."""

    code: str = "LEDGER_UNAVAILABLE"

    def __init__(self, from_block: int, to_block: int, reason: str):
        self.from_block = from_block
        self.to_block = to_block
        super().__init__(
            f"Ledger query for blocks {from_block}-{to_block} failed: {reason}"
        )


class ManifestUnavailableError(TransientError):
    """The content-addressed manifest could not be fetched."""

    code: str = "MANIFEST_UNAVAILABLE"

    def __init__(self, ipfs_hash: str, reason: str):
        self.ipfs_hash = ipfs_hash
        super().__init__(f"Manifest {ipfs_hash} unavailable: {reason}")


# Decoding


class DecodingError(PharmaTraceError):
    """A raw log could not be mapped to a known event variant."""

    code: str = "DECODING_ERROR"

    def __init__(self, event_name: str | None, reason: str):
        self.event_name = event_name
        self.reason = reason
        super().__init__(f"Cannot decode {event_name or '<unnamed>'} log: {reason}")


# Invariant violations


class InvariantViolationError(PharmaTraceError):
    """
    Applying an event would break a projection invariant.

    Indicates a missed prior event or data corruption. Never retried.
    """

    code: str = "INVARIANT_VIOLATION"


class BatchAlreadyExistsError(InvariantViolationError):
    """A creation event referenced a batch id that is already projected."""

    code: str = "BATCH_ALREADY_EXISTS"

    def __init__(self, batch_id: int, batch_number: str | None = None):
        self.batch_id = batch_id
        self.batch_number = batch_number
        if batch_number is not None:
            super().__init__(f"Batch number '{batch_number}' is already taken (batch #{batch_id})")
        else:
            super().__init__(f"Batch #{batch_id} already exists")


class BatchNotProjectedError(InvariantViolationError):
    """An event referenced a batch the projection has never seen."""

    code: str = "BATCH_NOT_PROJECTED"

    def __init__(self, batch_id: int, event_name: str):
        self.batch_id = batch_id
        self.event_name = event_name
        super().__init__(f"{event_name} references unknown batch #{batch_id}")


class UnknownParentError(InvariantViolationError):
    """A derived batch points at a parent that does not exist yet."""

    code: str = "UNKNOWN_PARENT"

    def __init__(self, batch_id: int, parent_batch_id: int):
        self.batch_id = batch_id
        self.parent_batch_id = parent_batch_id
        super().__init__(
            f"Batch #{batch_id} references unknown parent #{parent_batch_id}"
        )


class QuantityUnderflowError(InvariantViolationError):
    """A decrement would drive a batch quantity below zero."""

    code: str = "QUANTITY_UNDERFLOW"

    def __init__(self, batch_id: int, available: int, requested: int):
        self.batch_id = batch_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Batch #{batch_id} holds {available}, cannot remove {requested}"
        )


class IllegalStatusTransitionError(InvariantViolationError):
    """A status change outside the allowed edge set."""

    code: str = "ILLEGAL_STATUS_TRANSITION"

    def __init__(self, batch_id: int, from_status: str, to_status: str):
        self.batch_id = batch_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Batch #{batch_id}: transition {from_status} -> {to_status} not allowed"
        )


class TransferStateError(InvariantViolationError):
    """A transfer event does not match the batch's pending-transfer state."""

    code: str = "TRANSFER_STATE"

    def __init__(self, batch_id: int, reason: str):
        self.batch_id = batch_id
        self.reason = reason
        super().__init__(f"Batch #{batch_id}: {reason}")


# Read-side errors


class BatchNotFoundError(PharmaTraceError):
    """Query for a nonexistent batch."""

    code: str = "BATCH_NOT_FOUND"

    def __init__(self, batch_id: int | str):
        self.batch_id = batch_id
        super().__init__(f"Batch not found: {batch_id}")


class CycleOrDepthExceededError(PharmaTraceError):
    """Lineage traversal revisited a batch or ran past the depth bound."""

    code: str = "CYCLE_OR_DEPTH_EXCEEDED"

    def __init__(self, batch_id: int, direction: str, depth: int, reason: str):
        self.batch_id = batch_id
        self.direction = direction
        self.depth = depth
        self.reason = reason
        super().__init__(
            f"{direction} traversal from batch #{batch_id} aborted at depth {depth}: {reason}"
        )


class DeadLetterNotFoundError(PharmaTraceError):
    """No dead-letter entry with the given id."""

    code: str = "DEAD_LETTER_NOT_FOUND"

    def __init__(self, dead_letter_id: int):
        self.dead_letter_id = dead_letter_id
        super().__init__(f"Dead letter {dead_letter_id} not found")


class RetryExhaustedError(PharmaTraceError):
    """The retry budget for an event is spent."""

    code: str = "RETRY_EXHAUSTED"

    def __init__(self, transaction_hash: str, log_index: int, attempts: int, last_error: str):
        self.transaction_hash = transaction_hash
        self.log_index = log_index
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Event {transaction_hash}:{log_index} failed after {attempts} attempts: {last_error}"
        )


# Sync cursor


class SyncError(PharmaTraceError):
    """Base exception for sync cursor and sync lifecycle errors."""

    code: str = "SYNC_ERROR"


class CursorConflictError(SyncError):
    """Compare-and-advance found a different previous value."""

    code: str = "CURSOR_CONFLICT"

    def __init__(self, expected: int, target: int):
        self.expected = expected
        self.target = target
        super().__init__(
            f"Cursor moved concurrently: expected {expected} before advancing to {target}"
        )


class CursorRegressionError(SyncError):
    """An advance would move the cursor backwards."""

    code: str = "CURSOR_REGRESSION"

    def __init__(self, current: int, target: int):
        self.current = current
        self.target = target
        super().__init__(f"Cursor cannot move back from {current} to {target}")


class SyncAlreadyRunningError(SyncError):
    """Another catch-up pass holds the sync flag."""

    code: str = "SYNC_ALREADY_RUNNING"

    def __init__(self, started_at: Any = None):
        self.started_at = started_at
        super().__init__(f"A sync pass is already running (since {started_at})")


class ChainRewindError(SyncError):
    """The ledger head is below the last processed block."""

    code: str = "CHAIN_REWIND"

    def __init__(self, head: int, last_processed: int):
        self.head = head
        self.last_processed = last_processed
        super().__init__(
            f"Chain head {head} is behind last processed block {last_processed}"
        )


# Forced transaction processing


class TransactionError(PharmaTraceError):
    """Base exception for the forced processTransaction path."""

    code: str = "TRANSACTION_ERROR"


class TransactionNotFoundError(TransactionError):
    """The ledger has no receipt or no relevant logs for a transaction."""

    code: str = "TRANSACTION_NOT_FOUND"

    def __init__(self, transaction_hash: str, reason: str):
        self.transaction_hash = transaction_hash
        self.reason = reason
        super().__init__(f"Transaction {transaction_hash}: {reason}")


class TransactionRejectedError(TransactionError):
    """One or more logs of a forced transaction failed decoding or validation."""

    code: str = "TRANSACTION_REJECTED"

    def __init__(self, transaction_hash: str, outcomes: Any, failures: list[str]):
        self.transaction_hash = transaction_hash
        self.outcomes = outcomes
        self.failures = failures
        super().__init__(
            f"Transaction {transaction_hash} rejected: {'; '.join(failures)}"
        )


# Storage and configuration


class ImmutabilityViolationError(PharmaTraceError):
    """Attempt to modify a record that is final."""

    code: str = "IMMUTABILITY_VIOLATION"


class ConfigError(PharmaTraceError):
    """Configuration value is missing or invalid."""

    code: str = "CONFIG_ERROR"

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid configuration '{key}': {reason}")
