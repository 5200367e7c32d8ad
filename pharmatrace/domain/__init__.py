"""Pure domain layer: clock, event variants, status machine, retry policy, DTOs."""

from pharmatrace.domain.clock import Clock, DeterministicClock, SystemClock
from pharmatrace.domain.events import LedgerEventName, RawLog, UnknownEvent, decode_log
from pharmatrace.domain.retry_policy import RetryPolicy
from pharmatrace.domain.status import (
    AlertStatus,
    AlertType,
    BatchStatus,
    EventLogStatus,
    ParticipantRole,
)

__all__ = [
    "AlertStatus",
    "AlertType",
    "BatchStatus",
    "Clock",
    "DeterministicClock",
    "EventLogStatus",
    "LedgerEventName",
    "ParticipantRole",
    "RawLog",
    "RetryPolicy",
    "SystemClock",
    "UnknownEvent",
    "decode_log",
]
