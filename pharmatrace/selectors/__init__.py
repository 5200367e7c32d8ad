"""Read-only selectors over the projection, audit trail and queues."""

from pharmatrace.selectors.batch_selector import BatchSelector
from pharmatrace.selectors.event_log_selector import (
    AlertSelector,
    DeadLetterSelector,
    EventLogSelector,
)
from pharmatrace.selectors.trace_selector import TraceSelector

__all__ = [
    "AlertSelector",
    "BatchSelector",
    "DeadLetterSelector",
    "EventLogSelector",
    "TraceSelector",
]
