"""ORM models.  Importing this package registers every table on Base.metadata."""

from pharmatrace.models.alert import AlertQueueEntry
from pharmatrace.models.batch import Batch
from pharmatrace.models.dead_letter import DeadLetter
from pharmatrace.models.event_log import EventLog
from pharmatrace.models.sync_state import SYNC_STATE_KEY, SyncState

__all__ = [
    "AlertQueueEntry",
    "Batch",
    "DeadLetter",
    "EventLog",
    "SYNC_STATE_KEY",
    "SyncState",
]
