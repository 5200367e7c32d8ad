"""Services: the imperative shell around the projection."""

from pharmatrace.services.batch_projector import BatchProjector
from pharmatrace.services.dead_letter_service import DeadLetterService
from pharmatrace.services.event_processor import EventProcessor
from pharmatrace.services.indexer import Indexer
from pharmatrace.services.notification_service import (
    LoggingNotifier,
    NotificationService,
    Notifier,
    enqueue_alert,
)
from pharmatrace.services.query_service import QueryService
from pharmatrace.services.recall_service import RecallService
from pharmatrace.services.retry_service import RetryService, RetryWorker
from pharmatrace.services.sync_cursor import SyncCursor

__all__ = [
    "BatchProjector",
    "DeadLetterService",
    "EventProcessor",
    "Indexer",
    "LoggingNotifier",
    "NotificationService",
    "Notifier",
    "QueryService",
    "RecallService",
    "RetryService",
    "RetryWorker",
    "SyncCursor",
    "enqueue_alert",
]
