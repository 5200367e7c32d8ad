"""
DeadLetterService -- operator review of events whose retries are spent.

The engine only writes dead letters; resolving them (replaying, fixing data)
is a human decision.  Marking an entry reviewed records the decision.
"""

from __future__ import annotations

from typing import Callable

from sqlalchemy.orm import Session

from pharmatrace.domain.dtos import DeadLetterView
from pharmatrace.exceptions import DeadLetterNotFoundError
from pharmatrace.logging_config import get_logger
from pharmatrace.models.dead_letter import DeadLetter
from pharmatrace.selectors.event_log_selector import DeadLetterSelector

logger = get_logger("services.dead_letter")


class DeadLetterService:

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def list_dead_letters(self, include_reviewed: bool = False, limit: int = 100) -> tuple[DeadLetterView, ...]:
        session = self._session_factory()
        try:
            return DeadLetterSelector(session).list_entries(include_reviewed, limit)
        finally:
            session.close()

    def mark_reviewed(self, dead_letter_id: int, note: str | None = None) -> DeadLetterView:
        session = self._session_factory()
        try:
            entry = session.get(DeadLetter, dead_letter_id)
            if entry is None:
                raise DeadLetterNotFoundError(dead_letter_id)
            entry.reviewed = True
            entry.review_note = note
            session.commit()
            logger.info(
                "dead_letter_reviewed",
                extra={
                    "dead_letter_id": dead_letter_id,
                    "transaction_hash": entry.transaction_hash,
                    "log_index": entry.log_index,
                },
            )
            return DeadLetterView.from_model(entry)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
