"""
QueryService -- the read operations exposed to the HTTP layer.

Each call opens a short-lived session, delegates to a selector and returns
DTOs.  Missing batches raise BatchNotFoundError (404-equivalent); malformed
lineage raises CycleOrDepthExceededError.
"""

from __future__ import annotations

from typing import Callable

from sqlalchemy.orm import Session

from pharmatrace.config.schema import TraceSettings
from pharmatrace.domain.dtos import (
    BatchView,
    DownstreamResult,
    EventLogView,
    Page,
    RecallImpact,
    SearchResult,
    TraceResult,
)
from pharmatrace.domain.status import BatchStatus
from pharmatrace.selectors.batch_selector import BatchSelector
from pharmatrace.selectors.event_log_selector import EventLogSelector
from pharmatrace.selectors.trace_selector import TraceSelector


class QueryService:

    def __init__(
        self,
        session_factory: Callable[[], Session],
        settings: TraceSettings | None = None,
    ):
        self._session_factory = session_factory
        self._settings = settings or TraceSettings()

    def _trace(self, session: Session) -> TraceSelector:
        return TraceSelector(
            session,
            max_depth=self._settings.max_depth,
            max_nodes=self._settings.max_nodes,
        )

    def get_batch(self, batch_id: int) -> BatchView:
        with self._session_factory() as session:
            return BatchSelector(session).require(batch_id)

    def get_batches_by_owner(
        self,
        address: str,
        status: BatchStatus | str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page[BatchView]:
        with self._session_factory() as session:
            return BatchSelector(session).by_owner(address, status=status, page=page, limit=limit)

    def search_batches(self, query: str) -> SearchResult:
        with self._session_factory() as session:
            return BatchSelector(session).search(query, limit=self._settings.search_page_size)

    def get_full_trace(self, batch_id: int) -> TraceResult:
        with self._session_factory() as session:
            return self._trace(session).full_trace(batch_id)

    def get_upstream_lineage(self, batch_id: int) -> tuple[BatchView, ...]:
        with self._session_factory() as session:
            return self._trace(session).upstream(batch_id)

    def get_downstream_distribution(self, batch_id: int) -> DownstreamResult:
        with self._session_factory() as session:
            return self._trace(session).downstream(batch_id)

    def get_recall_impact(self, batch_id: int) -> RecallImpact:
        with self._session_factory() as session:
            return self._trace(session).recall_impact(batch_id)

    def get_event_log(
        self,
        event_name: str | None = None,
        batch_id: int | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> Page[EventLogView]:
        with self._session_factory() as session:
            return EventLogSelector(session).list_events(
                event_name=event_name, batch_id=batch_id, page=page, limit=limit,
            )
