"""
Module: pharmatrace.selectors.batch_selector
Responsibility: Read queries over the Batch projection: point lookup,
    holdings by owner, exact and fuzzy search.
Architecture position: Selectors.

Failure modes:
    - BatchNotFoundError from ``require()``.
"""

from sqlalchemy import func, or_, select

from pharmatrace.domain.dtos import BatchView, Page, SearchResult
from pharmatrace.domain.status import BatchStatus
from pharmatrace.exceptions import BatchNotFoundError
from pharmatrace.models.batch import Batch
from pharmatrace.selectors.base import BaseSelector, clamp_page, escape_like


def _recency():
    return (Batch.block_number.desc(), Batch.batch_id.desc())


class BatchSelector(BaseSelector):

    def get(self, batch_id: int) -> BatchView | None:
        model = self.session.get(Batch, batch_id)
        return BatchView.from_model(model) if model is not None else None

    def require(self, batch_id: int) -> BatchView:
        view = self.get(batch_id)
        if view is None:
            raise BatchNotFoundError(batch_id)
        return view

    def get_many(self, batch_ids: list[int]) -> dict[int, BatchView]:
        if not batch_ids:
            return {}
        rows = self.session.execute(
            select(Batch).where(Batch.batch_id.in_(batch_ids))
        ).scalars().all()
        return {row.batch_id: BatchView.from_model(row) for row in rows}

    def by_owner(
        self,
        owner: str,
        status: BatchStatus | str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page[BatchView]:
        page, limit = clamp_page(page, limit)
        conditions = [Batch.owner == owner.lower()]
        if status is not None:
            conditions.append(Batch.status == BatchStatus(status).value)

        total = self.session.execute(
            select(func.count()).select_from(Batch).where(*conditions)
        ).scalar_one()
        rows = self.session.execute(
            select(Batch)
            .where(*conditions)
            .order_by(*_recency())
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars().all()
        return Page(
            items=tuple(BatchView.from_model(r) for r in rows),
            total=total,
            page=page,
            limit=limit,
        )

    def by_batch_number(self, batch_number: str) -> BatchView | None:
        """Case-insensitive exact match on the business key."""
        row = self.session.execute(
            select(Batch).where(func.lower(Batch.batch_number) == batch_number.strip().lower())
        ).scalars().first()
        return BatchView.from_model(row) if row is not None else None

    def batch_number_taken(self, batch_number: str) -> bool:
        return self.session.execute(
            select(Batch.batch_id).where(Batch.batch_number == batch_number)
        ).first() is not None

    def search(self, query: str, limit: int = 50) -> SearchResult:
        """
        Exact batch-number match first; otherwise substring match on product
        name or manufacturer, newest first, capped at ``limit``.
        """
        term = query.strip()
        if not term:
            return SearchResult(query=query, exact=False, batches=())

        exact = self.by_batch_number(term)
        if exact is not None:
            return SearchResult(query=query, exact=True, batches=(exact,))

        pattern = f"%{escape_like(term)}%"
        rows = self.session.execute(
            select(Batch)
            .where(
                or_(
                    Batch.product_name.ilike(pattern, escape="\\"),
                    Batch.manufacturer.ilike(pattern, escape="\\"),
                )
            )
            .order_by(*_recency())
            .limit(limit)
        ).scalars().all()
        return SearchResult(
            query=query,
            exact=False,
            batches=tuple(BatchView.from_model(r) for r in rows),
        )
