"""
Module: pharmatrace.selectors.trace_selector
Responsibility: Traceability Graph Engine.  Upstream lineage and downstream
    distribution over the parent_batch_id forest of the Batch projection.
Architecture position: Selectors.  Reads the projection only, never the
    raw event log.

Invariants enforced:
    - Upstream traversal is iterative with a visited set and a depth bound.
    - Downstream traversal is breadth-first, one query per generation, with
      a visited set, a depth bound and a node cap.
    - Every traversal terminates on malformed data.

Failure modes:
    - BatchNotFoundError if the starting batch does not exist.
    - CycleOrDepthExceededError on a revisited node, a dangling parent or a
      chain deeper than ``max_depth``.
    - Exceeding ``max_nodes`` downstream is not an error: the result is
      returned with ``truncated=True``.  ``max_nodes=None`` disables the cap
      (the recall cascade must reach every descendant).
"""

from collections import Counter

from sqlalchemy import select

from pharmatrace.domain.dtos import BatchView, DownstreamResult, RecallImpact, TraceResult
from pharmatrace.exceptions import BatchNotFoundError, CycleOrDepthExceededError
from pharmatrace.logging_config import get_logger
from pharmatrace.models.batch import Batch
from pharmatrace.selectors.base import BaseSelector

logger = get_logger("selectors.trace")

DEFAULT_MAX_DEPTH = 1000
DEFAULT_MAX_NODES = 10000

# Bound for a single IN (...) clause
_IN_CHUNK = 500


class TraceSelector(BaseSelector):

    def __init__(
        self,
        session,
        max_depth: int = DEFAULT_MAX_DEPTH,
        max_nodes: int | None = DEFAULT_MAX_NODES,
    ):
        super().__init__(session)
        self.max_depth = max_depth
        self.max_nodes = max_nodes

    def _require(self, batch_id: int) -> Batch:
        model = self.session.get(Batch, batch_id)
        if model is None:
            raise BatchNotFoundError(batch_id)
        return model

    # -------------------------------------------------------------------------
    # Upstream
    # -------------------------------------------------------------------------

    def upstream(self, batch_id: int) -> tuple[BatchView, ...]:
        """Ancestors of ``batch_id``, root first.  Empty for a root batch."""
        current = self._require(batch_id)
        chain: list[BatchView] = []
        visited = {current.batch_id}

        while current.parent_batch_id != 0:
            parent_id = current.parent_batch_id
            if len(chain) >= self.max_depth:
                raise CycleOrDepthExceededError(
                    batch_id, "upstream", len(chain), f"more than {self.max_depth} hops",
                )
            if parent_id in visited:
                logger.error(
                    "lineage_cycle_detected",
                    extra={"batch_id": batch_id, "revisited": parent_id},
                )
                raise CycleOrDepthExceededError(
                    batch_id, "upstream", len(chain), f"cycle at batch {parent_id}",
                )
            parent = self.session.get(Batch, parent_id)
            if parent is None:
                raise CycleOrDepthExceededError(
                    batch_id, "upstream", len(chain), f"ancestor {parent_id} is missing",
                )
            visited.add(parent_id)
            chain.append(BatchView.from_model(parent))
            current = parent

        chain.reverse()
        return tuple(chain)

    # -------------------------------------------------------------------------
    # Downstream
    # -------------------------------------------------------------------------

    def _children_of(self, parent_ids: list[int]) -> list[Batch]:
        children: list[Batch] = []
        for i in range(0, len(parent_ids), _IN_CHUNK):
            chunk = parent_ids[i:i + _IN_CHUNK]
            children.extend(
                self.session.execute(
                    select(Batch)
                    .where(Batch.parent_batch_id.in_(chunk))
                    .order_by(Batch.batch_id)
                ).scalars().all()
            )
        return children

    def downstream(self, batch_id: int) -> DownstreamResult:
        """All descendants of ``batch_id``, generation by generation."""
        self._require(batch_id)
        visited = {batch_id}
        frontier = [batch_id]
        levels: list[tuple[BatchView, ...]] = []
        total = 0
        truncated = False

        while frontier:
            children = self._children_of(frontier)
            if not children:
                break
            depth = len(levels) + 1
            if depth > self.max_depth:
                raise CycleOrDepthExceededError(
                    batch_id, "downstream", depth, f"more than {self.max_depth} generations",
                )

            level: list[BatchView] = []
            for child in children:
                if child.batch_id in visited:
                    logger.error(
                        "lineage_cycle_detected",
                        extra={"batch_id": batch_id, "revisited": child.batch_id},
                    )
                    raise CycleOrDepthExceededError(
                        batch_id, "downstream", depth, f"cycle at batch {child.batch_id}",
                    )
                if self.max_nodes is not None and total >= self.max_nodes:
                    truncated = True
                    break
                visited.add(child.batch_id)
                level.append(BatchView.from_model(child))
                total += 1

            if level:
                levels.append(tuple(level))
            if truncated:
                logger.warning(
                    "downstream_truncated",
                    extra={"batch_id": batch_id, "max_nodes": self.max_nodes},
                )
                break
            frontier = [view.batch_id for view in level]

        return DownstreamResult(root_batch_id=batch_id, levels=tuple(levels), truncated=truncated)

    # -------------------------------------------------------------------------
    # Combined reads
    # -------------------------------------------------------------------------

    def full_trace(self, batch_id: int) -> TraceResult:
        batch = BatchView.from_model(self._require(batch_id))
        return TraceResult(
            batch=batch,
            upstream=self.upstream(batch_id),
            downstream=self.downstream(batch_id),
        )

    def recall_impact(self, batch_id: int) -> RecallImpact:
        batch = self._require(batch_id)
        result = self.downstream(batch_id)
        descendants = result.batches

        by_owner: dict[str, list[int]] = {}
        for view in descendants:
            by_owner.setdefault(view.owner, []).append(view.batch_id)
        by_status = Counter(view.status.value for view in descendants)

        return RecallImpact(
            batch_id=batch_id,
            current_status=BatchView.from_model(batch).status,
            total_descendants=len(descendants),
            total_quantity=batch.quantity + sum(view.quantity for view in descendants),
            unit=batch.unit,
            by_owner={owner: tuple(ids) for owner, ids in by_owner.items()},
            by_status=dict(by_status),
            truncated=result.truncated,
        )
