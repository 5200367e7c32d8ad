"""
Concurrent writers on the Batch projection.

The retry worker and the live pass each apply events on their own session.
A session that read a batch earlier keeps that copy in its identity map
(expire_on_commit=False), so every mutating load must re-read the row under
a lock.  These tests leave one session holding a stale copy while another
session commits a change, then apply an event through the stale session.

Covers:
- Two splits of one parent from different sessions conserve quantity
- Acceptance sees a transfer initiated by another session
- Recall from a stale session reaches descendants added by another session
"""

import pytest
from sqlalchemy import select

from pharmatrace.domain.dtos import OutcomeStatus
from pharmatrace.domain.status import BatchStatus
from pharmatrace.models.batch import Batch

from fakes import (
    DISTRIBUTOR,
    PHARMACY,
    created_args,
    initiated_args,
    raw,
    recalled_args,
    split_args,
    transfer_args,
)


def apply_and_commit(processor, session, log):
    outcome = processor.process_log(session, log)
    session.commit()
    return outcome


def quantities(session_factory) -> dict[int, int]:
    with session_factory() as session:
        return {b.batch_id: b.quantity for b in session.execute(select(Batch)).scalars()}


@pytest.fixture
def stale(processor, session_factory):
    """A session that created BN-1 and still caches it at quantity 100."""
    session = session_factory()
    apply_and_commit(processor, session, raw("BatchCreated", 10, created_args(1, 100, "BN-1")))
    assert session.get(Batch, 1).quantity == 100
    session.commit()
    yield session
    session.close()


@pytest.fixture
def other(session_factory):
    session = session_factory()
    yield session
    session.close()


class TestStaleSessionWrites:

    def test_concurrent_splits_conserve_quantity(self, processor, session_factory, stale, other):
        apply_and_commit(processor, other, raw("BatchSplit", 11, split_args(1, 2, 40)))

        outcome = apply_and_commit(
            processor, stale, raw("BatchSplit", 12, split_args(1, 3, 30, recipient=PHARMACY)),
        )

        assert outcome.status == OutcomeStatus.PROCESSED
        assert quantities(session_factory) == {1: 30, 2: 40, 3: 30}

    def test_split_beyond_committed_quantity_is_rejected(self, processor, session_factory, stale, other):
        apply_and_commit(processor, other, raw("BatchSplit", 11, split_args(1, 2, 80)))

        outcome = apply_and_commit(processor, stale, raw("BatchSplit", 12, split_args(1, 3, 30)))

        # The stale copy still says 100; the committed row says 20
        assert outcome.error_code == "QUANTITY_UNDERFLOW"
        assert quantities(session_factory) == {1: 20, 2: 80}

    def test_acceptance_sees_transfer_from_other_session(self, processor, session_factory, stale, other):
        apply_and_commit(processor, other, raw("TransferInitiated", 11, initiated_args(1)))

        outcome = apply_and_commit(processor, stale, raw("Transfer", 12, transfer_args(1)))

        assert outcome.status == OutcomeStatus.PROCESSED
        with session_factory() as session:
            batch = session.get(Batch, 1)
            assert batch.owner == DISTRIBUTOR
            assert batch.status == BatchStatus.DELIVERED.value
            assert batch.pending_recipient is None

    def test_recall_reaches_descendants_from_other_session(self, processor, session_factory, stale, other):
        apply_and_commit(processor, other, raw("BatchSplit", 11, split_args(1, 2, 40)))
        apply_and_commit(
            processor, other, raw("BatchSplit", 12, split_args(2, 3, 10, recipient=PHARMACY)),
        )

        apply_and_commit(processor, stale, raw("BatchRecalled", 13, recalled_args(1)))

        with session_factory() as session:
            statuses = {b.batch_id: b.status for b in session.execute(select(Batch)).scalars()}
        assert statuses == {
            1: BatchStatus.RECALLED.value,
            2: BatchStatus.RECALLED.value,
            3: BatchStatus.RECALLED.value,
        }
        assert quantities(session_factory) == {1: 60, 2: 30, 3: 10}
