"""
Tests for the recall cascade.

Covers:
- Completeness: every descendant is RECALLED and every distinct descendant
  owner receives exactly one RECALL alert
- Recalling a subtree leaves siblings and ancestors alone
- Re-recalling is a no-op for statuses and alerts
- Pending transfers are cancelled by a recall
- Recalled batches reject further splits
- The cascade is not limited by the query-side node cap
"""

import pytest
from sqlalchemy import select

from pharmatrace.config.schema import TraceSettings
from pharmatrace.domain.dtos import OutcomeStatus
from pharmatrace.domain.status import AlertType, BatchStatus
from pharmatrace.models.alert import AlertQueueEntry
from pharmatrace.models.batch import Batch
from pharmatrace.services.query_service import QueryService
from pharmatrace.services.recall_service import RecallService, recall_dedupe_key

from fakes import (
    DISTRIBUTOR,
    MANUFACTURER,
    PHARMACY,
    created_args,
    initiated_args,
    raw,
    recalled_args,
    split_args,
)


def run(processor, session, *logs):
    outcomes = [processor.process_log(session, log) for log in logs]
    session.flush()
    return outcomes


def statuses(session) -> dict[int, str]:
    return {b.batch_id: b.status for b in session.execute(select(Batch)).scalars()}


def recall_alerts(session) -> list[AlertQueueEntry]:
    return session.execute(
        select(AlertQueueEntry)
        .where(AlertQueueEntry.alert_type == AlertType.RECALL.value)
        .order_by(AlertQueueEntry.id)
    ).scalars().all()


@pytest.fixture
def network(processor, session):
    """
    1 (manufacturer)
    +-- 2 (distributor)
    |   +-- 3 (pharmacy)
    +-- 4 (distributor)
    """
    run(
        processor, session,
        raw("BatchCreated", 1, created_args(1, 100, "BN-1")),
        raw("BatchSplit", 2, split_args(1, 2, 40, recipient=DISTRIBUTOR)),
        raw("BatchSplit", 3, split_args(2, 3, 10, recipient=PHARMACY)),
        raw("BatchSplit", 4, split_args(1, 4, 20, recipient=DISTRIBUTOR)),
    )
    return session


class TestCascade:

    def test_every_descendant_is_recalled(self, processor, network):
        [outcome] = run(processor, network, raw("BatchRecalled", 5, recalled_args(1)))

        assert outcome.status == OutcomeStatus.PROCESSED
        assert set(statuses(network).values()) == {BatchStatus.RECALLED.value}
        assert all(b.recall_reason == "contamination" for b in network.execute(select(Batch)).scalars())

    def test_one_alert_per_distinct_owner(self, processor, network):
        run(processor, network, raw("BatchRecalled", 5, recalled_args(1)))

        alerts = recall_alerts(network)
        assert [a.recipient for a in alerts] == [DISTRIBUTOR, PHARMACY]
        assert {a.dedupe_key for a in alerts} == {
            recall_dedupe_key(1, DISTRIBUTOR),
            recall_dedupe_key(1, PHARMACY),
        }
        assert all(a.batch_id == 1 for a in alerts)
        assert "contamination" in alerts[0].message

    def test_subtree_recall_leaves_siblings(self, processor, network):
        run(processor, network, raw("BatchRecalled", 5, recalled_args(2, recalled_by=DISTRIBUTOR)))

        assert statuses(network) == {
            1: BatchStatus.CREATED.value,
            2: BatchStatus.RECALLED.value,
            3: BatchStatus.RECALLED.value,
            4: BatchStatus.CREATED.value,
        }
        assert [a.recipient for a in recall_alerts(network)] == [PHARMACY]

    def test_repeated_recall_adds_nothing(self, processor, network):
        run(processor, network, raw("BatchRecalled", 5, recalled_args(1)))

        [outcome] = run(processor, network, raw("BatchRecalled", 6, recalled_args(1, reason="again")))

        assert outcome.status == OutcomeStatus.PROCESSED
        assert len(recall_alerts(network)) == 2

    def test_cascade_is_idempotent(self, processor, network):
        run(processor, network, raw("BatchRecalled", 5, recalled_args(1)))

        result = RecallService().cascade(network, 1, reason="contamination")

        assert result.newly_recalled == 0
        assert result.alerts_enqueued == 0
        assert result.descendants == 3
        assert set(result.recipients) == {DISTRIBUTOR, PHARMACY}

    def test_leaf_recall_sends_no_alerts(self, processor, network):
        run(processor, network, raw("BatchRecalled", 5, recalled_args(3, recalled_by=PHARMACY)))

        assert network.get(Batch, 3).status == BatchStatus.RECALLED.value
        assert recall_alerts(network) == []


class TestRecallInteractions:

    def test_recall_cancels_pending_transfer(self, processor, network):
        run(
            processor, network,
            raw("TransferInitiated", 5, initiated_args(4, sender=DISTRIBUTOR, recipient=PHARMACY)),
            raw("BatchRecalled", 6, recalled_args(1)),
        )

        batch = network.get(Batch, 4)
        assert batch.status == BatchStatus.RECALLED.value
        assert batch.pending_recipient is None

    def test_recalled_batch_cannot_be_split(self, processor, network):
        run(processor, network, raw("BatchRecalled", 5, recalled_args(1)))

        [outcome] = run(processor, network, raw("BatchSplit", 6, split_args(1, 9, 5)))

        assert outcome.error_code == "TRANSFER_STATE"
        assert network.get(Batch, 9) is None

    def test_recall_of_unknown_batch_fails(self, processor, session):
        [outcome] = run(processor, session, raw("BatchRecalled", 1, recalled_args(42, recalled_by=MANUFACTURER)))

        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.error_code == "BATCH_NOT_PROJECTED"


class TestWideRecall:

    def test_cascade_ignores_the_query_node_cap(self, processor, session, session_factory):
        owners = [f"0x{n:040x}" for n in range(10, 16)]
        run(processor, session, raw("BatchCreated", 1, created_args(1, 100, "BN-1")))
        for offset, owner in enumerate(owners):
            child = 2 + offset
            run(processor, session, raw("BatchSplit", child, split_args(1, child, 5, recipient=owner)))
        session.commit()
        assert QueryService(session_factory, TraceSettings(max_nodes=2)).get_recall_impact(1).truncated

        [outcome] = run(processor, session, raw("BatchRecalled", 20, recalled_args(1)))

        assert outcome.status == OutcomeStatus.PROCESSED
        assert [a.recipient for a in recall_alerts(session)] == owners
        assert set(statuses(session).values()) == {BatchStatus.RECALLED.value}

    def test_cyclic_lineage_fails_the_recall(self, processor, session):
        run(processor, session, raw("BatchCreated", 1, created_args(1, 100, "BN-1")))
        run(processor, session, raw("BatchSplit", 2, split_args(1, 2, 40)))
        session.get(Batch, 1).parent_batch_id = 2
        session.flush()

        [outcome] = run(processor, session, raw("BatchRecalled", 3, recalled_args(1)))

        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.error_code == "CYCLE_OR_DEPTH_EXCEEDED"
        assert session.get(Batch, 2).status == BatchStatus.CREATED.value
        assert recall_alerts(session) == []
