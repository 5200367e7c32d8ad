"""
Tests for the Indexer lifecycle.

Covers:
- Catch-up applies every block in order and moves the cursor to the head
- Restart resumes from the durable cursor
- Replay equivalence: re-running from an earlier cursor changes nothing
- A failed window leaves the cursor at the last committed block
- A process killed mid-block resumes to the same state as an uninterrupted run
- Open RETRY rows hold the cursor back until resolved
- Chain rewind detection and the reset_on_rewind override
- Forced transaction processing and its errors
- Live mode picks up new blocks and stops cleanly
"""

import time
from dataclasses import replace

import pytest
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from pharmatrace.db.engine import build_engine, create_tables
from pharmatrace.domain.dtos import OutcomeStatus
from pharmatrace.domain.status import EventLogStatus
from pharmatrace.exceptions import (
    ChainRewindError,
    LedgerUnavailableError,
    ManifestUnavailableError,
    SyncAlreadyRunningError,
    TransactionNotFoundError,
    TransactionRejectedError,
)
from pharmatrace.models.batch import Batch
from pharmatrace.models.event_log import EventLog
from pharmatrace.services.indexer import Indexer

from fakes import (
    MANUFACTURER,
    PHARMACY,
    FakeManifestFetcher,
    created_args,
    split_args,
    tx_hash,
)


def snapshot(session_factory) -> list[tuple]:
    session = session_factory()
    try:
        rows = session.execute(select(Batch).order_by(Batch.batch_id)).scalars().all()
        return [
            (b.batch_id, b.batch_number, b.parent_batch_id, b.quantity, b.owner, b.status)
            for b in rows
        ]
    finally:
        session.close()


def event_row(session_factory, transaction_hash, log_index=0) -> EventLog | None:
    session = session_factory()
    try:
        return session.get(EventLog, (transaction_hash, log_index))
    finally:
        session.close()


def event_rows(session_factory) -> list[tuple]:
    session = session_factory()
    try:
        rows = session.execute(
            select(EventLog).order_by(EventLog.block_number, EventLog.log_index)
        ).scalars().all()
        return [
            (r.transaction_hash, r.log_index, r.block_number, r.event_name, r.status, r.batch_id)
            for r in rows
        ]
    finally:
        session.close()


def wait_for(predicate, timeout=5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


@pytest.fixture
def chain(ledger):
    """BN-1 created at block 2 and split at block 5; head at 25."""
    ledger.add("BatchCreated", 2, created_args(1, 100, "BN-1"))
    ledger.add("BatchSplit", 5, split_args(1, 2, 40))
    ledger.head = 25
    return ledger


class TestCatchUp:

    def test_processes_to_head(self, indexer, chain, session_factory):
        report = indexer.catch_up()

        assert report.processed == 2
        assert report.failed == 0
        assert report.cursor == 25
        assert chain.windows == [(1, 10), (11, 20), (21, 25)]
        assert [(b[0], b[3]) for b in snapshot(session_factory)] == [(1, 60), (2, 40)]

    def test_nothing_to_do_at_head(self, indexer, chain):
        indexer.catch_up()
        chain.windows.clear()

        report = indexer.catch_up()

        assert report.outcomes == ()
        assert report.cursor == 25
        assert chain.windows == []

    def test_restart_resumes_from_cursor(self, indexer, chain, config, session_factory, clock):
        indexer.catch_up()
        chain.add("BatchCreated", 30, created_args(3, 10, "BN-3"))
        chain.windows.clear()

        restarted = Indexer(config, chain, session_factory, clock=clock)
        report = restarted.catch_up()

        assert chain.windows == [(26, 30)]
        assert report.processed == 1
        assert report.cursor == 30

    def test_replay_from_earlier_cursor_is_equivalent(self, indexer, chain, session_factory):
        indexer.catch_up()
        before = snapshot(session_factory)

        indexer.cursor.reset(0)
        report = indexer.catch_up()

        assert {o.status for o in report.outcomes} == {OutcomeStatus.SKIPPED}
        assert snapshot(session_factory) == before
        assert report.cursor == 25


class TestFailures:

    def test_failed_window_keeps_last_committed_block(self, indexer, chain, session_factory):
        chain.add("BatchCreated", 18, created_args(3, 10, "BN-3"))
        chain.head = 25
        chain.fail_blocks = {15}

        with pytest.raises(LedgerUnavailableError):
            indexer.catch_up()

        assert indexer.cursor.get().last_processed_block == 10
        assert [b[0] for b in snapshot(session_factory)] == [1, 2]

        chain.fail_blocks.clear()
        report = indexer.catch_up()

        assert report.cursor == 25
        assert [b[0] for b in snapshot(session_factory)] == [1, 2, 3]

    def test_head_failure(self, indexer, chain):
        chain.fail_head = True

        with pytest.raises(LedgerUnavailableError):
            indexer.catch_up()

        assert indexer.cursor.get().last_processed_block == 0

    def test_open_retry_holds_cursor(self, config, ledger, session_factory, clock):
        fetcher = FakeManifestFetcher(error=ManifestUnavailableError("QmA", "gateway returned 503"))
        indexer = Indexer(config, ledger, session_factory, clock=clock, manifest_fetcher=fetcher)
        ledger.add("BatchCreated", 2, created_args(1, 100, "BN-1"))
        ledger.add("MetadataAdded", 4, {"batchId": 1, "ipfsHash": "QmA", "addedBy": MANUFACTURER})
        ledger.add("BatchCreated", 6, created_args(2, 50, "BN-2"))
        ledger.head = 10

        report = indexer.catch_up()

        assert report.retrying == 1
        assert report.processed == 2
        assert report.cursor == 3

        fetcher.error = None
        fetcher.manifest = {"name": "Paracetamol"}
        clock.advance(2)
        indexer.retry_service.run_due()

        assert indexer.cursor.get().last_processed_block == 10
        session = session_factory()
        try:
            assert session.get(Batch, 1).product_name == "Paracetamol"
        finally:
            session.close()

    def test_rewind_is_rejected(self, indexer, chain):
        indexer.catch_up()
        chain.head = 5

        with pytest.raises(ChainRewindError) as exc_info:
            indexer.catch_up()

        assert exc_info.value.head == 5
        assert exc_info.value.last_processed == 25
        assert indexer.cursor.get().last_processed_block == 25

    def test_rewind_reset_when_enabled(self, indexer, chain, config, session_factory, clock, captured_logs):
        indexer.catch_up()
        chain.head = 5
        resetting = Indexer(replace(config, reset_on_rewind=True), chain, session_factory, clock=clock)

        report = resetting.catch_up()

        assert report.from_block == 1
        assert report.cursor == 5
        assert {o.status for o in report.outcomes} == {OutcomeStatus.SKIPPED}
        assert any(r["message"] == "chain_rewind_reset" for r in captured_logs())


class TestCrashMidBlock:

    @pytest.fixture
    def busy_chain(self, ledger):
        """Block 7 carries three logs of one transaction."""
        ledger.add("BatchCreated", 3, created_args(1, 100, "BN-1"))
        tx = tx_hash()
        ledger.add("BatchSplit", 7, split_args(1, 2, 40), tx=tx, index=0)
        ledger.add("BatchSplit", 7, split_args(1, 3, 25), tx=tx, index=1)
        ledger.add("BatchCreated", 7, created_args(4, 10, "BN-4"), tx=tx, index=2)
        ledger.add("BatchSplit", 12, split_args(2, 5, 5, recipient=PHARMACY))
        ledger.head = 15
        return ledger

    @staticmethod
    def uninterrupted(tmp_path, config, ledger, clock):
        engine = build_engine(f"sqlite:///{tmp_path / 'uninterrupted.db'}")
        create_tables(engine)
        factory = sessionmaker(bind=engine, expire_on_commit=False)
        try:
            Indexer(config, ledger, factory, clock=clock).catch_up()
            return snapshot(factory), event_rows(factory)
        finally:
            engine.dispose()

    @pytest.mark.parametrize("dies_at,after_apply", [
        (1, False),   # between two logs of the block
        (2, True),    # every log applied, commit not reached
    ])
    def test_restart_matches_uninterrupted_run(
        self, indexer, busy_chain, config, session_factory, clock, tmp_path, monkeypatch,
        dies_at, after_apply,
    ):
        expected_batches, expected_events = self.uninterrupted(tmp_path, config, busy_chain, clock)
        process_log = indexer.processor.process_log

        def killed(session, raw):
            dying = raw.block_number == 7 and raw.log_index == dies_at
            if dying and not after_apply:
                raise RuntimeError("process killed")
            outcome = process_log(session, raw)
            if dying:
                raise RuntimeError("process killed")
            return outcome

        monkeypatch.setattr(indexer.processor, "process_log", killed)

        with pytest.raises(RuntimeError):
            indexer.catch_up()

        # Nothing of block 7 survived and the cursor stayed before it
        assert indexer.cursor.get().last_processed_block == 3
        assert [(b[0], b[3]) for b in snapshot(session_factory)] == [(1, 100)]
        assert [e[2] for e in event_rows(session_factory)] == [3]

        restarted = Indexer(config, busy_chain, session_factory, clock=clock)
        report = restarted.catch_up()

        assert report.cursor == 15
        assert report.failed == 0
        assert snapshot(session_factory) == expected_batches
        assert event_rows(session_factory) == expected_events


class TestProcessTransaction:

    def test_processes_one_transaction(self, indexer, ledger, session_factory):
        tx = tx_hash()
        ledger.add("BatchCreated", 3, created_args(1, 100, "BN-1"), tx=tx)
        ledger.add("BatchSplit", 3, split_args(1, 2, 10), tx=tx)
        ledger.add("BatchCreated", 3, created_args(9, 5, "BN-9"))

        result = indexer.process_transaction(tx)

        assert result.block_number == 3
        assert result.processed == 2
        assert [b[0] for b in snapshot(session_factory)] == [1, 2]
        # The forced path does not move the cursor; catch-up skips what it did
        assert indexer.cursor.get().last_processed_block == 0
        report = indexer.catch_up()
        assert report.skipped == 2
        assert report.processed == 1

    def test_unknown_transaction(self, indexer):
        with pytest.raises(TransactionNotFoundError) as exc_info:
            indexer.process_transaction("0xdeadbeef")

        assert exc_info.value.code == "TRANSACTION_NOT_FOUND"

    def test_rejected_transaction_is_recorded(self, indexer, ledger, session_factory):
        tx = tx_hash()
        ledger.add("BatchSplit", 4, split_args(77, 78, 10), tx=tx)

        with pytest.raises(TransactionRejectedError) as exc_info:
            indexer.process_transaction(tx)

        assert "UNKNOWN_PARENT" in exc_info.value.failures[0]
        assert event_row(session_factory, tx).status == EventLogStatus.FAILED.value

        # Forcing it again reports the recorded failure
        with pytest.raises(TransactionRejectedError):
            indexer.process_transaction(tx)


class TestLiveMode:

    @pytest.fixture
    def quiet_chain(self, ledger):
        """Creations only, so no alert delivery runs beside the live loop."""
        ledger.add("BatchCreated", 2, created_args(1, 100, "BN-1"))
        ledger.add("BatchCreated", 5, created_args(2, 40, "BN-2"))
        ledger.head = 25
        return ledger

    def test_sync_flag_blocks_second_pass(self, indexer, quiet_chain):
        indexer.cursor.ensure()
        assert indexer.cursor.try_enter_sync()

        with pytest.raises(SyncAlreadyRunningError):
            indexer.start_sync()

    def test_start_picks_up_new_blocks_and_stops(self, indexer, quiet_chain, session_factory):
        report = indexer.start_sync()

        assert report.cursor == 25
        assert indexer.is_running
        assert not indexer.cursor.get().is_syncing

        quiet_chain.add("BatchCreated", 27, created_args(3, 10, "BN-3"))

        assert wait_for(lambda: indexer.cursor.get().last_processed_block == 27)
        assert [b[0] for b in snapshot(session_factory)] == [1, 2, 3]

        indexer.stop(timeout=5)

        assert not indexer.is_running

    def test_start_twice_is_rejected(self, indexer, quiet_chain):
        indexer.start_sync()

        with pytest.raises(SyncAlreadyRunningError):
            indexer.start_sync()
