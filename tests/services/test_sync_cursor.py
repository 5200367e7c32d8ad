"""
Tests for SyncCursor -- the persisted last-processed-block marker.

Covers:
- Bootstrap at deployment_block - 1 and fast-forward of a lagging row
- advance(): monotonic, compare-and-advance conflict detection
- reset(): operator override, backwards allowed
- Sync flag: exclusive entry, release, stale takeover
"""

import pytest

from pharmatrace.exceptions import CursorConflictError, CursorRegressionError
from pharmatrace.services.sync_cursor import SyncCursor


@pytest.fixture
def cursor(session_factory, clock):
    return SyncCursor(
        session_factory,
        clock=clock,
        contract_address="0xcontract",
        chain_id=31337,
        deployment_block=100,
        stale_after_seconds=600,
    )


class TestBootstrap:

    def test_default_before_first_write(self, cursor):
        assert cursor.get().last_processed_block == 0
        assert not cursor.get().is_syncing

    def test_ensure_starts_before_deployment_block(self, cursor):
        state = cursor.ensure()

        assert state.last_processed_block == 99
        assert state.contract_address == "0xcontract"
        assert state.chain_id == 31337

    def test_ensure_is_idempotent(self, cursor):
        cursor.ensure()
        cursor.advance(150)

        assert cursor.ensure().last_processed_block == 150

    def test_ensure_fast_forwards_lagging_cursor(self, session_factory, clock, cursor):
        SyncCursor(session_factory, clock=clock, deployment_block=0).ensure()

        assert cursor.ensure().last_processed_block == 99

    def test_start_block_never_negative(self, session_factory):
        assert SyncCursor(session_factory, deployment_block=0).start_block == 0


class TestAdvance:

    def test_advance_moves_forward(self, cursor, clock):
        cursor.ensure()

        assert cursor.advance(120) == 120
        state = cursor.get()
        assert state.last_processed_block == 120
        assert state.last_synced_at is not None

    def test_advance_to_same_block_is_noop(self, cursor):
        cursor.ensure()
        cursor.advance(120)

        assert cursor.advance(120) == 120

    def test_advance_backwards_is_rejected(self, cursor):
        cursor.ensure()
        cursor.advance(120)

        with pytest.raises(CursorRegressionError):
            cursor.advance(110)
        assert cursor.get().last_processed_block == 120

    def test_stale_expectation_conflicts(self, cursor):
        cursor.ensure()
        cursor.advance(120)

        with pytest.raises(CursorConflictError):
            cursor.advance(130, expected=110)
        assert cursor.get().last_processed_block == 120

    def test_advance_without_row_creates_it(self, cursor):
        assert cursor.advance(105) == 105


class TestReset:

    def test_reset_moves_backwards(self, cursor, captured_logs):
        cursor.ensure()
        cursor.advance(500)

        cursor.reset(200)

        assert cursor.get().last_processed_block == 200
        assert any(r["message"] == "sync_cursor_reset" and r["level"] == "WARNING" for r in captured_logs())

    def test_reset_releases_sync_flag(self, cursor):
        cursor.ensure()
        assert cursor.try_enter_sync()

        cursor.reset(99)

        assert not cursor.get().is_syncing

    def test_negative_reset_rejected(self, cursor):
        with pytest.raises(CursorRegressionError):
            cursor.reset(-1)


class TestSyncFlag:

    def test_flag_is_exclusive(self, cursor):
        cursor.ensure()

        assert cursor.try_enter_sync()
        assert cursor.get().is_syncing
        assert not cursor.try_enter_sync()

    def test_exit_releases_flag(self, cursor):
        cursor.ensure()
        cursor.try_enter_sync()

        cursor.exit_sync()

        assert not cursor.get().is_syncing
        assert cursor.try_enter_sync()

    def test_stale_flag_is_taken_over(self, cursor, clock):
        cursor.ensure()
        cursor.try_enter_sync()

        clock.advance(601)

        assert cursor.try_enter_sync()

    def test_fresh_flag_is_respected(self, cursor, clock):
        cursor.ensure()
        cursor.try_enter_sync()

        clock.advance(599)

        assert not cursor.try_enter_sync()
