"""
SyncCursor -- durable "last processed block" for the single indexer instance.

Contract:
    ``get()`` returns the stored state or a zero-value default.
    ``advance(block)`` is a single compare-and-advance UPDATE, called only
    after every effect up to ``block`` is committed.
    ``try_enter_sync()`` / ``exit_sync()`` guard against two concurrent
    catch-up passes.  Advisory only: the process model is single-instance.

Invariants enforced:
    - last_processed_block never decreases through ``advance()``; only the
      operator ``reset()`` moves it backwards.
    - A concurrent writer is detected by the guarded UPDATE (rowcount 0)
      and raises CursorConflictError instead of overwriting.

Each method runs in its own short transaction from the session factory.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Callable

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from pharmatrace.domain.clock import Clock, SystemClock
from pharmatrace.domain.dtos import SyncStateView
from pharmatrace.exceptions import CursorConflictError, CursorRegressionError
from pharmatrace.logging_config import get_logger
from pharmatrace.models.sync_state import SYNC_STATE_KEY, SyncState

logger = get_logger("services.sync_cursor")


class SyncCursor:

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock | None = None,
        contract_address: str | None = None,
        chain_id: int | None = None,
        deployment_block: int = 0,
        stale_after_seconds: float = 600.0,
        key: str = SYNC_STATE_KEY,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._contract_address = contract_address
        self._chain_id = chain_id
        self._deployment_block = deployment_block
        self._stale_after = timedelta(seconds=stale_after_seconds)
        self._key = key

    @property
    def start_block(self) -> int:
        """Cursor value before the contract's first block."""
        return max(self._deployment_block - 1, 0)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self) -> SyncStateView:
        session = self._session_factory()
        try:
            row = session.get(SyncState, self._key)
            return SyncStateView.from_model(row) if row is not None else SyncStateView.default()
        finally:
            session.close()

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def ensure(self) -> SyncStateView:
        """
        Create the row at ``deployment_block - 1`` if missing; fast-forward a
        cursor that sits behind the deployment block.
        """
        session = self._session_factory()
        try:
            row = session.get(SyncState, self._key)
            if row is None:
                row = SyncState(
                    key=self._key,
                    last_processed_block=self.start_block,
                    contract_address=self._contract_address,
                    chain_id=self._chain_id,
                    is_syncing=False,
                )
                session.add(row)
                logger.info(
                    "sync_state_initialized",
                    extra={"last_processed_block": self.start_block},
                )
            else:
                if row.last_processed_block < self.start_block:
                    logger.info(
                        "sync_cursor_fast_forwarded",
                        extra={
                            "from_block": row.last_processed_block,
                            "to_block": self.start_block,
                        },
                    )
                    row.last_processed_block = self.start_block
                if self._contract_address and row.contract_address != self._contract_address:
                    row.contract_address = self._contract_address
                if self._chain_id is not None and row.chain_id != self._chain_id:
                    row.chain_id = self._chain_id
            session.commit()
            return SyncStateView.from_model(row)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def advance(self, block_number: int, expected: int | None = None) -> int:
        """
        Move the cursor to ``block_number``.

        Raises:
            CursorRegressionError: ``block_number`` is below the current value.
            CursorConflictError: the stored value is not ``expected``.
        """
        session = self._session_factory()
        try:
            current = session.execute(
                select(SyncState.last_processed_block).where(SyncState.key == self._key)
            ).scalar_one_or_none()
            if current is None:
                current = self._insert_default(session)
            if expected is None:
                expected = current
            if block_number < expected:
                raise CursorRegressionError(expected, block_number)
            if block_number == current:
                session.rollback()
                return current

            result = session.execute(
                update(SyncState)
                .where(
                    SyncState.key == self._key,
                    SyncState.last_processed_block == expected,
                )
                .values(last_processed_block=block_number, last_synced_at=self._clock.now())
            )
            if result.rowcount != 1:
                raise CursorConflictError(expected, block_number)
            session.commit()
            logger.debug(
                "sync_cursor_advanced",
                extra={"from_block": expected, "to_block": block_number},
            )
            return block_number
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def reset(self, block_number: int) -> None:
        """Operator action: move the cursor to any block, backwards included."""
        if block_number < 0:
            raise CursorRegressionError(0, block_number)
        session = self._session_factory()
        try:
            row = session.get(SyncState, self._key)
            if row is None:
                self._insert_default(session)
                row = session.get(SyncState, self._key)
            previous = row.last_processed_block
            row.last_processed_block = block_number
            row.is_syncing = False
            row.sync_started_at = None
            session.commit()
            logger.warning(
                "sync_cursor_reset",
                extra={"from_block": previous, "to_block": block_number},
            )
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def try_enter_sync(self) -> bool:
        """Set is_syncing; True if this caller now holds the flag.

        A flag older than ``stale_after_seconds`` belongs to a crashed
        process and is taken over.
        """
        now = self._clock.now()
        session = self._session_factory()
        try:
            if session.get(SyncState, self._key) is None:
                self._insert_default(session)
            result = session.execute(
                update(SyncState)
                .where(
                    SyncState.key == self._key,
                    or_(
                        SyncState.is_syncing == False,  # noqa: E712
                        SyncState.sync_started_at == None,  # noqa: E711
                        SyncState.sync_started_at < now - self._stale_after,
                    ),
                )
                .values(is_syncing=True, sync_started_at=now)
            )
            acquired = result.rowcount == 1
            session.commit()
            if acquired:
                logger.info("sync_flag_acquired")
            else:
                logger.warning("sync_flag_held_elsewhere")
            return acquired
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def exit_sync(self) -> None:
        session = self._session_factory()
        try:
            session.execute(
                update(SyncState)
                .where(SyncState.key == self._key)
                .values(is_syncing=False, sync_started_at=None, last_synced_at=self._clock.now())
            )
            session.commit()
            logger.info("sync_flag_released")
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _insert_default(self, session: Session) -> int:
        session.add(SyncState(
            key=self._key,
            last_processed_block=self.start_block,
            contract_address=self._contract_address,
            chain_id=self._chain_id,
            is_syncing=False,
        ))
        session.flush()
        return self.start_block
