"""
Module: pharmatrace.models.sync_state
Responsibility: Single-row sync cursor.
Architecture position: Models.

Invariants enforced:
    - Exactly one row, keyed by SYNC_STATE_KEY.
    - last_processed_block only moves through SyncCursor's guarded UPDATE.
"""

from datetime import datetime

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from pharmatrace.db.base import Base, TimestampedMixin

SYNC_STATE_KEY = "pharmatrace-sync"


class SyncState(TimestampedMixin, Base):
    __tablename__ = "sync_state"

    key: Mapped[str] = mapped_column(String(64), primary_key=True, default=SYNC_STATE_KEY)
    last_processed_block: Mapped[int] = mapped_column(nullable=False, default=0)
    contract_address: Mapped[str | None] = mapped_column(String(64))
    chain_id: Mapped[int | None] = mapped_column()
    is_syncing: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sync_started_at: Mapped[datetime | None] = mapped_column()
    last_synced_at: Mapped[datetime | None] = mapped_column()

    def __repr__(self) -> str:
        return f"<SyncState block={self.last_processed_block} syncing={self.is_syncing}>"
