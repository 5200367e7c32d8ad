"""
Module: pharmatrace.models.batch
Responsibility: ORM persistence for the Batch projection -- the mutable
    current state of one lot of product, rebuilt from ledger events.
Architecture position: Models.  May import from db/base.py and domain/status.py.

Invariants enforced:
    - quantity >= 0 (CHECK constraint; the projector raises before flush).
    - batch_number is unique.
    - parent_batch_id is 0 for roots; set once at insert.

Audit relevance:
    Never deleted.  Recalled or fully consumed batches stay queryable.
    ``financials`` holds cost/price from the manifest and is never copied
    into EventLog or any DTO.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, CheckConstraint, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from pharmatrace.db.base import Base, TimestampedMixin
from pharmatrace.domain.status import BatchStatus


class Batch(TimestampedMixin, Base):
    """Current state of a batch, keyed by its ledger-assigned id."""

    __tablename__ = "batches"

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_batch_quantity_non_negative"),
        Index("idx_batch_parent", "parent_batch_id"),
        Index("idx_batch_owner_status", "owner", "status"),
        Index("idx_batch_product_name", "product_name"),
    )

    batch_id: Mapped[int] = mapped_column(primary_key=True, autoincrement=False)
    batch_number: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    manufacturer: Mapped[str] = mapped_column(String(64), nullable=False)
    owner: Mapped[str] = mapped_column(String(64), nullable=False)
    parent_batch_id: Mapped[int] = mapped_column(nullable=False, default=0)

    quantity: Mapped[int] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BatchStatus.CREATED.value,
    )

    # Descriptive fields cached from the manifest (informational only)
    unit: Mapped[str | None] = mapped_column(String(50))
    product_name: Mapped[str | None] = mapped_column(String(300))
    strength: Mapped[str | None] = mapped_column(String(100))
    packing_type: Mapped[str | None] = mapped_column(String(100))
    expiry_date: Mapped[str | None] = mapped_column(String(40))
    ingredients: Mapped[Any | None] = mapped_column(JSON)
    storage_temp: Mapped[str | None] = mapped_column(String(100))

    # Financial fields from the manifest; never exported
    financials: Mapped[dict | None] = mapped_column(JSON)

    ipfs_hash: Mapped[str | None] = mapped_column(String(128))
    metadata_history: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    # Transfer limbo
    pending_recipient: Mapped[str | None] = mapped_column(String(64))
    pending_quantity: Mapped[int | None] = mapped_column()
    pending_initiated_at: Mapped[datetime | None] = mapped_column()

    recall_reason: Mapped[str | None] = mapped_column(Text)

    # Provenance of creation
    transaction_hash: Mapped[str | None] = mapped_column(String(80))
    block_number: Mapped[int | None] = mapped_column()

    def __repr__(self) -> str:
        return f"<Batch {self.batch_id} {self.batch_number} {self.status} qty={self.quantity}>"

    @property
    def has_pending_transfer(self) -> bool:
        return self.pending_recipient is not None

    def clear_pending_transfer(self) -> None:
        self.pending_recipient = None
        self.pending_quantity = None
        self.pending_initiated_at = None
