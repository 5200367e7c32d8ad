"""
Module: pharmatrace.models.dead_letter
Responsibility: Quarantine for events whose retry budget is spent.
Architecture position: Models.

Entries are reviewed by an operator; the engine never resolves them.
One entry per (transaction_hash, log_index).
"""

from sqlalchemy import JSON, Boolean, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from pharmatrace.db.base import Base, TimestampedMixin


class DeadLetter(TimestampedMixin, Base):
    __tablename__ = "dead_letters"

    __table_args__ = (
        UniqueConstraint("transaction_hash", "log_index", name="uq_dead_letter_log"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_hash: Mapped[str] = mapped_column(String(80), nullable=False)
    log_index: Mapped[int] = mapped_column(nullable=False)
    block_number: Mapped[int] = mapped_column(nullable=False)
    event_name: Mapped[str | None] = mapped_column(String(40))
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    error: Mapped[str] = mapped_column(Text, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    reviewed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    review_note: Mapped[str | None] = mapped_column(Text)

    def __repr__(self) -> str:
        return f"<DeadLetter {self.transaction_hash}:{self.log_index} reviewed={self.reviewed}>"
