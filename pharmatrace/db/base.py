"""
Module: pharmatrace.db.base
Responsibility: Declarative base for all SQLAlchemy ORM models and the shared
    column type conventions.
Architecture position: DB.  Lowest-level import target; ALL model files import
    from here.  MUST NOT import from models/, services/, selectors/ or domain/.

Invariants enforced:
    - Block numbers, batch ids and quantities map to BigInteger (ledger
      integers exceed 32 bits).
    - datetime maps to DateTime(timezone=True).

Unlike a surrogate-key schema, every projection table is keyed by its
natural ledger identity (batch id, transaction hash + log index), so the
base class declares no primary key of its own.
"""

from datetime import datetime
from typing import ClassVar

from sqlalchemy import BigInteger, DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """
    Declarative base for all models.

    Guarantees:
        - int maps to BigInteger.
        - datetime maps to DateTime(timezone=True).
    """

    type_annotation_map: ClassVar[dict] = {
        datetime: DateTime(timezone=True),
        int: BigInteger,
    }


class TimestampedMixin:
    """
    Row creation / modification timestamps.

    These are store metadata, not ledger data: they say when the projection
    row was written, never when the ledger event happened.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
