"""
Module: pharmatrace.selectors.base
Responsibility: Base class for read-only query selectors.
Architecture position: Selectors.  May import from db/, models/ and domain/.
    MUST NOT import from services/.

Invariants enforced:
    - Read-only: selectors never add, delete, flush or commit.
    - Selectors return frozen DTOs, not ORM instances.
    - The caller owns the session and its transaction scope.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseSelector(ABC):
    """Holds the caller's session for subclass queries."""

    def __init__(self, session: Session):
        self.session = session


def escape_like(term: str) -> str:
    """Escape LIKE wildcards in user input (escape char is backslash)."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def clamp_page(page: int, limit: int, max_limit: int = 100) -> tuple[int, int]:
    page = max(int(page), 1)
    limit = min(max(int(limit), 1), max_limit)
    return page, limit
