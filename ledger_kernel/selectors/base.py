"""
Module: ledger_kernel.selectors.base
Responsibility: Abstract base class for all read-only query selectors, plus
    the shared page-size clamping rule.
Architecture position: Kernel > Selectors.  May import from db/, domain/
    and models/.  MUST NOT import from services/.

Invariants enforced:
    - Read-only access: selectors accept a Session from the caller and never
      call session.add(), session.delete(), session.commit() or
      session.flush().
    - DTO return convention: selectors return frozen dataclasses, never ORM
      rows.
    - Session ownership: the caller owns the session and its transaction,
      so several selector calls can share one consistent snapshot.
"""

from abc import ABC

from sqlalchemy.orm import Session

from ledger_kernel.exceptions import ValidationError


def clamp_page(
    page: int | None,
    page_size: int | None,
    default_size: int,
    max_size: int,
) -> tuple[int, int]:
    """
    Normalize 1-based pagination.

    None falls back to page 1 / ``default_size``; a page size above
    ``max_size`` is capped.  Values below 1 are rejected.

    Raises:
        ValidationError: page or page_size < 1.
    """
    page = 1 if page is None else page
    page_size = default_size if page_size is None else page_size
    if page < 1:
        raise ValidationError("page", f"must be >= 1, got {page}")
    if page_size < 1:
        raise ValidationError("page_size", f"must be >= 1, got {page_size}")
    return page, min(page_size, max_size)


class BaseSelector(ABC):
    """
    Abstract base class for all selectors.

    Contract:
        Selectors accept a Session from the caller, perform read-only
        queries, and return DTOs or computed results.
    """

    def __init__(self, session: Session):
        self.session = session
