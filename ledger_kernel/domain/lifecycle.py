"""
Journal entry lifecycle (``ledger_kernel.domain.lifecycle``).

Responsibility
--------------
The complete transition table of a ledger entry, and the derivation of
its accounting period.  Pure value objects, zero I/O.

Transition table
----------------
    draft    --update-->          draft
    draft    --post-->            posted     (balance-checked by the caller)
    posted   --return_to_draft--> draft
    posted   --reverse-->         reversed   (terminal)
    draft    --delete-->          (row removed)

``reversed`` has no outgoing transition.  Any (status, action) pair not in
the table resolves to a rejected ``TransitionResult`` carrying an
``InvalidStateError``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum

from ledger_kernel.exceptions import EntryError, InvalidStateError


class EntryStatus(str, Enum):
    """Lifecycle status of a ledger entry."""

    DRAFT = "draft"
    POSTED = "posted"
    REVERSED = "reversed"


class EntryAction(str, Enum):
    """Operations that move an entry through its lifecycle."""

    UPDATE = "update"
    POST = "post"
    RETURN_TO_DRAFT = "return_to_draft"
    REVERSE = "reverse"
    DELETE = "delete"


@dataclass(frozen=True)
class Transition:
    """A permitted move.  ``to_state`` is None when the entry is deleted."""

    from_state: EntryStatus
    action: EntryAction
    to_state: EntryStatus | None


ENTRY_TRANSITIONS: tuple[Transition, ...] = (
    Transition(EntryStatus.DRAFT, EntryAction.UPDATE, EntryStatus.DRAFT),
    Transition(EntryStatus.DRAFT, EntryAction.POST, EntryStatus.POSTED),
    Transition(EntryStatus.POSTED, EntryAction.RETURN_TO_DRAFT, EntryStatus.DRAFT),
    Transition(EntryStatus.POSTED, EntryAction.REVERSE, EntryStatus.REVERSED),
    Transition(EntryStatus.DRAFT, EntryAction.DELETE, None),
)

_BY_KEY = {(t.from_state, t.action): t for t in ENTRY_TRANSITIONS}

TERMINAL_STATES = frozenset(
    status
    for status in EntryStatus
    if not any(t.from_state == status for t in ENTRY_TRANSITIONS)
)

# Statuses whose postings count toward account balances.  A reversed
# original keeps its lines on the books; its posted reversal cancels them.
BALANCE_STATUSES = (EntryStatus.POSTED, EntryStatus.REVERSED)


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of resolving an action against a status."""

    success: bool
    transition: Transition | None = None
    error: EntryError | None = None

    @classmethod
    def ok(cls, transition: Transition) -> TransitionResult:
        return cls(success=True, transition=transition)

    @classmethod
    def rejected(cls, error: EntryError) -> TransitionResult:
        return cls(success=False, error=error)

    def unwrap(self) -> Transition:
        """Return the transition or raise the carried error."""
        if not self.success:
            assert self.error is not None
            raise self.error
        assert self.transition is not None
        return self.transition


def resolve_transition(
    status: EntryStatus | str,
    action: EntryAction,
    entry_id: int | None = None,
) -> TransitionResult:
    """Look up ``action`` from ``status`` in the transition table."""
    status = EntryStatus(status)
    transition = _BY_KEY.get((status, action))
    if transition is None:
        return TransitionResult.rejected(
            InvalidStateError(
                current_status=status.value,
                attempted_transition=action.value,
                entry_id=entry_id,
            )
        )
    return TransitionResult.ok(transition)


def period_for(entry_date: date) -> str:
    """``YYYY-MM`` bucket of an entry date."""
    return f"{entry_date.year:04d}-{entry_date.month:02d}"
