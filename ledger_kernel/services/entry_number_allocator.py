"""
EntryNumberAllocator -- smallest-unused entry number with retry on conflict.

Responsibility:
    Assigns each new ledger entry the smallest positive integer not held by
    any existing entry (draft, posted or reversed), so numbers freed by
    deleting a draft are reused.  Runs the caller's insert in the same
    transaction as the scan and retries the pair when another writer wins
    the race for the same number.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called only by LedgerEntryStateMachine (create, reverse).

Invariants enforced:
    - entry_number is unique among existing entries.  The UNIQUE constraint
      uq_ledger_entry_number is the arbiter: two writers may scan the same
      gap, only one insert commits, the loser retries with a fresh scan.
    - Allocation and insert commit as one unit.  A failed attempt rolls back
      everything it wrote, so no entry is left without its number or with a
      number it lost.

Failure modes:
    - AllocationExhaustedError after ``max_attempts`` conflicting attempts.
    - IntegrityError that is not an entry_number conflict propagates
      unchanged.

Audit relevance:
    Each lost race is logged as ``entry_number_conflict_retry`` with the
    attempt and candidate number.
"""

from collections.abc import Callable
from typing import TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ledger_kernel.exceptions import AllocationExhaustedError
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.journal import ENTRY_NUMBER_CONSTRAINT, LedgerEntry

logger = get_logger("services.entry_number_allocator")

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 5

# SQLite reports the column, PostgreSQL the constraint name.
_CONFLICT_MARKERS = (
    ENTRY_NUMBER_CONSTRAINT,
    "ledger_entries.entry_number",
)


def is_entry_number_conflict(exc: IntegrityError) -> bool:
    """True when ``exc`` is a uniqueness violation on entry_number."""
    message = str(exc.orig) if exc.orig is not None else str(exc)
    return any(marker in message for marker in _CONFLICT_MARKERS)


def first_unused(numbers: list[int]) -> int:
    """
    Smallest positive integer missing from ascending ``numbers``.

    [] -> 1, [1, 2, 3] -> 4, [1, 3] -> 2, [2, 3] -> 1.
    """
    expected = 1
    for number in numbers:
        if number > expected:
            return expected
        if number == expected:
            expected += 1
    return expected


class EntryNumberAllocator:
    """
    Gap-reusing entry number allocator.

    Contract:
        ``allocate(session)`` proposes a number inside the caller's
        transaction.  ``run_with_number(factory, work)`` owns the whole
        transaction: it opens it, allocates, calls ``work(session,
        number)``, commits, and on an entry_number conflict starts over.

    Non-goals:
        - No application-level lock.  Storage isolation plus the UNIQUE
          constraint decide the race.
        - Numbers are not monotonic; a freed number is handed out again.
    """

    def __init__(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts

    def allocate(self, session: Session) -> int:
        """
        Propose the first gap below the current maximum, else max+1.

        Preconditions:
            - ``session`` is inside the transaction that will insert the
              entry carrying the returned number.

        Returns:
            A positive integer not held by any row visible to ``session``.
        """
        numbers = list(
            session.execute(
                select(LedgerEntry.entry_number).order_by(LedgerEntry.entry_number)
            ).scalars()
        )
        number = first_unused(numbers)
        logger.debug(
            "entry_number_allocated",
            extra={"entry_number": number, "existing_count": len(numbers)},
        )
        return number

    def run_with_number(
        self,
        session_factory: sessionmaker[Session],
        work: Callable[[Session, int], T],
    ) -> T:
        """
        Run ``work`` in a fresh transaction with a freshly allocated number.

        The transaction commits when ``work`` returns.  If the insert or
        the commit hits an entry_number conflict, the attempt is rolled
        back and repeated, up to ``max_attempts`` times.

        Raises:
            AllocationExhaustedError: Every attempt lost its number.
        """
        number: int | None = None
        for attempt in range(1, self.max_attempts + 1):
            session = session_factory()
            try:
                with session.begin():
                    number = self.allocate(session)
                    result = work(session, number)
                return result
            except IntegrityError as exc:
                if not is_entry_number_conflict(exc):
                    raise
                logger.warning(
                    "entry_number_conflict_retry",
                    extra={
                        "attempt": attempt,
                        "max_attempts": self.max_attempts,
                        "entry_number": number,
                    },
                )
            finally:
                session.close()

        logger.error(
            "entry_number_allocation_exhausted",
            extra={"attempts": self.max_attempts, "last_number": number},
        )
        raise AllocationExhaustedError(attempts=self.max_attempts, last_number=number)
