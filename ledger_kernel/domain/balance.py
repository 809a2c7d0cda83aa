"""
Balance validation -- the one definition of "balanced".

An entry is balanced when ``|sum(debit) - sum(credit)| <= 0.01``.  The
tolerance absorbs rounding noise in monetary sums.  Posting, listing
filters and reports all go through this module; nothing else compares
debit and credit totals.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

BALANCE_TOLERANCE = Decimal("0.01")

ZERO = Decimal("0")


class HasAmounts(Protocol):
    debit: Decimal
    credit: Decimal


@dataclass(frozen=True)
class BalanceCheck:
    """Totals of a posting set and whether they balance."""

    debit_total: Decimal
    credit_total: Decimal

    @property
    def difference(self) -> Decimal:
        return self.debit_total - self.credit_total

    @property
    def is_balanced(self) -> bool:
        return is_within_tolerance(self.difference)


def is_within_tolerance(difference: Decimal) -> bool:
    return abs(difference) <= BALANCE_TOLERANCE


def check_balance(postings: Iterable[HasAmounts]) -> BalanceCheck:
    """Sum debits and credits of a posting set."""
    debit_total = ZERO
    credit_total = ZERO
    for posting in postings:
        debit_total += posting.debit or ZERO
        credit_total += posting.credit or ZERO
    return BalanceCheck(debit_total=debit_total, credit_total=credit_total)


def is_balanced(postings: Iterable[HasAmounts]) -> bool:
    """True iff ``|sum(debit) - sum(credit)| <= BALANCE_TOLERANCE``."""
    return check_balance(postings).is_balanced
