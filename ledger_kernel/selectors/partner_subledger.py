"""
Module: ledger_kernel.selectors.partner_subledger
Responsibility: Balance and statement of one account (typically a customer
    or supplier's receivable/payable account), derived from booked postings.
Architecture position: Kernel > Selectors.  May import from models/,
    domain/ and selectors/base.py.  MUST NOT import from services/.

Invariants enforced:
    - Only booked entries count: status "posted" or "reversed".  Drafts
      never do.  A reversed original and its posted reversal both stay on
      the books, so the pair nets to zero on every account.
      This departs from a posted-only filter (status = "posted", as the
      partner statement endpoint used to query): under that filter the
      original drops out while its posted mirror stays, leaving the account
      at minus the reversed amount.
    - Statement items are ordered (date asc, entry id asc, posting id asc)
      and running_balance[i] = opening_balance + sum(debit - credit) over
      items[0..i].  The order is part of the contract.
    - Balances are derived on every call; nothing is stored.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ledger_kernel.domain.accounts import AccountDirectory, AccountInfo
from ledger_kernel.domain.balance import ZERO
from ledger_kernel.domain.lifecycle import BALANCE_STATUSES, EntryStatus
from ledger_kernel.exceptions import ValidationError
from ledger_kernel.models.journal import LedgerEntry, Posting
from ledger_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class StatementItem:
    entry_id: int
    entry_number: int
    date: date
    description: str
    debit: Decimal
    credit: Decimal
    running_balance: Decimal
    posting_id: int | None = None
    reference_type: str | None = None
    reference_id: int | None = None


@dataclass(frozen=True)
class AccountStatement:
    account_id: int
    date_from: date | None
    date_to: date | None
    opening_balance: Decimal
    closing_balance: Decimal
    items: tuple[StatementItem, ...] = field(default_factory=tuple)
    account: AccountInfo | None = None

    @property
    def total_debit(self) -> Decimal:
        return sum((item.debit for item in self.items), ZERO)

    @property
    def total_credit(self) -> Decimal:
        return sum((item.credit for item in self.items), ZERO)


class PartnerSubledger(BaseSelector):
    """
    Read-only balance/statement computation for one account.

    Balances are debit-minus-credit regardless of the account's nature;
    callers flip the sign for credit-nature accounts if they need to.
    """

    def __init__(self, session: Session, accounts: AccountDirectory | None = None):
        super().__init__(session)
        self._accounts = accounts

    def balance(self, account_id: int, as_of: date | None = None) -> Decimal:
        """
        Sum(debit) - sum(credit) over booked postings on ``account_id``.

        With ``as_of``, only entries dated strictly before it count.
        """
        query = (
            select(
                func.coalesce(func.sum(Posting.debit), 0),
                func.coalesce(func.sum(Posting.credit), 0),
            )
            .join(LedgerEntry, Posting.entry_id == LedgerEntry.id)
            .where(
                Posting.account_id == account_id,
                LedgerEntry.status.in_(BALANCE_STATUSES),
            )
        )
        if as_of is not None:
            query = query.where(LedgerEntry.entry_date < as_of)

        debit_total, credit_total = self.session.execute(query).one()
        return Decimal(str(debit_total)) - Decimal(str(credit_total))

    def statement(
        self,
        account_id: int,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> AccountStatement:
        """
        Opening balance, dated items with running balance, closing balance.

        ``date_from`` and ``date_to`` are inclusive.  The opening balance is
        balance(account_id, as_of=date_from), or 0 without ``date_from``.

        Raises:
            ValidationError: date_from is after date_to.
        """
        if date_from is not None and date_to is not None and date_from > date_to:
            raise ValidationError("date_from", f"{date_from} is after date_to {date_to}")

        opening = self.balance(account_id, as_of=date_from) if date_from is not None else ZERO

        query = (
            select(Posting, LedgerEntry)
            .join(LedgerEntry, Posting.entry_id == LedgerEntry.id)
            .where(
                Posting.account_id == account_id,
                LedgerEntry.status.in_(BALANCE_STATUSES),
            )
            .order_by(LedgerEntry.entry_date.asc(), LedgerEntry.id.asc(), Posting.id.asc())
        )
        if date_from is not None:
            query = query.where(LedgerEntry.entry_date >= date_from)
        if date_to is not None:
            query = query.where(LedgerEntry.entry_date <= date_to)

        running = opening
        items = []
        for posting, entry in self.session.execute(query).all():
            running = running + posting.debit - posting.credit
            items.append(
                StatementItem(
                    entry_id=entry.id,
                    entry_number=entry.entry_number,
                    date=entry.entry_date,
                    description=entry.description,
                    debit=posting.debit,
                    credit=posting.credit,
                    running_balance=running,
                    posting_id=posting.id,
                    reference_type=entry.reference_type,
                    reference_id=entry.reference_id,
                )
            )

        return AccountStatement(
            account_id=account_id,
            date_from=date_from,
            date_to=date_to,
            opening_balance=opening,
            closing_balance=running,
            items=tuple(items),
            account=self._accounts.lookup(account_id) if self._accounts is not None else None,
        )
