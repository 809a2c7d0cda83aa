"""
Module: ledger_kernel.selectors.journal_selector
Responsibility: Read-only query access to ledger entries and their postings:
    single-entry lookup, filtered paginated listing, and the by-account and
    by-related cross-reference lookups.
Architecture position: Kernel > Selectors.  May import from models/,
    domain/ and selectors/base.py.  MUST NOT import from services/.

Invariants enforced:
    - Read-only: no mutations performed on any queried data.
    - DTO convention: public methods return LedgerEntryDTO / PostingLineDTO
      pages, never raw ORM models.
    - Postings inside an entry are ordered by posting id.
    - Listings are ordered date desc, entry_number desc; account lines
      date asc, entry_number asc.

Failure modes:
    - EntryNotFoundError from get() when the id does not exist.
    - ValidationError on malformed filters (missing reference pair,
      non-positive page, unknown preset).
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy import String, case, cast, func, or_, select
from sqlalchemy.orm import Session

from ledger_kernel.domain.accounts import AccountDirectory, AccountInfo
from ledger_kernel.domain.balance import BALANCE_TOLERANCE
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.dtos import LedgerEntryDTO
from ledger_kernel.domain.lifecycle import BALANCE_STATUSES, EntryStatus
from ledger_kernel.exceptions import EntryNotFoundError, ValidationError
from ledger_kernel.models.journal import LedgerEntry, Posting
from ledger_kernel.selectors.base import BaseSelector, clamp_page
from ledger_kernel.settings import LedgerSettings

PRESETS = ("today", "this_week", "this_month", "this_year")
# Hard ceilings; settings may lower them, never raise them
LIST_PAGE_CAP = 500
ACCOUNT_PAGE_CAP = 1000

QUARTERS = {
    "Q1": ((1, 1), (3, 31)),
    "Q2": ((4, 1), (6, 30)),
    "Q3": ((7, 1), (9, 30)),
    "Q4": ((10, 1), (12, 31)),
}


@dataclass(frozen=True)
class EntryFilter:
    """
    Listing filter.  Every field is optional; unset fields do not filter.

    ``preset`` and ``quarter`` resolve against the clock and replace
    date_from/date_to.  Amount bounds compare against the larger of the
    entry's debit and credit totals.
    """

    status: EntryStatus | None = None
    date_from: date | None = None
    date_to: date | None = None
    preset: str | None = None
    quarter: str | None = None
    search: str | None = None
    reference_type: str | None = None
    period: str | None = None
    account_ids: Sequence[int] = ()
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    unbalanced_only: bool = False
    page: int | None = None
    page_size: int | None = None


@dataclass(frozen=True)
class EntryPage:
    items: tuple[LedgerEntryDTO, ...]
    page: int
    page_size: int
    total: int

    @property
    def pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size


@dataclass(frozen=True)
class PostingLineDTO:
    """A posting seen from its account, with its entry's header fields."""

    posting_id: int
    entry_id: int
    entry_number: int
    date: date
    entry_description: str
    status: EntryStatus
    account_id: int
    debit: Decimal
    credit: Decimal
    description: str | None = None
    account: AccountInfo | None = None


@dataclass(frozen=True)
class PostingLinePage:
    items: tuple[PostingLineDTO, ...] = field(default_factory=tuple)
    page: int = 1
    page_size: int = 0
    total: int = 0


def resolve_preset(preset: str, today: date) -> tuple[date, date]:
    """Date range for a preset ending today.  Weeks start on Sunday."""
    if preset == "today":
        return today, today
    if preset == "this_week":
        days_since_sunday = (today.weekday() + 1) % 7
        return today - timedelta(days=days_since_sunday), today
    if preset == "this_month":
        return today.replace(day=1), today
    if preset == "this_year":
        return today.replace(month=1, day=1), today
    raise ValidationError("preset", f"unknown preset {preset!r}; expected one of {PRESETS}")


def resolve_quarter(quarter: str, year: int) -> tuple[date, date]:
    bounds = QUARTERS.get(quarter.upper())
    if bounds is None:
        raise ValidationError("quarter", f"unknown quarter {quarter!r}")
    (m1, d1), (m2, d2) = bounds
    return date(year, m1, d1), date(year, m2, d2)


class JournalSelector(BaseSelector):
    """
    Selector for ledger entry queries.

    Contract:
        Entries are returned with all their postings, eagerly loaded.
        When an AccountDirectory is supplied each posting DTO carries its
        AccountInfo.

    Non-goals:
        - Does NOT compute account balances; use PartnerSubledger.
    """

    def __init__(
        self,
        session: Session,
        accounts: AccountDirectory | None = None,
        clock: Clock | None = None,
        settings: LedgerSettings | None = None,
    ):
        super().__init__(session)
        self._accounts = accounts
        self._clock = clock or SystemClock()
        self._list_default = settings.list_default_page_size if settings else 20
        self._list_max = (
            min(settings.list_max_page_size, LIST_PAGE_CAP) if settings else LIST_PAGE_CAP
        )
        self._account_default = settings.account_default_page_size if settings else 500
        self._account_max = (
            min(settings.account_max_page_size, ACCOUNT_PAGE_CAP) if settings else ACCOUNT_PAGE_CAP
        )

    def get(self, entry_id: int) -> LedgerEntryDTO:
        """
        Entry with its postings and totals.

        Raises:
            EntryNotFoundError: No entry with this id.
        """
        entry = self.session.get(LedgerEntry, entry_id)
        if entry is None:
            raise EntryNotFoundError(entry_id)
        return entry.to_dto(self._accounts)

    def list_entries(self, filters: EntryFilter | None = None) -> EntryPage:
        """
        Filtered, paginated listing ordered date desc, entry_number desc.

        Page size defaults to 20 and is capped at 500.
        """
        filters = filters or EntryFilter()
        page, page_size = clamp_page(
            filters.page, filters.page_size, self._list_default, self._list_max
        )

        totals = (
            select(
                Posting.entry_id.label("entry_id"),
                func.coalesce(func.sum(Posting.debit), 0).label("total_debit"),
                func.coalesce(func.sum(Posting.credit), 0).label("total_credit"),
            )
            .group_by(Posting.entry_id)
            .subquery()
        )
        total_debit = func.coalesce(totals.c.total_debit, 0)
        total_credit = func.coalesce(totals.c.total_credit, 0)
        larger_side = case(
            (total_debit >= total_credit, total_debit),
            else_=total_credit,
        )

        conditions = []
        if filters.status is not None:
            conditions.append(LedgerEntry.status == EntryStatus(filters.status))

        date_from, date_to = filters.date_from, filters.date_to
        if filters.preset:
            date_from, date_to = resolve_preset(filters.preset, self._clock.today())
        elif filters.quarter:
            date_from, date_to = resolve_quarter(filters.quarter, self._clock.today().year)
        if date_from is not None:
            conditions.append(LedgerEntry.entry_date >= date_from)
        if date_to is not None:
            conditions.append(LedgerEntry.entry_date <= date_to)

        if filters.search:
            pattern = f"%{filters.search}%"
            conditions.append(
                or_(
                    LedgerEntry.description.ilike(pattern),
                    cast(LedgerEntry.entry_number, String).like(pattern),
                )
            )
        if filters.reference_type:
            conditions.append(LedgerEntry.reference_type == filters.reference_type)
        if filters.period:
            conditions.append(LedgerEntry.period == filters.period)
        if filters.account_ids:
            conditions.append(
                LedgerEntry.id.in_(
                    select(Posting.entry_id).where(
                        Posting.account_id.in_(list(filters.account_ids))
                    )
                )
            )
        if filters.min_amount is not None:
            conditions.append(larger_side >= filters.min_amount)
        if filters.max_amount is not None:
            conditions.append(larger_side <= filters.max_amount)
        if filters.unbalanced_only:
            # Rounded to column scale; SQLite sums NUMERIC as REAL
            conditions.append(
                func.round(func.abs(total_debit - total_credit), 9) > BALANCE_TOLERANCE
            )

        base = (
            select(LedgerEntry)
            .outerjoin(totals, totals.c.entry_id == LedgerEntry.id)
            .where(*conditions)
        )

        total = self.session.execute(
            select(func.count()).select_from(base.subquery())
        ).scalar_one()

        entries = self.session.execute(
            base.order_by(LedgerEntry.entry_date.desc(), LedgerEntry.entry_number.desc())
            .limit(page_size)
            .offset((page - 1) * page_size)
        ).scalars().all()

        return EntryPage(
            items=tuple(entry.to_dto(self._accounts) for entry in entries),
            page=page,
            page_size=page_size,
            total=total,
        )

    def by_account(
        self,
        account_id: int,
        date_from: date | None = None,
        date_to: date | None = None,
        page: int | None = None,
        page_size: int | None = None,
    ) -> PostingLinePage:
        """
        Posting lines of booked (posted or reversed) entries on one account,
        oldest first.

        Page size defaults to 500 and is capped at 1000.
        """
        page, page_size = clamp_page(page, page_size, self._account_default, self._account_max)

        conditions = [
            Posting.account_id == account_id,
            LedgerEntry.status.in_(BALANCE_STATUSES),
        ]
        if date_from is not None:
            conditions.append(LedgerEntry.entry_date >= date_from)
        if date_to is not None:
            conditions.append(LedgerEntry.entry_date <= date_to)

        total = self.session.execute(
            select(func.count(Posting.id))
            .join(LedgerEntry, Posting.entry_id == LedgerEntry.id)
            .where(*conditions)
        ).scalar_one()

        rows = self.session.execute(
            select(Posting, LedgerEntry)
            .join(LedgerEntry, Posting.entry_id == LedgerEntry.id)
            .where(*conditions)
            .order_by(
                LedgerEntry.entry_date.asc(),
                LedgerEntry.entry_number.asc(),
                Posting.id.asc(),
            )
            .limit(page_size)
            .offset((page - 1) * page_size)
        ).all()

        info = self._accounts.lookup(account_id) if self._accounts is not None else None
        items = tuple(
            PostingLineDTO(
                posting_id=posting.id,
                entry_id=entry.id,
                entry_number=entry.entry_number,
                date=entry.entry_date,
                entry_description=entry.description,
                status=EntryStatus(entry.status),
                account_id=posting.account_id,
                debit=posting.debit,
                credit=posting.credit,
                description=posting.description,
                account=info,
            )
            for posting, entry in rows
        )
        return PostingLinePage(items=items, page=page, page_size=page_size, total=total)

    def by_related(self, reference_type: str, reference_id: int) -> list[LedgerEntryDTO]:
        """
        Entries of any status linked to one source document, newest first.

        Raises:
            ValidationError: reference_type or reference_id missing.
        """
        if not reference_type:
            raise ValidationError("reference_type", "is required")
        if reference_id is None or reference_id == "":
            raise ValidationError("reference_id", "is required")
        try:
            reference_id = int(reference_id)
        except (TypeError, ValueError):
            raise ValidationError("reference_id", f"not an integer: {reference_id!r}") from None

        entries = self.session.execute(
            select(LedgerEntry)
            .where(
                LedgerEntry.reference_type == reference_type,
                LedgerEntry.reference_id == reference_id,
            )
            .order_by(LedgerEntry.entry_date.desc(), LedgerEntry.entry_number.desc())
        ).scalars().all()

        return [entry.to_dto(self._accounts) for entry in entries]
