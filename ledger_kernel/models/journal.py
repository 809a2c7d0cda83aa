"""
Module: ledger_kernel.models.journal
Responsibility: ORM persistence for ledger entries and their postings, and
    the entry aggregate's transition methods.
Architecture position: Kernel > Models.  May import from db/ and domain/.
    MUST NOT import from services/ or selectors/.

Invariants enforced:
    - entry_number is unique among existing rows (uq_ledger_entry_number);
      deleting a row frees its number.
    - period always equals the YYYY-MM of entry_date; every path that sets it
      goes through _set_date().
    - Only draft entries are edited or deleted; status moves only along
      the table in domain/lifecycle.py.
    - Postings belong to exactly one entry and are deleted with it.
    - version_id changes on every header UPDATE, including posting
      replacement, so a writer holding a stale read updates zero rows and
      gets StaleDataError.

Transition methods never raise for a rejected move.  They return a
TransitionResult; a rejected result leaves the row untouched and the
caller decides whether to raise its error.
"""

from collections.abc import Iterable
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    BigInteger,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_kernel.db.base import TrackedBase
from ledger_kernel.domain.accounts import AccountDirectory
from ledger_kernel.domain.balance import BalanceCheck, check_balance
from ledger_kernel.domain.dtos import (
    EntryHeader,
    HeaderUpdate,
    LedgerEntryDTO,
    PostingDTO,
    PostingSpec,
)
from ledger_kernel.domain.lifecycle import (
    EntryAction,
    EntryStatus,
    TransitionResult,
    period_for,
    resolve_transition,
)
from ledger_kernel.exceptions import UnbalancedEntryError

ENTRY_NUMBER_CONSTRAINT = "uq_ledger_entry_number"


class LedgerEntry(TrackedBase):
    """
    Journal entry header -- the aggregate root of the ledger.

    Contract:
        Created as a draft with an allocated entry_number (or, for
        reversals, directly as posted).  Postings are owned exclusively
        and replaced wholesale, never patched line by line.

    Non-goals:
        - Does not allocate numbers or open transactions; that is
          LedgerEntryStateMachine's job.
    """

    __tablename__ = "ledger_entries"

    __table_args__ = (
        UniqueConstraint("entry_number", name=ENTRY_NUMBER_CONSTRAINT),
        Index("idx_ledger_entry_status", "status"),
        Index("idx_ledger_entry_date", "date"),
        Index("idx_ledger_entry_period", "period"),
        Index("idx_ledger_entry_reference", "reference_type", "reference_id"),
    )

    entry_number: Mapped[int] = mapped_column(Integer, nullable=False)

    description: Mapped[str] = mapped_column(String(500), nullable=False, default="")

    entry_date: Mapped[date] = mapped_column("date", Date, nullable=False)

    # Derived YYYY-MM of entry_date
    period: Mapped[str] = mapped_column(String(7), nullable=False)

    # Opaque link to the source document (invoice, expense, reversal, ...)
    reference_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    reference_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    status: Mapped[EntryStatus] = mapped_column(
        Enum(
            EntryStatus,
            native_enum=False,
            length=10,
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=EntryStatus.DRAFT,
    )

    posted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    branch: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Bumped on every header UPDATE; a stale writer matches zero rows
    version_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"eager_defaults": True, "version_id_col": version_id}

    postings: Mapped[list["Posting"]] = relationship(
        back_populates="entry",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Posting.id",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<LedgerEntry #{self.entry_number} id={self.id} status={self.status.value}>"

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def new_draft(
        cls,
        entry_number: int,
        header: EntryHeader,
        postings: Iterable[PostingSpec],
        entry_date: date,
    ) -> "LedgerEntry":
        entry = cls(
            entry_number=entry_number,
            description=header.description,
            reference_type=header.reference_type,
            reference_id=header.reference_id,
            branch=header.branch,
            status=EntryStatus.DRAFT,
            posted_at=None,
        )
        entry._set_date(entry_date)
        entry._set_postings(postings)
        return entry

    @classmethod
    def new_reversal(
        cls,
        original: "LedgerEntry",
        entry_number: int,
        now: datetime,
    ) -> "LedgerEntry":
        """Posted mirror of ``original`` with every debit/credit swapped."""
        entry = cls(
            entry_number=entry_number,
            description=f"Reversal of entry #{original.entry_number} - {original.description or ''}",
            reference_type="reversal",
            reference_id=original.id,
            branch=original.branch,
            status=EntryStatus.POSTED,
            posted_at=now,
        )
        entry._set_date(now.date())
        entry._set_postings(p.to_spec().swapped() for p in original.postings)
        return entry

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def update(
        self,
        header: HeaderUpdate | None = None,
        postings: Iterable[PostingSpec] | None = None,
    ) -> TransitionResult:
        """Edit a draft.  Supplied postings replace the whole set."""
        result = resolve_transition(self.status, EntryAction.UPDATE, self.id)
        if not result.success:
            return result

        changes = header.changes() if header is not None else {}
        for name, value in changes.items():
            if name == "date":
                self._set_date(value)
            else:
                setattr(self, name, value)

        if postings is not None:
            self._set_postings(postings)
            # Touch the header row so the version check covers posting edits
            self.updated_at = func.now()
        return result

    def post(self, now: datetime) -> TransitionResult:
        """draft -> posted, only when the postings balance."""
        result = resolve_transition(self.status, EntryAction.POST, self.id)
        if not result.success:
            return result

        check = self.balance()
        if not check.is_balanced:
            return TransitionResult.rejected(
                UnbalancedEntryError(
                    debit_total=check.debit_total,
                    credit_total=check.credit_total,
                    difference=check.difference,
                    entry_id=self.id,
                )
            )

        self.status = EntryStatus.POSTED
        self.posted_at = now
        return result

    def return_to_draft(self) -> TransitionResult:
        """posted -> draft; the posting timestamp is cleared."""
        result = resolve_transition(self.status, EntryAction.RETURN_TO_DRAFT, self.id)
        if result.success:
            self.status = EntryStatus.DRAFT
            self.posted_at = None
        return result

    def mark_reversed(self) -> TransitionResult:
        """posted -> reversed.  The reversal entry is created by the caller."""
        result = resolve_transition(self.status, EntryAction.REVERSE, self.id)
        if result.success:
            self.status = EntryStatus.REVERSED
        return result

    def check_deletable(self) -> TransitionResult:
        return resolve_transition(self.status, EntryAction.DELETE, self.id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def balance(self) -> BalanceCheck:
        return check_balance(self.postings)

    def header_snapshot(self) -> dict[str, Any]:
        """Header fields as recorded in audit snapshots."""
        return {
            "entry_number": self.entry_number,
            "description": self.description,
            "date": self.entry_date,
            "period": self.period,
            "status": self.status.value,
            "branch": self.branch,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
        }

    def snapshot(self) -> dict[str, Any]:
        """Header plus posting totals, for create/update/delete audits."""
        check = self.balance()
        data = self.header_snapshot()
        data.update(
            {
                "postings_count": len(self.postings),
                "total_debit": check.debit_total,
                "total_credit": check.credit_total,
            }
        )
        return data

    def to_dto(self, accounts: AccountDirectory | None = None) -> LedgerEntryDTO:
        return LedgerEntryDTO(
            id=self.id,
            entry_number=self.entry_number,
            description=self.description,
            date=self.entry_date,
            period=self.period,
            reference_type=self.reference_type,
            reference_id=self.reference_id,
            status=EntryStatus(self.status),
            posted_at=self.posted_at,
            branch=self.branch,
            created_at=self.created_at,
            updated_at=self.updated_at,
            postings=tuple(p.to_dto(accounts) for p in self.postings),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _set_date(self, entry_date: date) -> None:
        self.entry_date = entry_date
        self.period = period_for(entry_date)

    def _set_postings(self, postings: Iterable[PostingSpec]) -> None:
        # delete-orphan removes the previous lines at flush
        self.postings = [Posting.from_spec(spec) for spec in postings]


class Posting(TrackedBase):
    """
    One debit/credit line of a ledger entry.

    Contract:
        debit and credit may both be nonzero, and either may be negative
        (correction idiom).  account_id references the external chart of
        accounts and is not checked for existence.
    """

    __tablename__ = "ledger_postings"

    __table_args__ = (
        Index("idx_posting_entry", "entry_id"),
        Index("idx_posting_account", "account_id"),
    )

    __mapper_args__ = {"eager_defaults": True}

    entry_id: Mapped[int] = mapped_column(
        ForeignKey("ledger_entries.id", ondelete="CASCADE"),
        nullable=False,
    )

    account_id: Mapped[int] = mapped_column(BigInteger, nullable=False)

    debit: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False, default=Decimal("0"))

    credit: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False, default=Decimal("0"))

    description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    entry: Mapped[LedgerEntry] = relationship(back_populates="postings")

    def __repr__(self) -> str:
        return f"<Posting account={self.account_id} debit={self.debit} credit={self.credit}>"

    @classmethod
    def from_spec(cls, spec: PostingSpec) -> "Posting":
        return cls(
            account_id=spec.account_id,
            debit=spec.debit,
            credit=spec.credit,
            description=spec.description,
        )

    def to_spec(self) -> PostingSpec:
        return PostingSpec(
            account_id=self.account_id,
            debit=self.debit,
            credit=self.credit,
            description=self.description,
        )

    def to_dto(self, accounts: AccountDirectory | None = None) -> PostingDTO:
        return PostingDTO(
            id=self.id,
            entry_id=self.entry_id,
            account_id=self.account_id,
            debit=self.debit,
            credit=self.credit,
            description=self.description,
            account=accounts.lookup(self.account_id) if accounts is not None else None,
        )
