"""
DTOs -- immutable data crossing the kernel boundary.

Responsibility:
    Input specs (``EntryHeader``, ``HeaderUpdate``, ``PostingSpec``) coerce
    and validate what the calling layer sends.  Output DTOs
    (``LedgerEntryDTO``, ``PostingDTO``, ``ReversalResult``) are what
    services and selectors hand back; ORM rows never leave the kernel.

Failure modes:
    - ValidationError on a missing/non-positive ``account_id``.
    - ValidationError on amounts that do not parse as finite decimals.
    - ValidationError on an unparseable date.

Negative amounts and postings with both debit and credit set are valid
input: the former is a correction idiom, the latter is left to callers.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from ledger_kernel.domain.accounts import AccountInfo
from ledger_kernel.domain.balance import ZERO, check_balance, is_within_tolerance
from ledger_kernel.domain.lifecycle import EntryStatus
from ledger_kernel.exceptions import ValidationError


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------


def to_decimal(value: Any, field_name: str) -> Decimal:
    """Coerce an amount to Decimal; None and "" mean zero."""
    if value is None or value == "":
        return ZERO
    if isinstance(value, bool):
        raise ValidationError(field_name, f"not a number: {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValidationError(field_name, f"not a number: {value!r}") from None
    else:
        raise ValidationError(field_name, f"not a number: {value!r}")
    if not result.is_finite():
        raise ValidationError(field_name, f"not a finite number: {value!r}")
    return result


def to_account_id(value: Any, field_name: str = "account_id") -> int:
    if value is None or value == "" or isinstance(value, bool):
        raise ValidationError(field_name, "is required")
    try:
        account_id = int(str(value).strip())
    except ValueError:
        raise ValidationError(field_name, f"not an integer: {value!r}") from None
    if account_id <= 0:
        raise ValidationError(field_name, f"must be positive, got {account_id}")
    return account_id


def to_date(value: Any, field_name: str = "date") -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            raise ValidationError(field_name, f"not an ISO date: {value!r}") from None
    raise ValidationError(field_name, f"not a date: {value!r}")


def _to_optional_int(value: Any, field_name: str) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(field_name, f"not an integer: {value!r}")
    try:
        return int(str(value).strip())
    except ValueError:
        raise ValidationError(field_name, f"not an integer: {value!r}") from None


def _to_optional_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


# ---------------------------------------------------------------------------
# Input specs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PostingSpec:
    """One debit/credit line as submitted by a caller."""

    account_id: int
    debit: Decimal = ZERO
    credit: Decimal = ZERO
    description: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "account_id", to_account_id(self.account_id))
        object.__setattr__(self, "debit", to_decimal(self.debit, "debit"))
        object.__setattr__(self, "credit", to_decimal(self.credit, "credit"))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> PostingSpec:
        return cls(
            account_id=data.get("account_id"),
            debit=data.get("debit"),
            credit=data.get("credit"),
            description=_to_optional_str(data.get("description")),
        )

    def swapped(self) -> PostingSpec:
        """Same line with debit and credit exchanged."""
        return PostingSpec(
            account_id=self.account_id,
            debit=self.credit,
            credit=self.debit,
            description=self.description,
        )


@dataclass(frozen=True)
class EntryHeader:
    """Header fields for a new entry.  ``date`` None means today."""

    description: str = ""
    date: date | None = None
    reference_type: str | None = None
    reference_id: int | None = None
    branch: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> EntryHeader:
        return cls(
            description=str(data.get("description") or ""),
            date=to_date(data.get("date")),
            reference_type=_to_optional_str(data.get("reference_type")),
            reference_id=_to_optional_int(data.get("reference_id"), "reference_id"),
            branch=_to_optional_str(data.get("branch")),
        )


@dataclass(frozen=True)
class HeaderUpdate:
    """Header edits for a draft.  None leaves a field unchanged."""

    description: str | None = None
    date: date | None = None
    reference_type: str | None = None
    reference_id: int | None = None
    branch: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> HeaderUpdate:
        return cls(
            description=_to_optional_str(data.get("description")),
            date=to_date(data.get("date")),
            reference_type=_to_optional_str(data.get("reference_type")),
            reference_id=_to_optional_int(data.get("reference_id"), "reference_id"),
            branch=_to_optional_str(data.get("branch")),
        )

    def changes(self) -> dict[str, Any]:
        return {
            name: value
            for name, value in (
                ("description", self.description),
                ("date", self.date),
                ("reference_type", self.reference_type),
                ("reference_id", self.reference_id),
                ("branch", self.branch),
            )
            if value is not None
        }


def coerce_postings(postings: Any) -> tuple[PostingSpec, ...]:
    """Accept PostingSpec instances or plain mappings."""
    if postings is None:
        return ()
    if isinstance(postings, (str, bytes, Mapping)):
        raise ValidationError("postings", "must be a list of postings")
    result = []
    for index, item in enumerate(postings):
        if isinstance(item, PostingSpec):
            result.append(item)
        elif isinstance(item, Mapping):
            try:
                result.append(PostingSpec.from_mapping(item))
            except ValidationError as exc:
                raise ValidationError(f"postings[{index}].{exc.field}", exc.reason) from None
        else:
            raise ValidationError(f"postings[{index}]", f"not a posting: {item!r}")
    return tuple(result)


# ---------------------------------------------------------------------------
# Output DTOs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PostingDTO:
    id: int
    entry_id: int
    account_id: int
    debit: Decimal
    credit: Decimal
    description: str | None = None
    account: AccountInfo | None = None


@dataclass(frozen=True)
class LedgerEntryDTO:
    """A journal entry with its postings, as of one read."""

    id: int
    entry_number: int
    description: str
    date: date
    period: str
    reference_type: str | None
    reference_id: int | None
    status: EntryStatus
    posted_at: datetime | None
    branch: str | None
    created_at: datetime | None
    updated_at: datetime | None
    postings: tuple[PostingDTO, ...] = field(default_factory=tuple)

    @property
    def total_debit(self) -> Decimal:
        return check_balance(self.postings).debit_total

    @property
    def total_credit(self) -> Decimal:
        return check_balance(self.postings).credit_total

    @property
    def difference(self) -> Decimal:
        return self.total_debit - self.total_credit

    @property
    def is_balanced(self) -> bool:
        return is_within_tolerance(self.difference)


@dataclass(frozen=True)
class ReversalResult:
    """Both sides of a committed reversal."""

    original: LedgerEntryDTO
    reversal: LedgerEntryDTO


# ---------------------------------------------------------------------------
# Audit inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Actor:
    """Who performed an operation, as supplied by the calling layer."""

    id: int | None = None
    name: str | None = None


SYSTEM_ACTOR = Actor(id=None, name="system")


@dataclass(frozen=True)
class AuditContext:
    """Request origin metadata attached to audit records."""

    ip_address: str | None = None
    user_agent: str | None = None
    source: str = "api"
    details: Mapping[str, Any] = field(default_factory=dict)

    def with_details(self, **details: Any) -> AuditContext:
        merged = dict(self.details)
        merged.update(details)
        return AuditContext(
            ip_address=self.ip_address,
            user_agent=self.user_agent,
            source=self.source,
            details=merged,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "source": self.source,
            "details": dict(self.details),
        }
