"""
Chart-of-accounts port.

The chart of accounts is owned elsewhere; the ledger only reads
``account_id -> {nature, type}`` to decorate postings and statements.
Account ids are never validated for existence here.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Protocol


class AccountNature(str, Enum):
    """Side on which the account normally carries its balance."""

    DEBIT = "debit"
    CREDIT = "credit"


@dataclass(frozen=True)
class AccountInfo:
    account_id: int
    nature: AccountNature
    type: str
    code: str | None = None
    name: str | None = None


class AccountDirectory(Protocol):
    """Read-only lookup into the external chart of accounts."""

    def lookup(self, account_id: int) -> AccountInfo | None: ...


class StaticAccountDirectory:
    """AccountDirectory backed by an in-memory mapping."""

    def __init__(self, accounts: Mapping[int, AccountInfo] | None = None):
        self._accounts = dict(accounts or {})

    @classmethod
    def from_infos(cls, *infos: AccountInfo) -> "StaticAccountDirectory":
        return cls({info.account_id: info for info in infos})

    def lookup(self, account_id: int) -> AccountInfo | None:
        return self._accounts.get(account_id)
