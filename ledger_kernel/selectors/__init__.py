"""Read-only selectors over entries, account sub-ledgers and the audit trail."""

from ledger_kernel.selectors.audit_selector import (
    AuditFilter,
    AuditPage,
    AuditRecordDTO,
    AuditSelector,
)
from ledger_kernel.selectors.journal_selector import (
    EntryFilter,
    EntryPage,
    JournalSelector,
    PostingLineDTO,
    PostingLinePage,
)
from ledger_kernel.selectors.partner_subledger import (
    AccountStatement,
    PartnerSubledger,
    StatementItem,
)

__all__ = [
    "AccountStatement",
    "AuditFilter",
    "AuditPage",
    "AuditRecordDTO",
    "AuditSelector",
    "EntryFilter",
    "EntryPage",
    "JournalSelector",
    "PartnerSubledger",
    "PostingLineDTO",
    "PostingLinePage",
    "StatementItem",
]
