"""ORM models for the ledger kernel."""

from ledger_kernel.models.audit_record import AuditAction, AuditEntityType, AuditRecord
from ledger_kernel.models.journal import ENTRY_NUMBER_CONSTRAINT, LedgerEntry, Posting

__all__ = [
    "AuditAction",
    "AuditEntityType",
    "AuditRecord",
    "ENTRY_NUMBER_CONSTRAINT",
    "LedgerEntry",
    "Posting",
]
