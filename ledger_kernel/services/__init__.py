"""Write-side services: numbering, audit and the entry state machine."""

from ledger_kernel.services.audit_recorder import AuditRecorder, PendingAudit
from ledger_kernel.services.base import UnitOfWork
from ledger_kernel.services.entry_number_allocator import EntryNumberAllocator
from ledger_kernel.services.entry_state_machine import LedgerEntryStateMachine

__all__ = [
    "AuditRecorder",
    "EntryNumberAllocator",
    "LedgerEntryStateMachine",
    "PendingAudit",
    "UnitOfWork",
]
