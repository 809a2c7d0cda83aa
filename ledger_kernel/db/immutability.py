"""
Module: ledger_kernel.db.immutability
Responsibility: ORM event listeners that keep the audit trail append-only.
Architecture position: Kernel > DB.  Imports models lazily inside the
    register/unregister functions.

A before_update or before_delete on an AuditRecord raises
ImmutabilityViolationError, which aborts the flush and so the transaction.
Bulk query.update()/query.delete() bypass mapper events; the kernel never
issues them against audit_records.

Usage:
    register_immutability_listeners()    # called by init_engine_from_url
    unregister_immutability_listeners()  # tests that need to bypass it
"""

from sqlalchemy import event

from ledger_kernel.exceptions import ImmutabilityViolationError
from ledger_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _block_audit_record(operation: str, target, reason: str) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": "AuditRecord",
            "entity_id": target.id,
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type="AuditRecord",
        entity_id=target.id,
        reason=reason,
    )


def _check_audit_record_update(mapper, connection, target):
    _block_audit_record("UPDATE", target, "Audit records cannot be modified")


def _check_audit_record_delete(mapper, connection, target):
    _block_audit_record("DELETE", target, "Audit records cannot be deleted")


_LISTENERS = (
    ("before_update", _check_audit_record_update),
    ("before_delete", _check_audit_record_delete),
)


def register_immutability_listeners() -> None:
    """Register the audit listeners.  Safe to call more than once."""
    from ledger_kernel.models.audit_record import AuditRecord

    for event_name, listener in _LISTENERS:
        if not event.contains(AuditRecord, event_name, listener):
            event.listen(AuditRecord, event_name, listener)


def unregister_immutability_listeners() -> None:
    """
    Remove the audit listeners.

    WARNING: Only use this in tests that deliberately violate append-only
    rules.
    """
    from ledger_kernel.models.audit_record import AuditRecord

    for event_name, listener in _LISTENERS:
        if event.contains(AuditRecord, event_name, listener):
            event.remove(AuditRecord, event_name, listener)
