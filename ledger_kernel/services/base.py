"""
UnitOfWork -- one business transaction and the audit records it owes.

Responsibility:
    Wraps the Session a state-machine operation writes through and
    collects the audit records that operation declares.  Before the
    transaction commits, ``seal()`` refuses any unit that flushed changes
    without declaring at least one audit record.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Created by LedgerEntryStateMachine for every mutating operation.

Invariants enforced:
    - A committed mutation always has an audit record.  An operation that
      forgets to call ``audit()`` fails with RuntimeError and rolls back;
      it cannot be shipped silently.
    - Audit records are held, not written, until the transaction commits.
      A rolled-back operation leaves no audit row.

Non-goals:
    - Does NOT begin, commit or roll back.  The caller owns the
      transaction; this object only watches it.
"""

from collections.abc import Mapping
from typing import Any

from sqlalchemy import event
from sqlalchemy.orm import Session

from ledger_kernel.domain.dtos import AuditContext
from ledger_kernel.models.audit_record import AuditAction, AuditEntityType
from ledger_kernel.services.audit_recorder import PendingAudit


class UnitOfWork:
    """
    Session plus pending audit records for one operation.

    Usage:
        with session.begin():
            uow = UnitOfWork(session)
            ... mutate through uow.session ...
            uow.audit(AuditAction.POST, ...)
            uow.seal()
        recorder.record_pending(actor, uow.pending)
    """

    def __init__(self, session: Session, context: AuditContext | None = None):
        self.session = session
        self.context = context
        self._pending: list[PendingAudit] = []
        self._flushed = False
        event.listen(session, "after_flush", self._on_flush)

    def _on_flush(self, session, flush_context) -> None:
        if session.new or session.dirty or session.deleted:
            self._flushed = True

    def audit(
        self,
        action: AuditAction,
        entity_type: AuditEntityType,
        entity_id: int | None,
        period: str | None,
        old: Mapping[str, Any] | None = None,
        new: Mapping[str, Any] | None = None,
        context: AuditContext | None = None,
    ) -> None:
        self._pending.append(
            PendingAudit(
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                period=period,
                old=dict(old) if old is not None else None,
                new=dict(new) if new is not None else None,
                context=context or self.context,
            )
        )

    @property
    def pending(self) -> tuple[PendingAudit, ...]:
        return tuple(self._pending)

    def seal(self) -> None:
        """
        Flush outstanding changes and check the audit obligation.

        Raises:
            RuntimeError: Changes were written but no audit was declared.
        """
        self.session.flush()
        event.remove(self.session, "after_flush", self._on_flush)
        if self._flushed and not self._pending:
            raise RuntimeError(
                "Ledger mutation flushed without an audit record; "
                "call UnitOfWork.audit() before sealing"
            )
