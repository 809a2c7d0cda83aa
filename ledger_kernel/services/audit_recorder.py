"""
AuditRecorder -- append-only diff log of ledger mutations.

Responsibility:
    Persists one AuditRecord per audited action: who did what to which
    entity, the before/after snapshots, their structural diff and the
    request context.

Architecture position:
    Kernel > Services -- imperative shell.
    Fed by LedgerEntryStateMachine after each business transaction
    commits; read back through selectors/audit_selector.py.

Invariants enforced:
    - Records are only ever inserted (see db/immutability.py).
    - A record is written even when the diff is empty: the action itself
      is the event.
    - Every write runs in its own transaction.  An audit failure never
      rolls back, blocks or raises into the business operation.

Failure modes:
    - None surface.  Any exception while writing is logged at ERROR as
      ``audit_record_failed`` (with exc_info) and dropped.
"""

from collections.abc import Iterable, Mapping
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.diff import compute_diff, json_safe
from ledger_kernel.domain.dtos import SYSTEM_ACTOR, Actor, AuditContext
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.audit_record import AuditAction, AuditEntityType, AuditRecord

logger = get_logger("services.audit_recorder")


@dataclass(frozen=True)
class PendingAudit:
    """An audit record owed by a transaction, written once it commits."""

    action: AuditAction
    entity_type: AuditEntityType
    entity_id: int | None
    period: str | None
    old: Mapping[str, Any] | None
    new: Mapping[str, Any] | None
    context: AuditContext | None = None


class AuditRecorder:
    """
    Writes audit records in their own transactions.

    Contract:
        ``record(...)`` returns None whether or not the write succeeded.
        With an ``executor`` the write is submitted and ``record`` returns
        immediately; without one it runs inline.

    Non-goals:
        - No update or delete of existing records.
        - No retry of a failed write.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
        executor: Executor | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._executor = executor

    def record(
        self,
        actor: Actor | None,
        action: AuditAction | str,
        entity_type: AuditEntityType | str,
        entity_id: int | None,
        period: str | None = None,
        old: Mapping[str, Any] | None = None,
        new: Mapping[str, Any] | None = None,
        context: AuditContext | None = None,
    ) -> None:
        """Record one action.  Never raises."""
        if self._executor is not None:
            try:
                self._executor.submit(
                    self._write, actor, action, entity_type, entity_id,
                    period, old, new, context,
                )
            except Exception:
                # Executor already shut down
                logger.error(
                    "audit_record_failed",
                    exc_info=True,
                    extra={
                        "action": str(getattr(action, "value", action)),
                        "entity_type": str(getattr(entity_type, "value", entity_type)),
                        "entity_id": entity_id,
                    },
                )
            return
        self._write(actor, action, entity_type, entity_id, period, old, new, context)

    def record_pending(
        self,
        actor: Actor | None,
        pending: Iterable[PendingAudit],
        context: AuditContext | None = None,
    ) -> None:
        """Record everything a committed transaction owed, in order."""
        for item in pending:
            self.record(
                actor=actor,
                action=item.action,
                entity_type=item.entity_type,
                entity_id=item.entity_id,
                period=item.period,
                old=item.old,
                new=item.new,
                context=item.context or context,
            )

    def _write(
        self,
        actor: Actor | None,
        action: AuditAction | str,
        entity_type: AuditEntityType | str,
        entity_id: int | None,
        period: str | None,
        old: Mapping[str, Any] | None,
        new: Mapping[str, Any] | None,
        context: AuditContext | None,
    ) -> None:
        actor = actor or SYSTEM_ACTOR
        action_value = str(getattr(action, "value", action))
        entity_type_value = str(getattr(entity_type, "value", entity_type))
        try:
            old_data = json_safe(old) if old is not None else None
            new_data = json_safe(new) if new is not None else None
            record = AuditRecord(
                actor_id=actor.id,
                actor_name=actor.name,
                action=action_value,
                entity_type=entity_type_value,
                entity_id=entity_id,
                period=period,
                old_data=old_data,
                new_data=new_data,
                diff=compute_diff(old_data, new_data),
                context=json_safe(context.as_dict()) if context is not None else None,
                created_at=self._clock.now(),
            )
            with self._session_factory() as session, session.begin():
                session.add(record)
        except Exception:
            logger.error(
                "audit_record_failed",
                exc_info=True,
                extra={
                    "action": action_value,
                    "entity_type": entity_type_value,
                    "entity_id": entity_id,
                    "actor_id": actor.id,
                },
            )
            return

        logger.debug(
            "audit_recorded",
            extra={
                "action": action_value,
                "entity_type": entity_type_value,
                "entity_id": entity_id,
            },
        )
