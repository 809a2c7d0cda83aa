"""
Module: ledger_kernel.models.audit_record
Responsibility: ORM persistence for the append-only audit trail.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Audit records are append-only; UPDATE and DELETE are refused by the
      ORM listeners in db/immutability.py.
    - Every mutation of a ledger entry produces at least one record
      (create, update, delete, post, return_to_draft, reverse).

Audit relevance:
    AuditRecord IS the audit trail.  It is also the only trace left when a
    posted entry is returned to draft.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, BigInteger, DateTime, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import Base


class AuditAction(str, Enum):
    """Types of auditable actions."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    POST = "post"
    REVERSE = "reverse"
    RETURN_TO_DRAFT = "return_to_draft"


class AuditEntityType(str, Enum):
    JOURNAL_ENTRY = "journal_entry"
    JOURNAL_POSTING = "journal_posting"


class AuditRecord(Base):
    """
    One audited mutation.

    old_data/new_data are JSON snapshots of the entity before and after;
    diff is compute_diff(old_data, new_data) and may be null when the
    action changed nothing the snapshots capture.
    """

    __tablename__ = "audit_records"

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_action", "action"),
        Index("idx_audit_actor", "actor_id"),
        Index("idx_audit_period", "period"),
        Index("idx_audit_created", "created_at"),
    )

    __mapper_args__ = {"eager_defaults": True}

    # Who performed the action
    actor_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    actor_name: Mapped[str | None] = mapped_column(String(200), nullable=True)

    action: Mapped[str] = mapped_column(String(50), nullable=False)

    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # YYYY-MM of the audited entry
    period: Mapped[str | None] = mapped_column(String(7), nullable=True)

    old_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    new_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    diff: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    # Request origin: ip_address, user_agent, source, details
    context: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<AuditRecord {self.action} on {self.entity_type}:{self.entity_id}>"
