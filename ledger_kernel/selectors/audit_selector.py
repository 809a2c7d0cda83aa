"""
Module: ledger_kernel.selectors.audit_selector
Responsibility: Read-only, filtered and paginated queries over the audit
    trail.
Architecture position: Kernel > Selectors.  May import from models/ and
    selectors/base.py.  MUST NOT import from services/.

Invariants enforced:
    - Read-only: the audit trail has no update or delete path anywhere.
    - Newest first: created_at desc, id desc.
    - Page size is capped at 200.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ledger_kernel.models.audit_record import AuditAction, AuditEntityType, AuditRecord
from ledger_kernel.selectors.base import BaseSelector, clamp_page
from ledger_kernel.settings import LedgerSettings

# Hard ceiling; settings may lower it, never raise it
AUDIT_PAGE_CAP = 200


@dataclass(frozen=True)
class AuditRecordDTO:
    id: int
    actor_id: int | None
    actor_name: str | None
    action: str
    entity_type: str
    entity_id: int | None
    period: str | None
    old_data: dict[str, Any] | None
    new_data: dict[str, Any] | None
    diff: dict[str, Any] | None
    context: dict[str, Any] | None
    created_at: datetime


@dataclass(frozen=True)
class AuditFilter:
    """
    Audit query filter.  Unset fields do not filter.

    date_from/date_to are inclusive calendar days in UTC.
    """

    entity_type: AuditEntityType | str | None = None
    entity_id: int | None = None
    action: AuditAction | str | None = None
    actor_id: int | None = None
    period: str | None = None
    date_from: date | None = None
    date_to: date | None = None
    page: int | None = None
    page_size: int | None = None


@dataclass(frozen=True)
class AuditPage:
    items: tuple[AuditRecordDTO, ...]
    page: int
    page_size: int
    total: int


def _value(member: Any) -> Any:
    return getattr(member, "value", member)


class AuditSelector(BaseSelector):
    """Selector for audit trail queries."""

    def __init__(self, session: Session, settings: LedgerSettings | None = None):
        super().__init__(session)
        self._default_size = settings.audit_default_page_size if settings else 50
        self._max_size = (
            min(settings.audit_max_page_size, AUDIT_PAGE_CAP) if settings else AUDIT_PAGE_CAP
        )

    def search(self, filters: AuditFilter | None = None) -> AuditPage:
        filters = filters or AuditFilter()
        page, page_size = clamp_page(
            filters.page, filters.page_size, self._default_size, self._max_size
        )

        conditions = []
        if filters.entity_type is not None:
            conditions.append(AuditRecord.entity_type == _value(filters.entity_type))
        if filters.entity_id is not None:
            conditions.append(AuditRecord.entity_id == filters.entity_id)
        if filters.action is not None:
            conditions.append(AuditRecord.action == _value(filters.action))
        if filters.actor_id is not None:
            conditions.append(AuditRecord.actor_id == filters.actor_id)
        if filters.period is not None:
            conditions.append(AuditRecord.period == filters.period)
        if filters.date_from is not None:
            start = datetime.combine(filters.date_from, time.min, tzinfo=timezone.utc)
            conditions.append(AuditRecord.created_at >= start)
        if filters.date_to is not None:
            end = datetime.combine(
                filters.date_to + timedelta(days=1), time.min, tzinfo=timezone.utc
            )
            conditions.append(AuditRecord.created_at < end)

        total = self.session.execute(
            select(func.count(AuditRecord.id)).where(*conditions)
        ).scalar_one()

        records = self.session.execute(
            select(AuditRecord)
            .where(*conditions)
            .order_by(AuditRecord.created_at.desc(), AuditRecord.id.desc())
            .limit(page_size)
            .offset((page - 1) * page_size)
        ).scalars().all()

        return AuditPage(
            items=tuple(self._to_dto(record) for record in records),
            page=page,
            page_size=page_size,
            total=total,
        )

    def for_entity(
        self,
        entity_type: AuditEntityType | str,
        entity_id: int,
        limit: int = 100,
    ) -> list[AuditRecordDTO]:
        return list(
            self.search(
                AuditFilter(entity_type=entity_type, entity_id=entity_id, page_size=limit)
            ).items
        )

    def for_period(self, period: str, limit: int = 200) -> list[AuditRecordDTO]:
        return list(self.search(AuditFilter(period=period, page_size=limit)).items)

    def for_actor(self, actor_id: int, limit: int = 200) -> list[AuditRecordDTO]:
        return list(self.search(AuditFilter(actor_id=actor_id, page_size=limit)).items)

    @staticmethod
    def _to_dto(record: AuditRecord) -> AuditRecordDTO:
        return AuditRecordDTO(
            id=record.id,
            actor_id=record.actor_id,
            actor_name=record.actor_name,
            action=record.action,
            entity_type=record.entity_type,
            entity_id=record.entity_id,
            period=record.period,
            old_data=record.old_data,
            new_data=record.new_data,
            diff=record.diff,
            context=record.context,
            created_at=record.created_at,
        )
