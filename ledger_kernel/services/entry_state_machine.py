"""
LedgerEntryStateMachine -- the sole writer of ledger entries and postings.

Responsibility:
    Creates, edits, posts, returns to draft, reverses and deletes ledger
    entries.  Each operation is one all-or-nothing transaction; each
    declares its audit records through a UnitOfWork and hands them to the
    AuditRecorder once the transaction has committed.

Architecture position:
    Kernel > Services -- imperative shell.
    Calls EntryNumberAllocator (create, reverse), the LedgerEntry
    aggregate's transition methods, and AuditRecorder.  Read paths live in
    selectors/.

Invariants enforced:
    - Only drafts are edited or deleted; status moves only along the
      lifecycle table.  Rejections raise InvalidStateError and change
      nothing.
    - post() requires |sum(debit) - sum(credit)| <= 0.01.
    - A reversal entry and the original's status change commit together.
    - Writers on the same entry serialize on its row lock
      (SELECT ... FOR UPDATE on PostgreSQL).  Where row locks do not
      exist, the version check on ledger_entries rejects the stale writer,
      which re-reads the entry and tries again.
    - Audit records are written only for committed operations, and a
      failing audit write never undoes or fails the operation.

Failure modes:
    - EntryNotFoundError: unknown entry id.
    - InvalidStateError: operation not allowed from the current status.
    - UnbalancedEntryError: post() on an unbalanced draft.
    - ValidationError: malformed header or posting input.
    - AllocationExhaustedError: entry number contention outlasted retries.
    - OptimisticLockError: the entry kept changing under every retry.

Usage:
    machine = LedgerEntryStateMachine(session_factory, clock=clock)
    entry = machine.create(
        {"description": "Rent", "date": "2025-01-31"},
        [{"account_id": 6100, "debit": "1200"},
         {"account_id": 1010, "credit": "1200"}],
        actor=Actor(id=7, name="ana"),
    )
    machine.post(entry.id, actor=Actor(id=7, name="ana"))
"""

from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from ledger_kernel.domain.accounts import AccountDirectory
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.dtos import (
    Actor,
    AuditContext,
    EntryHeader,
    HeaderUpdate,
    LedgerEntryDTO,
    PostingSpec,
    ReversalResult,
    coerce_postings,
)
from ledger_kernel.domain.lifecycle import EntryAction, EntryStatus, resolve_transition
from ledger_kernel.exceptions import (
    EntryNotFoundError,
    LedgerKernelError,
    OptimisticLockError,
    UnbalancedEntryError,
)
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.models.audit_record import AuditAction, AuditEntityType
from ledger_kernel.models.journal import LedgerEntry
from ledger_kernel.services.audit_recorder import AuditRecorder
from ledger_kernel.services.base import UnitOfWork
from ledger_kernel.services.entry_number_allocator import EntryNumberAllocator
from ledger_kernel.settings import LedgerSettings

logger = get_logger("services.entry_state_machine")

HeaderInput = EntryHeader | Mapping[str, Any] | None
PostingsInput = Iterable[PostingSpec | Mapping[str, Any]]

# Attempts per operation when another writer changed the entry first
STALE_WRITE_ATTEMPTS = 3

_COMMITTED_EVENTS = {
    "update": "entry_updated",
    "remove": "entry_deleted",
    "post": "entry_posted",
    "return_to_draft": "entry_returned_to_draft",
}


class LedgerEntryStateMachine:
    """
    Lifecycle operations on ledger entries.

    Contract:
        Every public method opens its own transaction through
        ``session_factory``, commits it before returning, and returns
        frozen DTOs, never ORM rows.  ``actor`` and ``context`` are
        supplied by the calling layer and only flow into the audit trail
        and the log context.

        Without an explicit ``audit_recorder`` the machine writes audits on
        its own single worker thread, so no operation waits for the audit
        store.  ``close()`` (or leaving a ``with`` block) drains that queue.

    Non-goals:
        - Does NOT validate account ids against the chart of accounts.
        - Does NOT authorize the actor.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        audit_recorder: AuditRecorder | None = None,
        allocator: EntryNumberAllocator | None = None,
        clock: Clock | None = None,
        accounts: AccountDirectory | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        # Owned only when no recorder is supplied; close() drains it
        self._audit_executor: ThreadPoolExecutor | None = None
        if audit_recorder is None:
            self._audit_executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="ledger-audit"
            )
            audit_recorder = AuditRecorder(
                session_factory, self._clock, executor=self._audit_executor
            )
        self._audit = audit_recorder
        self._allocator = allocator or EntryNumberAllocator()
        self._accounts = accounts

    @classmethod
    def from_settings(
        cls,
        settings: LedgerSettings,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
        accounts: AccountDirectory | None = None,
    ) -> "LedgerEntryStateMachine":
        return cls(
            session_factory,
            allocator=EntryNumberAllocator(max_attempts=settings.allocation_max_attempts),
            clock=clock,
            accounts=accounts,
        )

    def close(self) -> None:
        """Wait for queued audit writes and stop the owned audit worker."""
        if self._audit_executor is not None:
            self._audit_executor.shutdown(wait=True)

    def __enter__(self) -> "LedgerEntryStateMachine":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(
        self,
        header: HeaderInput,
        postings: PostingsInput = (),
        *,
        actor: Actor | None = None,
        context: AuditContext | None = None,
    ) -> LedgerEntryDTO:
        """
        Create a draft with the smallest unused entry number.

        Drafts are not balance-checked.  A missing date means the clock's
        today.

        Raises:
            ValidationError: Malformed header or postings.
            AllocationExhaustedError: Numbering contention outlasted retries.
        """
        if not isinstance(header, EntryHeader):
            header = EntryHeader.from_mapping(header or {})
        specs = coerce_postings(postings)
        entry_date = header.date or self._clock.today()

        def work(session: Session, number: int):
            uow = UnitOfWork(session, context)
            entry = LedgerEntry.new_draft(number, header, specs, entry_date)
            session.add(entry)
            session.flush()
            uow.audit(
                AuditAction.CREATE,
                AuditEntityType.JOURNAL_ENTRY,
                entry.id,
                entry.period,
                old=None,
                new=entry.snapshot(),
            )
            uow.seal()
            return entry.to_dto(self._accounts), uow.pending

        with self._log_context(actor, context):
            try:
                entry, pending = self._allocator.run_with_number(self._session_factory, work)
            except LedgerKernelError:
                raise
            except Exception:
                self._log_rollback("create")
                raise
            logger.info(
                "entry_created",
                extra={
                    "entry_id": entry.id,
                    "entry_number": entry.entry_number,
                    "period": entry.period,
                    "postings_count": len(entry.postings),
                },
            )
        self._audit.record_pending(actor, pending)
        return entry

    # ------------------------------------------------------------------
    # Draft edits
    # ------------------------------------------------------------------

    def update(
        self,
        entry_id: int,
        header: HeaderUpdate | Mapping[str, Any] | None = None,
        postings: PostingsInput | None = None,
        *,
        actor: Actor | None = None,
        context: AuditContext | None = None,
    ) -> LedgerEntryDTO:
        """
        Edit a draft's header and/or replace its entire posting set.

        ``postings=None`` keeps the current lines; any other value,
        including an empty list, replaces all of them.

        Raises:
            EntryNotFoundError, InvalidStateError, ValidationError.
        """
        if header is not None and not isinstance(header, HeaderUpdate):
            header = HeaderUpdate.from_mapping(header)
        specs = coerce_postings(postings) if postings is not None else None

        def work(uow: UnitOfWork, entry: LedgerEntry) -> None:
            before = entry.snapshot()
            entry.update(header, specs).unwrap()
            uow.audit(
                AuditAction.UPDATE,
                AuditEntityType.JOURNAL_ENTRY,
                entry.id,
                entry.period,
                old=before,
                new=entry.snapshot(),
            )

        return self._mutate("update", entry_id, actor, context, work)

    def remove(
        self,
        entry_id: int,
        *,
        actor: Actor | None = None,
        context: AuditContext | None = None,
    ) -> None:
        """
        Delete a draft with its postings, freeing its entry number.

        Raises:
            EntryNotFoundError, InvalidStateError.
        """

        def work(uow: UnitOfWork, entry: LedgerEntry) -> None:
            entry.check_deletable().unwrap()
            before = entry.snapshot()
            uow.session.delete(entry)
            uow.audit(
                AuditAction.DELETE,
                AuditEntityType.JOURNAL_ENTRY,
                entry.id,
                entry.period,
                old=before,
                new=None,
            )

        self._mutate("remove", entry_id, actor, context, work, returns_entry=False)

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def post(
        self,
        entry_id: int,
        *,
        actor: Actor | None = None,
        context: AuditContext | None = None,
    ) -> LedgerEntryDTO:
        """
        draft -> posted.

        Raises:
            EntryNotFoundError, InvalidStateError.
            UnbalancedEntryError: debit and credit totals differ by more
                than the tolerance; the entry stays a draft.
        """
        now = self._clock.now()

        def work(uow: UnitOfWork, entry: LedgerEntry) -> None:
            outcome = entry.post(now)
            if not outcome.success and isinstance(outcome.error, UnbalancedEntryError):
                logger.warning(
                    "entry_post_rejected_unbalanced",
                    extra={
                        "entry_id": entry.id,
                        "debit_total": outcome.error.debit_total,
                        "credit_total": outcome.error.credit_total,
                        "difference": outcome.error.difference,
                    },
                )
            outcome.unwrap()
            uow.audit(
                AuditAction.POST,
                AuditEntityType.JOURNAL_ENTRY,
                entry.id,
                entry.period,
                old={"status": EntryStatus.DRAFT.value},
                new={"status": EntryStatus.POSTED.value, "posted_at": now},
            )

        return self._mutate("post", entry_id, actor, context, work)

    def return_to_draft(
        self,
        entry_id: int,
        *,
        actor: Actor | None = None,
        context: AuditContext | None = None,
    ) -> LedgerEntryDTO:
        """posted -> draft.  The audit record is the only trace of the posting."""

        def work(uow: UnitOfWork, entry: LedgerEntry) -> None:
            posted_at = entry.posted_at
            entry.return_to_draft().unwrap()
            uow.audit(
                AuditAction.RETURN_TO_DRAFT,
                AuditEntityType.JOURNAL_ENTRY,
                entry.id,
                entry.period,
                old={"status": EntryStatus.POSTED.value, "posted_at": posted_at},
                new={"status": EntryStatus.DRAFT.value, "posted_at": None},
            )

        return self._mutate("return_to_draft", entry_id, actor, context, work)

    def reverse(
        self,
        entry_id: int,
        reason: str | None = None,
        *,
        actor: Actor | None = None,
        context: AuditContext | None = None,
    ) -> ReversalResult:
        """
        posted -> reversed, plus a new posted entry with debit/credit swapped.

        The reversal is dated today, links back through
        reference_type="reversal" / reference_id=<original id>, and keeps
        the original's branch.  Both rows commit in one transaction.

        Raises:
            EntryNotFoundError, InvalidStateError, AllocationExhaustedError.
        """
        now = self._clock.now()
        base_context = context or AuditContext()

        def work(session: Session, number: int):
            uow = UnitOfWork(session, base_context)
            original = self._lock_entry(session, entry_id)
            resolve_transition(original.status, EntryAction.REVERSE, original.id).unwrap()

            reversal = LedgerEntry.new_reversal(original, number, now)
            session.add(reversal)
            original.mark_reversed().unwrap()
            session.flush()

            uow.audit(
                AuditAction.REVERSE,
                AuditEntityType.JOURNAL_ENTRY,
                original.id,
                original.period,
                old={"status": EntryStatus.POSTED.value},
                new={"status": EntryStatus.REVERSED.value},
                context=base_context.with_details(
                    reversal_id=reversal.id,
                    reversal_number=reversal.entry_number,
                    reason=reason,
                ),
            )
            uow.audit(
                AuditAction.CREATE,
                AuditEntityType.JOURNAL_ENTRY,
                reversal.id,
                reversal.period,
                old=None,
                new=reversal.snapshot(),
                context=replace(base_context, source="reversal").with_details(
                    original_id=original.id,
                    original_number=original.entry_number,
                    reason=reason,
                ),
            )
            uow.seal()
            result = ReversalResult(
                original=original.to_dto(self._accounts),
                reversal=reversal.to_dto(self._accounts),
            )
            return result, uow.pending

        with self._log_context(actor, context, entry_id):
            try:
                result, pending = self._retry_stale(
                    "reverse",
                    entry_id,
                    lambda: self._allocator.run_with_number(self._session_factory, work),
                )
            except LedgerKernelError as exc:
                self._log_rejection("reverse", entry_id, exc)
                raise
            except Exception:
                self._log_rollback("reverse")
                raise
            logger.info(
                "entry_reversed",
                extra={
                    "entry_id": result.original.id,
                    "entry_number": result.original.entry_number,
                    "reversal_id": result.reversal.id,
                    "reversal_number": result.reversal.entry_number,
                },
            )
        self._audit.record_pending(actor, pending)
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _mutate(
        self,
        operation: str,
        entry_id: int,
        actor: Actor | None,
        context: AuditContext | None,
        work: Callable[[UnitOfWork, LedgerEntry], None],
        returns_entry: bool = True,
    ) -> LedgerEntryDTO | None:
        """Lock the entry, apply ``work``, commit, then write the audit."""

        def attempt() -> tuple[LedgerEntryDTO | None, UnitOfWork]:
            session = self._session_factory()
            try:
                with session.begin():
                    uow = UnitOfWork(session, context)
                    entry = self._lock_entry(session, entry_id)
                    work(uow, entry)
                    uow.seal()
                    dto = entry.to_dto(self._accounts) if returns_entry else None
            finally:
                session.close()
            return dto, uow

        with self._log_context(actor, context, entry_id):
            try:
                dto, uow = self._retry_stale(operation, entry_id, attempt)
            except LedgerKernelError as exc:
                self._log_rejection(operation, entry_id, exc)
                raise
            except Exception:
                self._log_rollback(operation)
                raise

            logger.info(
                _COMMITTED_EVENTS[operation],
                extra={
                    "entry_id": entry_id,
                    "status": dto.status.value if dto is not None else None,
                },
            )
        self._audit.record_pending(actor, uow.pending)
        return dto

    @staticmethod
    def _retry_stale(operation: str, entry_id: int, run: Callable[[], Any]) -> Any:
        """
        Re-run ``run`` when its flush found the entry changed underneath it.

        Row locks serialize same-entry writers where the database has them.
        Elsewhere the version check on ledger_entries catches the loser,
        and the fresh attempt re-reads the entry and re-checks the
        transition.
        """
        for attempt in range(1, STALE_WRITE_ATTEMPTS + 1):
            try:
                return run()
            except StaleDataError:
                logger.warning(
                    "entry_concurrent_modification_retry",
                    extra={
                        "operation": operation,
                        "entry_id": entry_id,
                        "attempt": attempt,
                        "max_attempts": STALE_WRITE_ATTEMPTS,
                    },
                )
        raise OptimisticLockError("journal_entry", entry_id, STALE_WRITE_ATTEMPTS)

    @staticmethod
    def _lock_entry(session: Session, entry_id: int) -> LedgerEntry:
        entry = session.execute(
            select(LedgerEntry)
            .where(LedgerEntry.id == entry_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if entry is None:
            raise EntryNotFoundError(entry_id)
        return entry

    @staticmethod
    def _log_rejection(operation: str, entry_id: int, exc: LedgerKernelError) -> None:
        logger.info(
            "entry_operation_rejected",
            extra={"operation": operation, "entry_id": entry_id, "error_code": exc.code},
        )

    @staticmethod
    def _log_rollback(operation: str) -> None:
        # entry_id, when known, comes from the bound log context
        logger.warning("transaction_rolled_back", extra={"operation": operation}, exc_info=True)

    @staticmethod
    def _log_context(
        actor: Actor | None,
        context: AuditContext | None,
        entry_id: int | None = None,
    ):
        return LogContext.bind(
            actor_id=actor.id if actor is not None else None,
            entry_id=entry_id,
            request_ip=context.ip_address if context is not None else None,
        )
