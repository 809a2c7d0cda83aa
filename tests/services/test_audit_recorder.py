"""
Audit trail tests.

Covers:
- One record per committed operation, with snapshots, diff and context
- Rejected operations leave no audit record
- A failing audit write never fails the business operation
- A slow audit store never delays the business operation
- Audit records are append-only at the ORM level
- A mutation that declares no audit cannot commit
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date

import pytest
from sqlalchemy import event, select

from ledger_kernel.domain.dtos import Actor
from ledger_kernel.domain.lifecycle import EntryStatus
from ledger_kernel.exceptions import ImmutabilityViolationError, InvalidStateError
from ledger_kernel.models.audit_record import AuditAction, AuditEntityType, AuditRecord
from ledger_kernel.models.journal import LedgerEntry
from ledger_kernel.services.audit_recorder import AuditRecorder, PendingAudit
from ledger_kernel.services.base import UnitOfWork
from ledger_kernel.services.entry_state_machine import LedgerEntryStateMachine
from ledger_kernel.settings import LedgerSettings
from tests.helpers import TEST_ACTOR, TEST_CONTEXT, balanced_postings


class TestOperationAudits:
    def test_create_records_full_snapshot(self, create_entry, audit_rows):
        entry = create_entry(description="Rent", amount="1200")

        (record,) = audit_rows()
        assert record.action == "create"
        assert record.entity_type == "journal_entry"
        assert record.entity_id == entry.id
        assert record.period == "2025-01"
        assert record.actor_id == TEST_ACTOR.id
        assert record.actor_name == TEST_ACTOR.name
        assert record.old_data is None
        assert record.new_data["description"] == "Rent"
        assert record.new_data["status"] == "draft"
        assert record.new_data["date"] == "2025-01-10"
        assert record.new_data["total_debit"] == "1200"
        assert record.new_data["postings_count"] == 2
        assert record.diff["type"] == "created"
        assert record.context["ip_address"] == TEST_CONTEXT.ip_address
        assert record.context["user_agent"] == "pytest"

    def test_update_records_before_and_after(self, machine, create_entry, audit_rows):
        entry = create_entry(description="Old")
        machine.update(entry.id, {"description": "New"}, actor=TEST_ACTOR)

        record = audit_rows()[-1]
        assert record.action == "update"
        assert record.old_data["description"] == "Old"
        assert record.new_data["description"] == "New"
        assert record.diff["modified"] == [{"field": "description", "from": "Old", "to": "New"}]

    def test_noop_update_is_still_recorded(self, machine, create_entry, audit_rows):
        entry = create_entry(description="Same")
        machine.update(entry.id, {"description": "Same"}, actor=TEST_ACTOR)

        record = audit_rows()[-1]
        assert record.action == "update"
        assert record.diff is None

    def test_post_and_return_to_draft(self, machine, create_entry, audit_rows, deterministic_clock):
        entry = create_entry()
        machine.post(entry.id, actor=TEST_ACTOR)
        machine.return_to_draft(entry.id, actor=TEST_ACTOR)

        post_record, return_record = audit_rows()[-2:]
        assert post_record.action == "post"
        assert post_record.old_data == {"status": "draft"}
        assert post_record.new_data == {
            "status": "posted",
            "posted_at": deterministic_clock.now().isoformat(),
        }
        assert return_record.action == "return_to_draft"
        assert return_record.new_data == {"status": "draft", "posted_at": None}

    def test_delete_records_old_snapshot(self, machine, create_entry, audit_rows):
        entry = create_entry(description="Scratch")
        machine.remove(entry.id, actor=TEST_ACTOR)

        record = audit_rows()[-1]
        assert record.action == "delete"
        assert record.entity_id == entry.id
        assert record.old_data["description"] == "Scratch"
        assert record.new_data is None
        assert record.diff["type"] == "deleted"

    def test_reverse_records_both_entries(self, machine, posted_entry, audit_rows):
        original = posted_entry()
        result = machine.reverse(original.id, reason="duplicate", actor=TEST_ACTOR, context=TEST_CONTEXT)

        reverse_record, create_record = audit_rows()[-2:]
        assert reverse_record.action == "reverse"
        assert reverse_record.entity_id == original.id
        assert reverse_record.old_data == {"status": "posted"}
        assert reverse_record.new_data == {"status": "reversed"}
        assert reverse_record.context["details"] == {
            "reversal_id": result.reversal.id,
            "reversal_number": result.reversal.entry_number,
            "reason": "duplicate",
        }

        assert create_record.action == "create"
        assert create_record.entity_id == result.reversal.id
        assert create_record.context["source"] == "reversal"
        assert create_record.context["details"]["original_id"] == original.id
        assert create_record.new_data["reference_type"] == "reversal"

    def test_rejected_operation_writes_nothing(self, machine, create_entry, audit_rows):
        entry = create_entry()
        count = len(audit_rows())
        with pytest.raises(InvalidStateError):
            machine.reverse(entry.id, actor=TEST_ACTOR)
        assert len(audit_rows()) == count

    def test_missing_actor_is_recorded_as_system(self, machine, audit_rows):
        machine.create({"date": date(2025, 1, 2)})
        record = audit_rows()[-1]
        assert record.actor_id is None
        assert record.actor_name == "system"


class TestAuditFailureIsolation:
    def test_failed_write_is_logged_and_swallowed(self, session_factory, deterministic_clock, captured_logs):
        def broken_factory():
            raise RuntimeError("audit store unavailable")

        recorder = AuditRecorder(broken_factory, deterministic_clock)
        recorder.record(TEST_ACTOR, AuditAction.POST, AuditEntityType.JOURNAL_ENTRY, 1)

        failures = [r for r in captured_logs() if r["message"] == "audit_record_failed"]
        assert len(failures) == 1
        assert failures[0]["exc_message"] == "audit store unavailable"
        assert failures[0]["action"] == "post"

    def test_operation_commits_when_audit_fails(
        self, session_factory, deterministic_clock, accounts, audit_rows
    ):
        def broken_factory():
            raise RuntimeError("audit store unavailable")

        machine = LedgerEntryStateMachine(
            session_factory,
            audit_recorder=AuditRecorder(broken_factory, deterministic_clock),
            clock=deterministic_clock,
            accounts=accounts,
        )
        entry = machine.create(
            {"date": date(2025, 1, 10)},
            [{"account_id": 1010, "debit": "5"}, {"account_id": 4000, "credit": "5"}],
            actor=TEST_ACTOR,
        )
        posted = machine.post(entry.id, actor=TEST_ACTOR)

        assert posted.status == EntryStatus.POSTED
        with session_factory() as s:
            assert s.get(LedgerEntry, entry.id).status == EntryStatus.POSTED
        assert audit_rows() == []

    def test_executor_writes_off_thread(self, session_factory, deterministic_clock, audit_rows):
        with ThreadPoolExecutor(max_workers=1) as executor:
            recorder = AuditRecorder(session_factory, deterministic_clock, executor=executor)
            recorder.record_pending(
                Actor(id=3, name="bg"),
                [
                    PendingAudit(AuditAction.POST, AuditEntityType.JOURNAL_ENTRY, 1, "2025-01", None, {"status": "posted"}),
                    PendingAudit(AuditAction.POST, AuditEntityType.JOURNAL_ENTRY, 2, "2025-01", None, {"status": "posted"}),
                ],
            )
        assert [r.entity_id for r in audit_rows()] == [1, 2]

    def test_shut_down_executor_is_swallowed(self, session_factory, deterministic_clock, captured_logs):
        executor = ThreadPoolExecutor(max_workers=1)
        executor.shutdown()
        recorder = AuditRecorder(session_factory, deterministic_clock, executor=executor)

        recorder.record(TEST_ACTOR, AuditAction.CREATE, AuditEntityType.JOURNAL_ENTRY, 5)

        assert any(r["message"] == "audit_record_failed" for r in captured_logs())


class TestBackgroundAudit:
    """Machines built without a recorder write audits on their own worker."""

    @pytest.fixture
    def stalled_audit_store(self):
        """Hold every audit INSERT until the test releases it."""
        release = threading.Event()

        def wait_for_release(mapper, connection, target):
            release.wait(timeout=10)

        event.listen(AuditRecord, "before_insert", wait_for_release)
        yield release
        release.set()
        event.remove(AuditRecord, "before_insert", wait_for_release)

    def test_slow_audit_store_does_not_hold_up_operations(
        self, session_factory, deterministic_clock, audit_rows, stalled_audit_store
    ):
        settings = LedgerSettings(database_url="sqlite://")
        with LedgerEntryStateMachine.from_settings(
            settings, session_factory, clock=deterministic_clock
        ) as machine:
            entry = machine.create(
                {"date": date(2025, 1, 10)}, balanced_postings(), actor=TEST_ACTOR
            )
            posted = machine.post(entry.id, actor=TEST_ACTOR)

            assert posted.status == EntryStatus.POSTED
            assert audit_rows() == []

            stalled_audit_store.set()

        assert [r.action for r in audit_rows()] == ["create", "post"]

    def test_supplied_recorder_is_not_owned(self, machine, create_entry, audit_rows):
        create_entry()
        machine.close()
        # a supplied recorder writes inline and survives close()
        assert len(audit_rows()) == 1
        create_entry()
        assert len(audit_rows()) == 2


class TestAuditImmutability:
    def test_update_is_blocked(self, create_entry, session_factory):
        create_entry()
        with session_factory() as s:
            record = s.execute(select(AuditRecord)).scalar_one()
            record.actor_name = "someone else"
            with pytest.raises(ImmutabilityViolationError) as exc_info:
                s.commit()
        assert exc_info.value.code == "IMMUTABILITY_VIOLATION"

    def test_delete_is_blocked(self, create_entry, session_factory, audit_rows):
        create_entry()
        with session_factory() as s:
            record = s.execute(select(AuditRecord)).scalar_one()
            s.delete(record)
            with pytest.raises(ImmutabilityViolationError):
                s.commit()
        assert len(audit_rows()) == 1


class TestUnitOfWork:
    def test_mutation_without_audit_cannot_commit(self, create_entry, session_factory):
        entry = create_entry(description="Guarded")
        session = session_factory()
        try:
            with pytest.raises(RuntimeError, match="without an audit record"):
                with session.begin():
                    uow = UnitOfWork(session)
                    session.get(LedgerEntry, entry.id).description = "Sneaky"
                    uow.seal()
        finally:
            session.close()

        with session_factory() as s:
            assert s.get(LedgerEntry, entry.id).description == "Guarded"

    def test_read_only_unit_needs_no_audit(self, create_entry, session_factory):
        entry = create_entry()
        with session_factory() as s, s.begin():
            uow = UnitOfWork(s)
            s.get(LedgerEntry, entry.id)
            uow.seal()
        assert uow.pending == ()

    def test_audits_are_held_until_handed_over(self, create_entry, session_factory, audit_rows):
        entry = create_entry()
        count = len(audit_rows())
        with session_factory() as s, s.begin():
            uow = UnitOfWork(s, TEST_CONTEXT)
            s.get(LedgerEntry, entry.id).description = "Audited"
            uow.audit(AuditAction.UPDATE, AuditEntityType.JOURNAL_ENTRY, entry.id, "2025-01")
            uow.seal()
        assert len(audit_rows()) == count
        assert uow.pending[0].context is TEST_CONTEXT
