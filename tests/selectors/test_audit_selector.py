"""AuditSelector: filtered, paginated, newest-first audit queries."""

from datetime import date, datetime, timezone

import pytest

from ledger_kernel.domain.dtos import Actor
from ledger_kernel.exceptions import ValidationError
from ledger_kernel.models.audit_record import AuditAction, AuditEntityType
from ledger_kernel.selectors.audit_selector import AuditFilter, AuditSelector
from ledger_kernel.services.audit_recorder import AuditRecorder
from ledger_kernel.settings import LedgerSettings
from tests.helpers import TEST_ACTOR, TEST_CONTEXT

OTHER_ACTOR = Actor(id=99, name="auditor")


@pytest.fixture
def audits(session):
    return AuditSelector(session)


@pytest.fixture
def history(machine, create_entry, deterministic_clock):
    """create, post, reverse on one entry; a second entry by another actor."""
    first = create_entry()
    deterministic_clock.advance(60)
    machine.post(first.id, actor=TEST_ACTOR, context=TEST_CONTEXT)
    deterministic_clock.advance(60)
    result = machine.reverse(first.id, actor=TEST_ACTOR)
    deterministic_clock.advance(60)
    second = machine.create(
        {"date": date(2025, 2, 1)},
        [{"account_id": 1010, "debit": "1"}, {"account_id": 4000, "credit": "1"}],
        actor=OTHER_ACTOR,
    )
    return {"first": first, "reversal": result.reversal, "second": second}


class TestSearch:
    def test_newest_first(self, audits, history):
        page = audits.search()
        assert [r.action for r in page.items] == ["create", "create", "reverse", "post", "create"]
        assert page.total == 5
        assert page.page_size == 50

    def test_by_entity(self, audits, history):
        records = audits.for_entity(AuditEntityType.JOURNAL_ENTRY, history["first"].id)
        assert [r.action for r in records] == ["reverse", "post", "create"]

    def test_by_action(self, audits, history):
        page = audits.search(AuditFilter(action=AuditAction.CREATE))
        assert {r.entity_id for r in page.items} == {
            history["first"].id,
            history["reversal"].id,
            history["second"].id,
        }

    def test_action_as_plain_string(self, audits, history):
        assert audits.search(AuditFilter(action="post")).total == 1

    def test_by_actor(self, audits, history):
        records = audits.for_actor(OTHER_ACTOR.id)
        assert [(r.actor_name, r.entity_id) for r in records] == [("auditor", history["second"].id)]

    def test_by_period(self, audits, history):
        records = audits.for_period("2025-02")
        assert [r.entity_id for r in records] == [history["second"].id]

    def test_date_range_is_inclusive_days(self, session_factory, deterministic_clock, audits):
        recorder = AuditRecorder(session_factory, deterministic_clock)
        for day in (9, 10, 11, 12):
            deterministic_clock.set_time(datetime(2025, 3, day, 23, 59, tzinfo=timezone.utc))
            recorder.record(TEST_ACTOR, AuditAction.POST, AuditEntityType.JOURNAL_ENTRY, day)

        page = audits.search(AuditFilter(date_from=date(2025, 3, 10), date_to=date(2025, 3, 11)))
        assert [r.entity_id for r in page.items] == [11, 10]

    def test_pagination_and_cap(self, audits, history):
        page = audits.search(AuditFilter(page=2, page_size=2))
        assert [r.action for r in page.items] == ["reverse", "post"]
        assert page.total == 5
        assert audits.search(AuditFilter(page_size=1000)).page_size == 200

    def test_configured_cap_cannot_exceed_hard_limit(self, session, history):
        settings = LedgerSettings(database_url="sqlite://", audit_max_page_size=1000)
        audits = AuditSelector(session, settings=settings)
        assert audits.search(AuditFilter(page_size=1000)).page_size == 200
        assert len(audits.search(AuditFilter(page_size=1000)).items) == 5

    def test_bad_page(self, audits):
        with pytest.raises(ValidationError):
            audits.search(AuditFilter(page=0))

    def test_dto_carries_snapshots(self, audits, history):
        (post_record,) = audits.search(AuditFilter(action="post")).items
        assert post_record.old_data == {"status": "draft"}
        assert post_record.diff["modified"][0]["field"] == "status"
        assert post_record.context["ip_address"] == TEST_CONTEXT.ip_address
