"""
Entry number allocation.

Races are simulated deterministically by an allocator that proposes a
number another transaction already holds; the real multi-thread race lives
in tests/concurrency/.
"""

from datetime import date

import pytest
from sqlalchemy.exc import IntegrityError

from ledger_kernel.domain.dtos import EntryHeader
from ledger_kernel.exceptions import AllocationExhaustedError
from ledger_kernel.models.journal import LedgerEntry
from ledger_kernel.services.entry_number_allocator import (
    EntryNumberAllocator,
    first_unused,
    is_entry_number_conflict,
)
from ledger_kernel.services.entry_state_machine import LedgerEntryStateMachine
from tests.helpers import TEST_ACTOR


class StaleAllocator(EntryNumberAllocator):
    """Proposes ``stale`` for the first ``stale_times`` attempts."""

    def __init__(self, stale: int, stale_times: int, max_attempts: int = 5):
        super().__init__(max_attempts=max_attempts)
        self.stale = stale
        self.stale_times = stale_times
        self.proposals: list[int] = []

    def allocate(self, session):
        if len(self.proposals) < self.stale_times:
            number = self.stale
        else:
            number = super().allocate(session)
        self.proposals.append(number)
        return number


def _insert(session, number):
    entry = LedgerEntry.new_draft(number, EntryHeader(description="raw"), (), date(2025, 1, 1))
    session.add(entry)
    session.flush()
    return entry.entry_number


class TestFirstUnused:
    @pytest.mark.parametrize(
        "numbers, expected",
        [
            ([], 1),
            ([1, 2, 3], 4),
            ([1, 3], 2),
            ([2, 3], 1),
            ([1, 2, 4, 5, 7], 3),
        ],
    )
    def test_smallest_gap(self, numbers, expected):
        assert first_unused(numbers) == expected


class TestAllocate:
    def test_reads_existing_numbers(self, session_factory):
        allocator = EntryNumberAllocator()
        for number in (1, 2, 4):
            allocator.run_with_number(session_factory, lambda s, _n, number=number: _insert(s, number))
        with session_factory() as s:
            assert allocator.allocate(s) == 3

    def test_run_with_number_commits_work(self, session_factory):
        allocator = EntryNumberAllocator()
        assert allocator.run_with_number(session_factory, _insert) == 1
        assert allocator.run_with_number(session_factory, _insert) == 2

    def test_max_attempts_must_be_positive(self):
        with pytest.raises(ValueError):
            EntryNumberAllocator(max_attempts=0)


class TestConflictRetry:
    def test_lost_race_retries_with_fresh_scan(self, session_factory, captured_logs):
        EntryNumberAllocator().run_with_number(session_factory, _insert)

        allocator = StaleAllocator(stale=1, stale_times=1)
        assert allocator.run_with_number(session_factory, _insert) == 2
        assert allocator.proposals == [1, 2]

        retries = [r for r in captured_logs() if r["message"] == "entry_number_conflict_retry"]
        assert len(retries) == 1
        assert retries[0]["attempt"] == 1
        assert retries[0]["entry_number"] == 1

    def test_failed_attempt_leaves_nothing_behind(self, session_factory, machine, deterministic_clock):
        machine.create({"date": date(2025, 1, 3)}, actor=TEST_ACTOR)
        with LedgerEntryStateMachine(
            session_factory,
            allocator=StaleAllocator(stale=1, stale_times=2),
            clock=deterministic_clock,
        ) as racing:
            entry = racing.create({"description": "after two losses"}, actor=TEST_ACTOR)
        assert entry.entry_number == 2
        with session_factory() as s:
            assert s.query(LedgerEntry).count() == 2

    def test_exhaustion(self, session_factory, captured_logs):
        EntryNumberAllocator().run_with_number(session_factory, _insert)
        allocator = StaleAllocator(stale=1, stale_times=10, max_attempts=3)

        with pytest.raises(AllocationExhaustedError) as exc_info:
            allocator.run_with_number(session_factory, _insert)

        assert exc_info.value.attempts == 3
        assert exc_info.value.last_number == 1
        assert exc_info.value.code == "ALLOCATION_EXHAUSTED"
        assert allocator.proposals == [1, 1, 1]
        assert any(r["message"] == "entry_number_allocation_exhausted" for r in captured_logs())

    def test_other_integrity_errors_propagate(self, session_factory):
        def bad_work(session, number):
            entry = LedgerEntry.new_draft(number, EntryHeader(), (), date(2025, 1, 1))
            entry.period = None
            session.add(entry)
            session.flush()

        allocator = StaleAllocator(stale=1, stale_times=0)
        with pytest.raises(IntegrityError) as exc_info:
            allocator.run_with_number(session_factory, bad_work)
        assert not is_entry_number_conflict(exc_info.value)
        assert len(allocator.proposals) == 1
