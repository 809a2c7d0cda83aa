"""
Typed exception hierarchy for the ledger kernel.

Callers catch by type, never by message text.  Every exception carries a
machine-readable ``code`` class attribute and keeps its context as plain
attributes so it survives logging and serialization intact.

    LedgerKernelError (base)
    |
    +-- NotFoundError
    |   +-- EntryNotFoundError
    |
    +-- EntryError
    |   +-- InvalidStateError
    |   +-- UnbalancedEntryError
    |
    +-- AllocationError
    |   +-- AllocationExhaustedError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |
    +-- ValidationError
    |
    +-- ImmutabilityViolationError

Category        | Code                  | When Raised
----------------|-----------------------|------------------------------------------
Lookup          | NOT_FOUND             | Entity id does not exist
                | ENTRY_NOT_FOUND       | Journal entry id does not exist
----------------|-----------------------|------------------------------------------
Lifecycle       | INVALID_STATE         | Operation not allowed from current status
                | UNBALANCED_ENTRY      | post() with |debit - credit| > 0.01
----------------|-----------------------|------------------------------------------
Numbering       | ALLOCATION_EXHAUSTED  | Entry number conflicts outlasted retries
----------------|-----------------------|------------------------------------------
Concurrency     | OPTIMISTIC_LOCK_CONFLICT | Entry kept changing under retried writes
----------------|-----------------------|------------------------------------------
Input           | VALIDATION_ERROR      | Malformed posting or header input
----------------|-----------------------|------------------------------------------
Audit           | IMMUTABILITY_VIOLATION| UPDATE or DELETE of an audit record
"""

from decimal import Decimal


class LedgerKernelError(Exception):
    """Base exception for all ledger kernel errors."""

    code: str = "LEDGER_KERNEL_ERROR"


# Lookup


class NotFoundError(LedgerKernelError):
    """Entity with the given id does not exist."""

    code: str = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: object):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class EntryNotFoundError(NotFoundError):
    """Journal entry with the given id does not exist."""

    code: str = "ENTRY_NOT_FOUND"

    def __init__(self, entry_id: object):
        super().__init__("journal_entry", entry_id)


# Lifecycle


class EntryError(LedgerKernelError):
    """Base exception for journal entry lifecycle errors."""

    code: str = "ENTRY_ERROR"


class InvalidStateError(EntryError):
    """Operation attempted against an entry in the wrong status."""

    code: str = "INVALID_STATE"

    def __init__(
        self,
        current_status: str,
        attempted_transition: str,
        entry_id: int | None = None,
    ):
        self.current_status = current_status
        self.attempted_transition = attempted_transition
        self.entry_id = entry_id
        super().__init__(
            f"Cannot {attempted_transition} entry {entry_id} "
            f"in status '{current_status}'"
        )


class UnbalancedEntryError(EntryError):
    """Entry debits and credits differ by more than the tolerance."""

    code: str = "UNBALANCED_ENTRY"

    def __init__(
        self,
        debit_total: Decimal,
        credit_total: Decimal,
        difference: Decimal,
        entry_id: int | None = None,
    ):
        self.debit_total = debit_total
        self.credit_total = credit_total
        self.difference = difference
        self.entry_id = entry_id
        super().__init__(
            f"Unbalanced entry {entry_id}: debit={debit_total}, "
            f"credit={credit_total}, difference={difference}"
        )


# Numbering


class AllocationError(LedgerKernelError):
    """Base exception for entry number allocation errors."""

    code: str = "ALLOCATION_ERROR"


class AllocationExhaustedError(AllocationError):
    """
    Every allocate+insert attempt lost the race for its number.

    Infrastructure-class: the caller may retry the whole request later.
    """

    code: str = "ALLOCATION_EXHAUSTED"

    def __init__(self, attempts: int, last_number: int | None = None):
        self.attempts = attempts
        self.last_number = last_number
        super().__init__(
            f"Entry number allocation failed after {attempts} attempts "
            f"(last candidate: {last_number})"
        )


# Concurrency


class ConcurrencyError(LedgerKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """The entry was modified by another transaction on every attempt."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: object, attempts: int):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.attempts = attempts
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            f"modified by another transaction on all {attempts} attempts"
        )


# Input


class ValidationError(LedgerKernelError):
    """Structurally malformed input (missing account, non-numeric amount)."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


# Audit


class ImmutabilityViolationError(LedgerKernelError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: object, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
