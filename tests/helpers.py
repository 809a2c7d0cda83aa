"""Shared constants and builders for the ledger kernel tests."""

from decimal import Decimal

from ledger_kernel.domain.dtos import Actor, AuditContext

CASH = 1010
RECEIVABLE = 1200
REVENUE = 4000
RENT = 6100

ZERO = Decimal("0")

TEST_ACTOR = Actor(id=7, name="tester")
TEST_CONTEXT = AuditContext(ip_address="10.0.0.7", user_agent="pytest")


def balanced_postings(amount="100", debit_account=CASH, credit_account=REVENUE) -> list[dict]:
    return [
        {"account_id": debit_account, "debit": amount, "credit": "0"},
        {"account_id": credit_account, "debit": "0", "credit": amount},
    ]
