"""
Ledger Kernel - double-entry core of the restaurant back-office.

Owns journal entries and their postings:
- Gap-reusing entry numbering with retry on contention
- Draft / posted / reversed lifecycle with a balance check on post
- Atomic reversal into a new posted entry
- Partner sub-ledger balances and running-balance statements
- Append-only audit trail of every mutation
"""

__version__ = "0.1.0"
