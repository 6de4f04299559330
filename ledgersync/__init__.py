"""
LedgerSync - Local-first cache and sync layer

Client-resident storage for a personal finance ledger (accounts,
transactions, debts, inventory, scheduled payments). Reads are served
locally, unconfirmed mutations are buffered, and the authoritative
remote store is reconciled through a realtime change feed.

DESIGN PRINCIPLES:
1. A cold or corrupted cache never blocks the UI
2. Local intent is recorded before remote confirmation
3. Every cache entry belongs to exactly one user
4. The remote store owns final correctness
5. Storage backends are swappable
"""

__version__ = "1.0.0"
__author__ = "LedgerSync Team"
