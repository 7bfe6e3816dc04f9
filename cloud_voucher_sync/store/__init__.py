"""
Database access for voucher numbering.

- Counter store: per (region, voucher type) sequence
- Idempotency ledger: key -> accepted voucher number
- Advisory locks serializing allocation per (region, voucher type)
"""

from .base import DatabaseStore, get_connection
from .counters import CounterStore
from .ledger import IdempotencyLedger
from .locks import advisory_lock, lock_name

__all__ = [
    "DatabaseStore",
    "get_connection",
    "CounterStore",
    "IdempotencyLedger",
    "advisory_lock",
    "lock_name",
]
