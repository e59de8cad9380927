"""
State Store (SQLite-based).

Persistent store for:
- Immutable transactions and their mutable processing state
- Import batches, source accounts and encrypted credentials
- Categories, cleanup rules and the credential audit log

Writes are atomic upserts; same-key writers are serialized per transaction id.
"""

from .locks import KeyedLock
from .sqlite_store import (
    ProcessingStateQuery,
    StateStore,
    TransactionQuery,
)

__all__ = [
    "KeyedLock",
    "ProcessingStateQuery",
    "StateStore",
    "TransactionQuery",
]
