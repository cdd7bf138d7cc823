"""
Processing store.

Provides:
- Append-only stage audit log
- Persisted receipts
- Imported bank statements
- Reconciliation run history
- Manual matches
"""

from .sqlite_store import (
    ManualMatchRecord,
    StageLogPage,
    StateStore,
    StatementUploadRecord,
)

__all__ = ["StateStore", "StageLogPage", "StatementUploadRecord", "ManualMatchRecord"]
