"""
SSOT (Single Source of Truth) schemas for the pipeline and the matcher.

These canonical records are the ONLY models used across all modules.
No duplicated "near-same" models allowed.
"""

from .dedupe import (
    AMOUNT_QUANTUM,
    FINGERPRINT_SEPARATOR,
    compute_content_hash,
    fingerprint_key,
    normalize_amount,
)
from .documents import (
    STAGE_ORDER,
    DocumentJob,
    ProcessedFileView,
    ProcessingStatus,
    Stage,
    StageLog,
)
from .records import BankTransaction, ReceiptRecord, RowError, StatementParseResult

__all__ = [
    # Documents and stage audit trail
    "DocumentJob",
    "Stage",
    "STAGE_ORDER",
    "StageLog",
    "ProcessingStatus",
    "ProcessedFileView",
    # Reconciliation inputs
    "BankTransaction",
    "ReceiptRecord",
    "RowError",
    "StatementParseResult",
    # Dedupe / normalization
    "fingerprint_key",
    "compute_content_hash",
    "normalize_amount",
    "FINGERPRINT_SEPARATOR",
    "AMOUNT_QUANTUM",
]
