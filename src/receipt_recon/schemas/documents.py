"""
Document pipeline records.

DocumentJob is what the ingest adapter produces and the pipeline consumes.
StageLog is the append-only audit row written once per attempted stage.
ProcessedFileView is a read-only projection over StageLog rows; it is never
stored or updated on its own.
"""

import json
import sqlite3
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from .dedupe import compute_content_hash, fingerprint_key


class Stage(str, Enum):
    """Pipeline stages, in execution order."""

    CLASSIFY = "classify"
    EXTRACT = "extract"
    PERSIST = "persist"

    @property
    def order(self) -> int:
        return STAGE_ORDER.index(self)


STAGE_ORDER = [Stage.CLASSIFY, Stage.EXTRACT, Stage.PERSIST]


class ProcessingStatus(str, Enum):
    """
    Terminal state of one processing attempt.

    COMPLETED: classified as receipt, extracted and persisted
    CLASSIFIED_ONLY: receipt, but extraction or persistence failed
    NOT_RECEIPT: classified, not a receipt (intentional short-circuit)
    UNKNOWN: classification failed
    """

    COMPLETED = "completed"
    CLASSIFIED_ONLY = "classified_only"
    NOT_RECEIPT = "not_receipt"
    UNKNOWN = "unknown"


@dataclass
class DocumentJob:
    """One inbound document (an email attachment) ready for the pipeline."""

    email_id: str
    filename: str
    content_bytes: bytes = field(repr=False)
    mime_type: str = "application/pdf"
    received_at: str = ""  # ISO timestamp

    @property
    def id(self) -> str:
        """Fingerprint key, stable across reprocessing attempts."""
        return fingerprint_key(self.email_id, self.filename)

    @property
    def fingerprint(self) -> tuple[str, str]:
        return (self.email_id, self.filename)

    @property
    def content_hash(self) -> str:
        return compute_content_hash(self.content_bytes)

    @property
    def size(self) -> int:
        return len(self.content_bytes)


@dataclass
class StageLog:
    """
    Audit record of one attempted stage.

    attempt_id groups all rows written by the same processing run.
    details carries the stage output:
    - classify: {"is_receipt", "confidence", "document_type", "reasoning"}
    - extract: {"merchant_name", "total_amount", "transaction_date", "confidence"}
    - persist: {"receipt_id"}
    """

    email_id: str
    filename: str
    stage: Stage
    success: bool
    attempt_id: str
    processed_at: str  # ISO timestamp
    duration_ms: int = 0
    error_message: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "StageLog":
        """Create from database row."""
        return cls(
            id=row["id"],
            attempt_id=row["attempt_id"],
            email_id=row["email_id"],
            filename=row["filename"],
            stage=Stage(row["stage"]),
            success=bool(row["success"]),
            error_message=row["error_message"],
            duration_ms=row["duration_ms"] or 0,
            processed_at=row["processed_at"],
            details=json.loads(row["details"]) if row["details"] else {},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "attempt_id": self.attempt_id,
            "email_id": self.email_id,
            "filename": self.filename,
            "stage": self.stage.value,
            "success": self.success,
            "error_message": self.error_message,
            "duration_ms": self.duration_ms,
            "processed_at": self.processed_at,
            "details": self.details,
        }


@dataclass
class ProcessedFileView:
    """Derived status of a document's latest processing attempt."""

    email_id: str
    filename: str
    attempt_id: str
    processing_status: ProcessingStatus
    successful_stages: int
    processed_at: str
    is_receipt: bool = False
    confidence: int = 0
    document_type: Optional[str] = None
    merchant_name: Optional[str] = None
    total_amount: Optional[Decimal] = None
    transaction_date: Optional[str] = None  # YYYY-MM-DD

    def to_dict(self) -> dict[str, Any]:
        return {
            "email_id": self.email_id,
            "filename": self.filename,
            "attempt_id": self.attempt_id,
            "is_receipt": self.is_receipt,
            "confidence": self.confidence,
            "document_type": self.document_type,
            "processing_status": self.processing_status.value,
            "successful_stages": self.successful_stages,
            "merchant_name": self.merchant_name,
            "total_amount": str(self.total_amount) if self.total_amount is not None else None,
            "transaction_date": self.transaction_date,
            "processed_at": self.processed_at,
        }
