"""
Reconciliation input records.

BankTransaction and ReceiptRecord are rebuilt for every reconciliation run
from persisted sources. Both are frozen so they can be compared, hashed and
sorted canonically by the matcher.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Optional


@dataclass(frozen=True)
class BankTransaction:
    """
    One row of a bank statement export.

    amount is signed: negative = debit/expense, positive = credit.
    row_index points back at the source row and transaction_id at the
    stored row, if any. Neither takes part in equality, so duplicate rows
    compare equal.
    """

    date: date
    description: str
    amount: Decimal
    reference: Optional[str] = None
    row_index: Optional[int] = field(default=None, compare=False)
    transaction_id: Optional[int] = field(default=None, compare=False)

    @property
    def is_debit(self) -> bool:
        return self.amount < 0

    @property
    def sort_key(self) -> tuple:
        return (self.date, self.amount, self.description, self.reference or "")

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "description": self.description,
            "amount": str(self.amount),
            "reference": self.reference,
            "row_index": self.row_index,
            "transaction_id": self.transaction_id,
        }


@dataclass(frozen=True)
class ReceiptRecord:
    """Extracted receipt of a completed document, as used for matching."""

    source_email_id: str
    merchant_name: str
    total_amount: Decimal  # unsigned
    transaction_date: date
    filename: str = ""
    receipt_id: Optional[int] = field(default=None, compare=False)

    @property
    def sort_key(self) -> tuple:
        return (
            self.transaction_date,
            self.total_amount,
            self.merchant_name,
            self.source_email_id,
            self.filename,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_email_id": self.source_email_id,
            "filename": self.filename,
            "merchant_name": self.merchant_name,
            "total_amount": str(self.total_amount),
            "transaction_date": self.transaction_date.isoformat(),
            "receipt_id": self.receipt_id,
        }


@dataclass(frozen=True)
class RowError:
    """A statement row that was skipped."""

    row_index: int  # 1-based line number in the source file
    raw: str
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"row_index": self.row_index, "raw": self.raw, "reason": self.reason}


@dataclass
class StatementParseResult:
    """Outcome of parsing one statement file."""

    transactions: list[BankTransaction] = field(default_factory=list)
    errors: list[RowError] = field(default_factory=list)
    total_rows: int = 0
    header: Optional[list[str]] = None

    @property
    def success(self) -> bool:
        """True if at least one transaction was parsed."""
        return bool(self.transactions)
