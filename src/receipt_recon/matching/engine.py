"""Reconciliation matcher for pairing receipts with bank statement debits.

Deterministic greedy one-to-one assignment:

1. Normalize amounts to two decimals. Receipts are unsigned, debits are
   compared by absolute value. Credits (and zero rows) are set aside.
2. A (receipt, debit) pair is a candidate when the amounts differ by at
   most amount_epsilon and the dates by at most date_tolerance_days.
3. Candidates are ranked by (date delta, amount delta), or amount first
   with prefer="amount", then by the canonical keys of both records.
4. Walking the ranking, a pair is accepted when neither side is taken.

Pinned (manually confirmed) pairs are reported as matches as they are and
never enter the candidate set; callers leave their records out of the
receipts and transactions they pass in.

The ranking is a total order over record values, so the report does not
depend on input order.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from ..schemas import BankTransaction, ReceiptRecord, RowError, normalize_amount

if TYPE_CHECKING:
    from ..config import ReconciliationConfig

logger = logging.getLogger(__name__)

PREFER_DATE = "date"
PREFER_AMOUNT = "amount"


@dataclass(frozen=True)
class MatchResult:
    """One accepted receipt/transaction pair."""

    receipt: ReceiptRecord
    transaction: BankTransaction
    date_delta_days: int
    amount_delta: Decimal
    manual: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "receipt": self.receipt.to_dict(),
            "transaction": self.transaction.to_dict(),
            "date_delta_days": self.date_delta_days,
            "amount_delta": str(self.amount_delta),
            "manual": self.manual,
        }


@dataclass
class MatchReport:
    """Outcome of one reconciliation run."""

    matches: list[MatchResult] = field(default_factory=list)
    unmatched_receipts: list[ReceiptRecord] = field(default_factory=list)
    unmatched_bank_transactions: list[BankTransaction] = field(default_factory=list)
    ignored_credits: list[BankTransaction] = field(default_factory=list)
    reconciliation_rate: float = 0.0
    parse_errors: list[RowError] = field(default_factory=list)

    @property
    def matched_count(self) -> int:
        return len(self.matches)

    @property
    def unmatched_receipt_count(self) -> int:
        return len(self.unmatched_receipts)

    @property
    def unmatched_transaction_count(self) -> int:
        return len(self.unmatched_bank_transactions)

    @property
    def manual_count(self) -> int:
        return sum(1 for m in self.matches if m.manual)

    @property
    def matched_amount(self) -> Decimal:
        """Sum of matched receipt totals."""
        return sum((m.receipt.total_amount for m in self.matches), Decimal("0.00"))

    def summary(self) -> dict[str, Any]:
        return {
            "matched": self.matched_count,
            "manual_matches": self.manual_count,
            "unmatched_receipts": self.unmatched_receipt_count,
            "unmatched_bank_transactions": self.unmatched_transaction_count,
            "ignored_credits": len(self.ignored_credits),
            "parse_errors": len(self.parse_errors),
            "matched_amount": str(self.matched_amount),
            "reconciliation_rate": round(self.reconciliation_rate, 2),
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "summary": self.summary(),
            "reconciliation_rate": self.reconciliation_rate,
            "matches": [m.to_dict() for m in self.matches],
            "unmatched_receipts": [r.to_dict() for r in self.unmatched_receipts],
            "unmatched_bank_transactions": [
                t.to_dict() for t in self.unmatched_bank_transactions
            ],
            "ignored_credits": [t.to_dict() for t in self.ignored_credits],
            "parse_errors": [e.to_dict() for e in self.parse_errors],
        }


def reconciliation_rate(matched: int, unmatched_receipts: int, unmatched_debits: int) -> float:
    """matched / (matched + unmatched receipts + unmatched debits) * 100, 0.0 if empty."""
    denominator = matched + unmatched_receipts + unmatched_debits
    if denominator == 0:
        return 0.0
    return matched / denominator * 100


class ReconciliationMatcher:
    """Greedy one-to-one matcher with date and amount tolerance."""

    def __init__(
        self,
        date_tolerance_days: int = 3,
        amount_epsilon: Decimal | str = Decimal("0.01"),
        prefer: str = PREFER_DATE,
    ) -> None:
        """Initialize the matcher.

        Args:
            date_tolerance_days: Maximum absolute posting-date lag in days.
            amount_epsilon: Maximum absolute amount difference.
            prefer: "date" ranks the closest date first, "amount" the closest amount.
        """
        if date_tolerance_days < 0:
            raise ValueError("date_tolerance_days must be >= 0")
        if prefer not in (PREFER_DATE, PREFER_AMOUNT):
            raise ValueError(f"prefer must be 'date' or 'amount', got {prefer!r}")

        self.date_tolerance_days = date_tolerance_days
        self.amount_epsilon = Decimal(str(amount_epsilon))
        if self.amount_epsilon < 0:
            raise ValueError("amount_epsilon must be >= 0")
        self.prefer = prefer

    @classmethod
    def from_config(cls, config: ReconciliationConfig) -> ReconciliationMatcher:
        return cls(
            date_tolerance_days=config.date_tolerance_days,
            amount_epsilon=config.amount_epsilon,
            prefer=config.prefer,
        )

    def match(
        self,
        receipts: Iterable[ReceiptRecord],
        transactions: Iterable[BankTransaction],
        pinned: Iterable[tuple[ReceiptRecord, BankTransaction]] = (),
    ) -> MatchReport:
        """Pair receipts with debit transactions.

        Args:
            receipts: Receipt records of the period.
            transactions: Bank statement rows (debits and credits).
            pinned: Manually confirmed pairs, excluded from receipts and
                transactions by the caller.

        Returns:
            MatchReport with canonically sorted lists.
        """
        receipts = list(receipts)
        debits: list[BankTransaction] = []
        credits: list[BankTransaction] = []
        for tx in transactions:
            (debits if tx.is_debit else credits).append(tx)

        receipt_amounts = [abs(normalize_amount(r.total_amount)) for r in receipts]
        debit_amounts = [abs(normalize_amount(t.amount)) for t in debits]

        candidates = []
        for r_index, receipt in enumerate(receipts):
            for t_index, tx in enumerate(debits):
                amount_delta = abs(receipt_amounts[r_index] - debit_amounts[t_index])
                if amount_delta > self.amount_epsilon:
                    continue
                date_delta = abs((receipt.transaction_date - tx.date).days)
                if date_delta > self.date_tolerance_days:
                    continue
                if self.prefer == PREFER_AMOUNT:
                    rank = (amount_delta, date_delta)
                else:
                    rank = (date_delta, amount_delta)
                candidates.append(
                    (
                        rank,
                        receipt.sort_key,
                        tx.sort_key,
                        r_index,
                        t_index,
                        date_delta,
                        amount_delta,
                    )
                )

        candidates.sort(key=lambda c: c[:3])

        used_receipts: set[int] = set()
        used_debits: set[int] = set()
        matches = [self._pinned_match(receipt, tx) for receipt, tx in pinned]
        for _, _, _, r_index, t_index, date_delta, amount_delta in candidates:
            if r_index in used_receipts or t_index in used_debits:
                continue
            used_receipts.add(r_index)
            used_debits.add(t_index)
            matches.append(
                MatchResult(
                    receipt=receipts[r_index],
                    transaction=debits[t_index],
                    date_delta_days=date_delta,
                    amount_delta=amount_delta,
                )
            )

        unmatched_receipts = [r for i, r in enumerate(receipts) if i not in used_receipts]
        unmatched_debits = [t for i, t in enumerate(debits) if i not in used_debits]

        report = MatchReport(
            matches=sorted(
                matches, key=lambda m: (m.receipt.sort_key, m.transaction.sort_key)
            ),
            unmatched_receipts=sorted(unmatched_receipts, key=lambda r: r.sort_key),
            unmatched_bank_transactions=sorted(unmatched_debits, key=lambda t: t.sort_key),
            ignored_credits=sorted(credits, key=lambda t: t.sort_key),
            reconciliation_rate=reconciliation_rate(
                len(matches), len(unmatched_receipts), len(unmatched_debits)
            ),
        )

        logger.debug(
            f"Matched {report.matched_count} of {len(receipts)} receipt(s) against "
            f"{len(debits)} debit(s) from {len(candidates)} candidate pair(s), "
            f"{report.manual_count} pinned"
        )
        return report

    def _pinned_match(self, receipt: ReceiptRecord, tx: BankTransaction) -> MatchResult:
        return MatchResult(
            receipt=receipt,
            transaction=tx,
            date_delta_days=abs((receipt.transaction_date - tx.date).days),
            amount_delta=abs(
                abs(normalize_amount(receipt.total_amount)) - abs(normalize_amount(tx.amount))
            ),
            manual=True,
        )
