"""Reconciliation matching of receipts against bank statement debits."""

from .engine import (
    MatchReport,
    MatchResult,
    ReconciliationMatcher,
    reconciliation_rate,
)

__all__ = [
    "ReconciliationMatcher",
    "MatchResult",
    "MatchReport",
    "reconciliation_rate",
]
