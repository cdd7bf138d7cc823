"""
Bank statement ingest.

Provides:
- StatementParser: delimited statement export → BankTransactions + row errors
- parse_statement_date / parse_statement_amount: single-value helpers
"""

from .parser import (
    DEFAULT_DATE_FORMATS,
    StatementParser,
    parse_statement_amount,
    parse_statement_date,
)

__all__ = [
    "StatementParser",
    "parse_statement_date",
    "parse_statement_amount",
    "DEFAULT_DATE_FORMATS",
]
