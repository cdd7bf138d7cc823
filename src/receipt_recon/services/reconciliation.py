"""Reconciliation orchestration service.

Ties the statement parser, the processing store and the matcher together:
- Imports statement exports (parse, store upload and transactions)
- Loads receipt records of a period from completed pipeline attempts
- Keeps manual matches and pins them in every run
- Runs the matcher and optionally records the report in run history

Reports are always recomputed; stored runs are history, not ground truth.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import TYPE_CHECKING, Any, Union

from receipt_recon.matching.engine import MatchReport, ReconciliationMatcher
from receipt_recon.schemas import (
    BankTransaction,
    ReceiptRecord,
    RowError,
    StatementParseResult,
    compute_content_hash,
)
from receipt_recon.statements.parser import StatementParser

if TYPE_CHECKING:
    from receipt_recon.config import Config
    from receipt_recon.state_store import ManualMatchRecord, StateStore

logger = logging.getLogger(__name__)

# A statement file, statement text, or already parsed transactions
StatementInput = Union[Path, str, Sequence[BankTransaction]]


@dataclass
class StatementImportResult:
    """Result of importing one statement file."""

    statement_id: int
    filename: str
    parse_result: StatementParseResult

    @property
    def transaction_count(self) -> int:
        return len(self.parse_result.transactions)

    @property
    def error_count(self) -> int:
        return len(self.parse_result.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "statement_id": self.statement_id,
            "filename": self.filename,
            "total_rows": self.parse_result.total_rows,
            "transactions": self.transaction_count,
            "errors": [e.to_dict() for e in self.parse_result.errors],
        }


class ReconciliationService:
    """Orchestrates statement import and reconciliation runs.

    Usage:
        service = ReconciliationService(state_store, config)
        report = service.reconcile(Path("statement.csv"), persist=True)
    """

    def __init__(self, state_store: StateStore, config: Config) -> None:
        """Initialize the service.

        Args:
            state_store: Processing store (receipts, statements, run history).
            config: Application configuration.
        """
        self.store = state_store
        self.config = config
        self.parser = StatementParser(delimiter=config.statement.delimiter)
        self.matcher = ReconciliationMatcher.from_config(config.reconciliation)

    def _parse_statement(
        self, statement: Path | str
    ) -> tuple[StatementParseResult, bytes, str]:
        """Return (parse result, raw content, filename) for a statement file or raw text."""
        if isinstance(statement, Path):
            content = statement.read_bytes()
            return self.parser.parse_bytes(content), content, statement.name
        return self.parser.parse(statement), statement.encode("utf-8"), "statement.csv"

    def import_statement(
        self, statement: Path | str, filename: str | None = None
    ) -> StatementImportResult:
        """Parse a statement and store the upload with its transactions.

        Args:
            statement: Statement file path, or the statement text itself.
            filename: Name to record (defaults to the file name).

        Returns:
            StatementImportResult with the new statement id and parse outcome.
        """
        parse_result, content, default_name = self._parse_statement(statement)
        filename = filename or default_name

        statement_id = self.store.record_statement_upload(
            filename=filename,
            content_hash=compute_content_hash(content),
            total_rows=parse_result.total_rows,
            transaction_count=len(parse_result.transactions),
            errors=parse_result.errors,
        )
        self.store.save_bank_transactions(statement_id, parse_result.transactions)

        logger.info(
            f"Imported statement #{statement_id} ({filename}): "
            f"{len(parse_result.transactions)} transactions, "
            f"{len(parse_result.errors)} row errors"
        )
        for error in parse_result.errors:
            logger.warning(f"Statement {filename} row {error.row_index}: {error.reason}")

        return StatementImportResult(statement_id, filename, parse_result)

    def reconcile(
        self,
        statement: StatementInput | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
        persist: bool = False,
        statement_id: int | None = None,
    ) -> MatchReport:
        """Run one reconciliation.

        Args:
            statement: Statement file, statement text or parsed transactions.
                When omitted, stored transactions of statement_id are used.
            start_date: Inclusive start of the period (receipts and transactions).
            end_date: Inclusive end of the period.
            persist: Record the report in reconciliation run history.
            statement_id: Stored statement to reconcile against.

        Returns:
            MatchReport, with statement row errors in parse_errors.
        """
        started = time.monotonic()
        transactions, parse_errors = self._load_transactions(statement, statement_id)
        transactions = [
            tx
            for tx in transactions
            if (start_date is None or tx.date >= start_date)
            and (end_date is None or tx.date <= end_date)
        ]

        receipts = self.store.list_receipt_records(start_date=start_date, end_date=end_date)
        receipts, transactions, pinned = self._apply_manual_matches(receipts, transactions)
        report = self.matcher.match(receipts, transactions, pinned=pinned)
        report.parse_errors = list(parse_errors)

        if persist:
            run_id = self.store.save_reconciliation_run(
                report,
                statement_id=statement_id,
                period_start=start_date,
                period_end=end_date,
            )
            logger.debug(f"Recorded reconciliation run #{run_id}")

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Reconciliation: {report.matched_count} matched, "
            f"{report.unmatched_receipt_count} unmatched receipts, "
            f"{report.unmatched_transaction_count} unmatched debits, "
            f"rate {report.reconciliation_rate:.1f}% ({duration_ms}ms)"
        )
        return report

    def _load_transactions(
        self, statement: StatementInput | None, statement_id: int | None
    ) -> tuple[list[BankTransaction], list[RowError]]:
        if statement is None:
            if statement_id is None:
                raise ValueError("Either a statement or a statement_id is required")
            upload = self.store.get_statement_upload(statement_id)
            if upload is None:
                raise ValueError(f"Statement #{statement_id} does not exist")
            return self.store.list_bank_transactions(statement_id=statement_id), upload.errors

        if isinstance(statement, (Path, str)):
            result, _, _ = self._parse_statement(statement)
            return result.transactions, result.errors

        return list(statement), []

    def _apply_manual_matches(
        self, receipts: list[ReceiptRecord], transactions: list[BankTransaction]
    ) -> tuple[
        list[ReceiptRecord],
        list[BankTransaction],
        list[tuple[ReceiptRecord, BankTransaction]],
    ]:
        """Split pinned pairs off the matcher input.

        A pinned receipt or transaction never takes part in automatic
        matching. The pair is reported as a manual match when both sides
        are part of this run. Pins whose receipt was superseded by a later
        attempt are ignored.
        """
        manual_matches = self.store.list_manual_matches()
        if not manual_matches:
            return receipts, transactions, []

        current = {r.receipt_id for r in self.store.list_receipt_records()}
        pins = {m.receipt_id: m.bank_transaction_id for m in manual_matches}
        stale = [receipt_id for receipt_id in pins if receipt_id not in current]
        for receipt_id in stale:
            logger.warning(
                f"Manual match for receipt #{receipt_id} ignored: "
                "the document no longer has that receipt"
            )
            del pins[receipt_id]
        pinned_transactions = {tx_id: receipt_id for receipt_id, tx_id in pins.items()}

        tx_by_id = {
            tx.transaction_id: tx
            for tx in transactions
            if tx.transaction_id in pinned_transactions
        }
        pinned = [
            (receipt, tx_by_id[pins[receipt.receipt_id]])
            for receipt in receipts
            if receipt.receipt_id in pins and pins[receipt.receipt_id] in tx_by_id
        ]

        free_receipts = [r for r in receipts if r.receipt_id not in pins]
        free_transactions = [
            tx for tx in transactions if tx.transaction_id not in pinned_transactions
        ]
        logger.debug(
            f"Pinned {len(pinned)} manual match(es), held back "
            f"{len(receipts) - len(free_receipts)} receipt(s) and "
            f"{len(transactions) - len(free_transactions)} transaction(s)"
        )
        return free_receipts, free_transactions, pinned

    def create_manual_match(
        self, receipt_id: int, bank_transaction_id: int, notes: str | None = None
    ) -> int:
        """Pin a receipt to a stored bank transaction.

        Args:
            receipt_id: Receipt of a document whose latest attempt completed.
            bank_transaction_id: Row of an imported statement.
            notes: Free-form note kept with the match.

        Returns:
            Id of the manual match.

        Raises:
            ValueError: If the receipt is not current, either side does not
                exist, or either side is already pinned.
        """
        if self.store.get_receipt_record(receipt_id) is None:
            raise ValueError(f"Receipt #{receipt_id} does not exist")
        if receipt_id not in {r.receipt_id for r in self.store.list_receipt_records()}:
            raise ValueError(
                f"Receipt #{receipt_id} was superseded by a later processing attempt"
            )

        match_id = self.store.create_manual_match(receipt_id, bank_transaction_id, notes)
        logger.info(
            f"Created manual match #{match_id}: receipt #{receipt_id} "
            f"-> bank transaction #{bank_transaction_id}"
        )
        return match_id

    def remove_manual_match(self, match_id: int) -> bool:
        """Remove a manual match. Returns False if it did not exist."""
        removed = self.store.delete_manual_match(match_id)
        if removed:
            logger.info(f"Removed manual match #{match_id}")
        return removed

    def list_manual_matches(self) -> list[ManualMatchRecord]:
        return self.store.list_manual_matches()

    def recent_runs(self, limit: int = 10) -> list[dict[str, Any]]:
        """Reconciliation run history, newest first."""
        return self.store.get_reconciliation_runs(limit=limit)
