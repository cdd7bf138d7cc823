"""
SQLite-based processing store implementation.

Tables:
- stage_logs: Append-only audit trail, one row per attempted stage
- receipts: Extracted receipts written by the persist stage
- statement_uploads / bank_transactions: Imported bank statements (migration 001)
- reconciliation_runs: Reconciliation report history (migration 002)
- manual_matches: User-confirmed receipt/transaction pairs (migration 003)
"""

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..errors import PersistenceError
from ..pipeline.projection import project_latest_attempt
from ..schemas import (
    BankTransaction,
    ProcessedFileView,
    ReceiptRecord,
    RowError,
    Stage,
    StageLog,
)

if TYPE_CHECKING:
    from ..capability import ExtractedReceipt
    from ..matching import MatchReport

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _iso(value: date | str | None) -> str | None:
    if value is None:
        return None
    return value.isoformat() if isinstance(value, date) else value


def _pagination(page: int, limit: int, total: int) -> dict[str, int]:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": (total + limit - 1) // limit if total else 0,
    }


def _bank_transaction_from_row(row: sqlite3.Row) -> BankTransaction:
    return BankTransaction(
        date=date.fromisoformat(row["transaction_date"]),
        description=row["description"],
        amount=Decimal(row["amount"]),
        reference=row["reference"],
        row_index=row["row_index"],
        transaction_id=row["id"],
    )


@dataclass
class StageLogPage:
    """One page of stage log rows, newest first."""

    rows: list[StageLog] = field(default_factory=list)
    pagination: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "logs": [row.to_dict() for row in self.rows],
            "pagination": self.pagination,
        }


@dataclass
class StatementUploadRecord:
    """Record of an imported bank statement file."""

    id: int
    filename: str
    content_hash: str
    total_rows: int
    transaction_count: int
    error_count: int
    errors: list[RowError]
    uploaded_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "StatementUploadRecord":
        """Create from database row."""
        errors = json.loads(row["errors"]) if row["errors"] else []
        return cls(
            id=row["id"],
            filename=row["filename"],
            content_hash=row["content_hash"],
            total_rows=row["total_rows"],
            transaction_count=row["transaction_count"],
            error_count=row["error_count"],
            errors=[RowError(**e) for e in errors],
            uploaded_at=row["uploaded_at"],
        )


@dataclass
class ManualMatchRecord:
    """A user-confirmed receipt/transaction pair."""

    id: int
    receipt_id: int
    bank_transaction_id: int
    notes: str | None
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ManualMatchRecord":
        return cls(
            id=row["id"],
            receipt_id=row["receipt_id"],
            bank_transaction_id=row["bank_transaction_id"],
            notes=row["notes"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "receipt_id": self.receipt_id,
            "bank_transaction_id": self.bank_transaction_id,
            "notes": self.notes,
            "created_at": self.created_at,
        }


class StateStore:
    """
    SQLite-based processing store.

    Provides persistent tracking of:
    - Stage logs (append-only, never updated or deleted)
    - Persisted receipts
    - Imported statements and their transactions
    - Reconciliation run history
    - Manual matches

    Each operation opens its own connection, so one store instance can be
    shared by the pipeline worker threads.
    """

    def __init__(self, db_path: Path | str, run_migrations: bool = True):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions.

        Raises:
            PersistenceError: If SQLite reports any error
        """
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open state store {self.db_path}: {e}") from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"State store error: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize the core schema."""
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS stage_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    attempt_id TEXT NOT NULL,
                    email_id TEXT NOT NULL,
                    filename TEXT NOT NULL,
                    stage TEXT NOT NULL,  -- classify, extract, persist
                    success INTEGER NOT NULL,
                    error_message TEXT,
                    duration_ms INTEGER NOT NULL DEFAULT 0,
                    processed_at TEXT NOT NULL,
                    details TEXT  -- JSON stage output
                )
            """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_stage_logs_fingerprint "
                "ON stage_logs(email_id, filename)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_stage_logs_attempt ON stage_logs(attempt_id)"
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS receipts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    attempt_id TEXT NOT NULL UNIQUE,
                    email_id TEXT NOT NULL,
                    filename TEXT NOT NULL,
                    merchant_name TEXT NOT NULL,
                    total_amount TEXT NOT NULL,  -- decimal string, 2 places
                    transaction_date TEXT NOT NULL,  -- YYYY-MM-DD
                    confidence INTEGER,
                    created_at TEXT NOT NULL
                )
            """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_receipts_fingerprint "
                "ON receipts(email_id, filename)"
            )

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            MigrationRunner(conn).run_pending()
        finally:
            conn.close()

    # Stage log methods

    def append_stage_log(self, entry: StageLog) -> int:
        """
        Append one stage log row. Rows are never updated afterwards.

        Returns:
            Row id of the new entry
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO stage_logs
                    (attempt_id, email_id, filename, stage, success,
                     error_message, duration_ms, processed_at, details)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    entry.attempt_id,
                    entry.email_id,
                    entry.filename,
                    entry.stage.value,
                    1 if entry.success else 0,
                    entry.error_message,
                    entry.duration_ms,
                    entry.processed_at,
                    json.dumps(entry.details) if entry.details else None,
                ),
            )
            entry.id = cursor.lastrowid
            return cursor.lastrowid

    def query_stage_logs(
        self,
        email_id: str | None = None,
        stage: Stage | str | None = None,
        success: bool | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> StageLogPage:
        """
        Filtered, paginated stage log query (newest first).

        Args:
            email_id: Only rows of this email
            stage: Only rows of this stage
            success: Only successful (True) or failed (False) rows
            page: 1-based page number
            limit: Rows per page
        """
        page = max(page, 1)
        limit = max(limit, 1)

        clauses = []
        params: list[Any] = []
        if email_id is not None:
            clauses.append("email_id = ?")
            params.append(email_id)
        if stage is not None:
            clauses.append("stage = ?")
            params.append(Stage(stage).value)
        if success is not None:
            clauses.append("success = ?")
            params.append(1 if success else 0)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._transaction() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM stage_logs {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM stage_logs {where} ORDER BY id DESC LIMIT ? OFFSET ?",
                [*params, limit, (page - 1) * limit],
            ).fetchall()

        return StageLogPage(
            rows=[StageLog.from_row(r) for r in rows],
            pagination=_pagination(page, limit, total),
        )

    def get_stage_logs(self, email_id: str, filename: str) -> list[StageLog]:
        """All rows of a document across every attempt, oldest first."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM stage_logs WHERE email_id = ? AND filename = ? ORDER BY id",
                (email_id, filename),
            ).fetchall()
        return [StageLog.from_row(r) for r in rows]

    def read_latest_attempt(self, email_id: str, filename: str) -> ProcessedFileView | None:
        """View of the latest processing attempt of a document, if any."""
        return project_latest_attempt(self.get_stage_logs(email_id, filename))

    def list_processed_files(
        self, email_id: str | None = None, page: int = 1, limit: int = 50
    ) -> tuple[list[ProcessedFileView], dict[str, int]]:
        """
        One view per processed document, most recently touched first.

        Returns:
            (views, pagination)
        """
        page = max(page, 1)
        limit = max(limit, 1)
        where = "WHERE email_id = ?" if email_id is not None else ""
        params: list[Any] = [email_id] if email_id is not None else []

        with self._transaction() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM (SELECT 1 FROM stage_logs {where} "
                "GROUP BY email_id, filename)",
                params,
            ).fetchone()[0]
            keys = conn.execute(
                f"""
                SELECT email_id, filename, MAX(id) AS last_id
                FROM stage_logs {where}
                GROUP BY email_id, filename
                ORDER BY last_id DESC
                LIMIT ? OFFSET ?
            """,
                [*params, limit, (page - 1) * limit],
            ).fetchall()

        views = []
        for key in keys:
            view = self.read_latest_attempt(key["email_id"], key["filename"])
            if view is not None:
                views.append(view)
        return views, _pagination(page, limit, total)

    def get_processing_stats(self) -> dict[str, Any]:
        """Per-stage outcome counts, average durations and document statuses."""
        with self._transaction() as conn:
            stage_rows = conn.execute(
                """
                SELECT stage,
                       SUM(CASE WHEN success = 1 THEN 1 ELSE 0 END) AS succeeded,
                       SUM(CASE WHEN success = 0 THEN 1 ELSE 0 END) AS failed,
                       AVG(duration_ms) AS avg_duration_ms
                FROM stage_logs
                GROUP BY stage
            """
            ).fetchall()
            all_rows = conn.execute("SELECT * FROM stage_logs ORDER BY id").fetchall()
            receipt_count = conn.execute("SELECT COUNT(*) FROM receipts").fetchone()[0]
            attempt_count = conn.execute(
                "SELECT COUNT(DISTINCT attempt_id) FROM stage_logs"
            ).fetchone()[0]

        stages = {
            stage.value: {"succeeded": 0, "failed": 0, "avg_duration_ms": 0.0}
            for stage in Stage
        }
        for row in stage_rows:
            stages[row["stage"]] = {
                "succeeded": row["succeeded"] or 0,
                "failed": row["failed"] or 0,
                "avg_duration_ms": round(row["avg_duration_ms"] or 0.0, 1),
            }

        by_document: dict[tuple[str, str], list[StageLog]] = {}
        for row in all_rows:
            log = StageLog.from_row(row)
            by_document.setdefault((log.email_id, log.filename), []).append(log)

        statuses: dict[str, int] = {}
        for logs in by_document.values():
            view = project_latest_attempt(logs)
            if view is not None:
                key = view.processing_status.value
                statuses[key] = statuses.get(key, 0) + 1

        return {
            "documents": len(by_document),
            "attempts": attempt_count,
            "receipts": receipt_count,
            "stages": stages,
            "statuses": statuses,
        }

    # Receipt methods

    def save_receipt(
        self,
        attempt_id: str,
        email_id: str,
        filename: str,
        fields: "ExtractedReceipt",
    ) -> int:
        """
        Persist the extracted receipt of one attempt.

        Returns:
            Row id of the receipt

        Raises:
            PersistenceError: If the write fails (e.g. attempt already persisted)
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO receipts
                    (attempt_id, email_id, filename, merchant_name, total_amount,
                     transaction_date, confidence, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    attempt_id,
                    email_id,
                    filename,
                    fields.merchant_name,
                    str(fields.total_amount),
                    fields.transaction_date,
                    fields.confidence,
                    _now(),
                ),
            )
            return cursor.lastrowid

    def list_receipt_records(
        self, start_date: date | None = None, end_date: date | None = None
    ) -> list[ReceiptRecord]:
        """
        Receipts of documents whose latest attempt completed.

        The latest attempt is the one owning the newest stage log row of the
        document. A completed attempt ends with a successful persist row, so
        a document qualifies only when that newest row is its persist success.
        A later attempt that reclassifies the document, fails or is still
        running hides the receipt of any earlier attempt.

        Args:
            start_date: Inclusive lower bound on transaction_date
            end_date: Inclusive upper bound on transaction_date
        """
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT r.*
                FROM receipts r
                JOIN (
                    SELECT email_id, filename, MAX(id) AS last_id
                    FROM stage_logs
                    GROUP BY email_id, filename
                ) latest
                  ON latest.email_id = r.email_id
                 AND latest.filename = r.filename
                JOIN stage_logs l
                  ON l.id = latest.last_id
                 AND l.attempt_id = r.attempt_id
                 AND l.stage = 'persist'
                 AND l.success = 1
            """
            ).fetchall()

        records = []
        for row in rows:
            tx_date = date.fromisoformat(row["transaction_date"])
            if start_date is not None and tx_date < start_date:
                continue
            if end_date is not None and tx_date > end_date:
                continue
            records.append(
                ReceiptRecord(
                    source_email_id=row["email_id"],
                    filename=row["filename"],
                    merchant_name=row["merchant_name"],
                    total_amount=Decimal(row["total_amount"]),
                    transaction_date=tx_date,
                    receipt_id=row["id"],
                )
            )
        return sorted(records, key=lambda r: r.sort_key)

    def get_receipt_record(self, receipt_id: int) -> ReceiptRecord | None:
        """A persisted receipt by row id, whether or not it is still current."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM receipts WHERE id = ?", (receipt_id,)).fetchone()
        if row is None:
            return None
        return ReceiptRecord(
            source_email_id=row["email_id"],
            filename=row["filename"],
            merchant_name=row["merchant_name"],
            total_amount=Decimal(row["total_amount"]),
            transaction_date=date.fromisoformat(row["transaction_date"]),
            receipt_id=row["id"],
        )

    # Statement methods

    def record_statement_upload(
        self,
        filename: str,
        content_hash: str,
        total_rows: int,
        transaction_count: int,
        errors: list[RowError],
    ) -> int:
        """Record an imported statement file. Returns the statement id."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO statement_uploads
                    (filename, content_hash, total_rows, transaction_count,
                     error_count, errors, uploaded_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    filename,
                    content_hash,
                    total_rows,
                    transaction_count,
                    len(errors),
                    json.dumps([e.to_dict() for e in errors]),
                    _now(),
                ),
            )
            return cursor.lastrowid

    def save_bank_transactions(
        self, statement_id: int, transactions: list[BankTransaction]
    ) -> int:
        """Store the parsed rows of a statement. Returns the number stored."""
        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT INTO bank_transactions
                    (statement_id, row_index, transaction_date, description, amount, reference)
                VALUES (?, ?, ?, ?, ?, ?)
            """,
                [
                    (
                        statement_id,
                        tx.row_index,
                        tx.date.isoformat(),
                        tx.description,
                        str(tx.amount),
                        tx.reference,
                    )
                    for tx in transactions
                ],
            )
        return len(transactions)

    def get_statement_upload(self, statement_id: int) -> StatementUploadRecord | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM statement_uploads WHERE id = ?", (statement_id,)
            ).fetchone()
        return StatementUploadRecord.from_row(row) if row else None

    def list_statement_uploads(self, limit: int = 20) -> list[StatementUploadRecord]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM statement_uploads ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [StatementUploadRecord.from_row(r) for r in rows]

    def list_bank_transactions(
        self,
        statement_id: int | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[BankTransaction]:
        """Stored statement rows, optionally limited to a statement and period."""
        clauses = []
        params: list[Any] = []
        if statement_id is not None:
            clauses.append("statement_id = ?")
            params.append(statement_id)
        if start_date is not None:
            clauses.append("transaction_date >= ?")
            params.append(start_date.isoformat())
        if end_date is not None:
            clauses.append("transaction_date <= ?")
            params.append(end_date.isoformat())
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM bank_transactions {where} ORDER BY id", params
            ).fetchall()

        return [_bank_transaction_from_row(row) for row in rows]

    def get_bank_transaction(self, transaction_id: int) -> BankTransaction | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM bank_transactions WHERE id = ?", (transaction_id,)
            ).fetchone()
        return _bank_transaction_from_row(row) if row else None

    # Manual match methods

    def create_manual_match(
        self, receipt_id: int, bank_transaction_id: int, notes: str | None = None
    ) -> int:
        """
        Pin a receipt to a bank transaction.

        Returns:
            Id of the new manual match

        Raises:
            ValueError: If either side does not exist or is already pinned
        """
        with self._transaction() as conn:
            if not conn.execute("SELECT 1 FROM receipts WHERE id = ?", (receipt_id,)).fetchone():
                raise ValueError(f"Receipt #{receipt_id} does not exist")
            if not conn.execute(
                "SELECT 1 FROM bank_transactions WHERE id = ?", (bank_transaction_id,)
            ).fetchone():
                raise ValueError(f"Bank transaction #{bank_transaction_id} does not exist")

            existing = conn.execute(
                """
                SELECT id FROM manual_matches
                WHERE receipt_id = ? OR bank_transaction_id = ?
            """,
                (receipt_id, bank_transaction_id),
            ).fetchone()
            if existing:
                raise ValueError(
                    f"Receipt #{receipt_id} or bank transaction #{bank_transaction_id} "
                    f"is already matched (manual match #{existing['id']})"
                )

            cursor = conn.execute(
                """
                INSERT INTO manual_matches (receipt_id, bank_transaction_id, notes, created_at)
                VALUES (?, ?, ?, ?)
            """,
                (receipt_id, bank_transaction_id, notes, _now()),
            )
            return cursor.lastrowid

    def delete_manual_match(self, match_id: int) -> bool:
        """Remove a manual match. Returns False if it did not exist."""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM manual_matches WHERE id = ?", (match_id,))
            return cursor.rowcount > 0

    def list_manual_matches(self) -> list[ManualMatchRecord]:
        with self._transaction() as conn:
            rows = conn.execute("SELECT * FROM manual_matches ORDER BY id").fetchall()
        return [ManualMatchRecord.from_row(r) for r in rows]

    # Reconciliation run methods

    def save_reconciliation_run(
        self,
        report: "MatchReport",
        statement_id: int | None = None,
        period_start: date | None = None,
        period_end: date | None = None,
    ) -> int:
        """Store a reconciliation report for history. Returns the run id."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO reconciliation_runs
                    (statement_id, period_start, period_end, matched_count,
                     unmatched_receipt_count, unmatched_transaction_count,
                     reconciliation_rate, report_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    statement_id,
                    _iso(period_start),
                    _iso(period_end),
                    report.matched_count,
                    report.unmatched_receipt_count,
                    report.unmatched_transaction_count,
                    report.reconciliation_rate,
                    json.dumps(report.to_dict()),
                    _now(),
                ),
            )
            return cursor.lastrowid

    def get_reconciliation_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        """Most recent reconciliation runs first."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM reconciliation_runs ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()

        runs = []
        for row in rows:
            run = dict(row)
            run["report"] = json.loads(run.pop("report_json"))
            runs.append(run)
        return runs
