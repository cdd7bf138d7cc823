"""
Migration 002: Add reconciliation_runs table.

History of reconciliation reports. A stored run is informational only;
reports are always recomputed from receipts and statements.
"""

import sqlite3

VERSION = 2
NAME = "reconciliation_runs"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create reconciliation_runs table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS reconciliation_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            statement_id INTEGER,
            period_start TEXT,
            period_end TEXT,
            matched_count INTEGER NOT NULL,
            unmatched_receipt_count INTEGER NOT NULL,
            unmatched_transaction_count INTEGER NOT NULL,
            reconciliation_rate REAL NOT NULL,
            report_json TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
    """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_reconciliation_runs_created "
        "ON reconciliation_runs(created_at)"
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove reconciliation_runs table."""
    conn.execute("DROP TABLE IF EXISTS reconciliation_runs")
