"""
Migration 001: Add statement_uploads and bank_transactions tables.

Imported bank statement exports and their parsed rows.
"""

import sqlite3

VERSION = 1
NAME = "bank_statements"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create statement_uploads and bank_transactions tables."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS statement_uploads (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            filename TEXT NOT NULL,
            content_hash TEXT NOT NULL,
            total_rows INTEGER NOT NULL DEFAULT 0,
            transaction_count INTEGER NOT NULL DEFAULT 0,
            error_count INTEGER NOT NULL DEFAULT 0,
            errors TEXT,  -- JSON: [{"row_index", "raw", "reason"}, ...]
            uploaded_at TEXT NOT NULL
        )
    """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS bank_transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            statement_id INTEGER NOT NULL,
            row_index INTEGER,
            transaction_date TEXT NOT NULL,  -- YYYY-MM-DD
            description TEXT NOT NULL,
            amount TEXT NOT NULL,  -- signed decimal string
            reference TEXT,
            FOREIGN KEY (statement_id) REFERENCES statement_uploads(id)
        )
    """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_bank_transactions_statement "
        "ON bank_transactions(statement_id)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_bank_transactions_date "
        "ON bank_transactions(transaction_date)"
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove bank statement tables."""
    conn.execute("DROP TABLE IF EXISTS bank_transactions")
    conn.execute("DROP TABLE IF EXISTS statement_uploads")
