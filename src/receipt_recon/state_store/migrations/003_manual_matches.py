"""
Migration 003: Add manual_matches table.

Receipt/transaction pairs confirmed by a user. Each receipt and each bank
transaction takes part in at most one manual match.
"""

import sqlite3

VERSION = 3
NAME = "manual_matches"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create manual_matches table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS manual_matches (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            receipt_id INTEGER NOT NULL UNIQUE,
            bank_transaction_id INTEGER NOT NULL UNIQUE,
            notes TEXT,
            created_at TEXT NOT NULL,
            FOREIGN KEY (receipt_id) REFERENCES receipts(id),
            FOREIGN KEY (bank_transaction_id) REFERENCES bank_transactions(id)
        )
    """
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove manual_matches table."""
    conn.execute("DROP TABLE IF EXISTS manual_matches")
