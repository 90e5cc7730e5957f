"""
Migration 002: Adjustment ledger.

Append-only. Entries are never edited; a replacement entry points at the
entry it supersedes and the old entry records superseded_by_id.
calculated_amount is the resolved, positive currency amount; the
adjustment_type carries the direction.
"""

import sqlite3

VERSION = 2
NAME = "quote_adjustments"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the quote_adjustments table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS quote_adjustments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            quote_id INTEGER NOT NULL,
            adjustment_type TEXT NOT NULL,  -- discount, surcharge, refund, offset_discount, offset_credit
            value_type TEXT NOT NULL DEFAULT 'fixed',  -- fixed, percentage
            value TEXT NOT NULL,
            calculated_amount TEXT NOT NULL,
            reason TEXT,
            method TEXT,  -- refunds: original payment method, store credit, ...
            reference TEXT,
            supersedes_id INTEGER,
            superseded_by_id INTEGER,
            created_by INTEGER,
            created_at TEXT NOT NULL,

            FOREIGN KEY (quote_id) REFERENCES quotes(id),
            FOREIGN KEY (supersedes_id) REFERENCES quote_adjustments(id)
        )
        """
    )

    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_adjustments_quote_id ON quote_adjustments(quote_id)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_adjustments_type ON quote_adjustments(adjustment_type)"
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove the adjustment ledger."""
    conn.execute("DROP INDEX IF EXISTS idx_adjustments_type")
    conn.execute("DROP INDEX IF EXISTS idx_adjustments_quote_id")
    conn.execute("DROP TABLE IF EXISTS quote_adjustments")
