"""
Migration 004: Staff activity log.
"""

import sqlite3

VERSION = 4
NAME = "staff_activity_log"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the staff_activity_log table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS staff_activity_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            staff_id INTEGER,
            activity_type TEXT NOT NULL,
            entity_type TEXT NOT NULL,
            entity_id INTEGER,
            quote_id INTEGER,
            details TEXT,  -- JSON object
            created_at TEXT NOT NULL
        )
        """
    )

    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_activity_quote_id ON staff_activity_log(quote_id)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_activity_staff_id ON staff_activity_log(staff_id)"
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove the staff activity log."""
    conn.execute("DROP INDEX IF EXISTS idx_activity_staff_id")
    conn.execute("DROP INDEX IF EXISTS idx_activity_quote_id")
    conn.execute("DROP TABLE IF EXISTS staff_activity_log")
