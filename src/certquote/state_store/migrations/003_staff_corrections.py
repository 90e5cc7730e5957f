"""
Migration 003: Staff corrections audit log.

Write-once. ai_value holds the value immediately before each edit, so
repeated corrections of the same field form a complete chain.
"""

import sqlite3

VERSION = 3
NAME = "staff_corrections"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the staff_corrections table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS staff_corrections (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            quote_id INTEGER NOT NULL,
            analysis_id INTEGER,
            group_id INTEGER,
            file_id INTEGER,
            page_id INTEGER,
            field_name TEXT NOT NULL,
            ai_value TEXT,
            corrected_value TEXT,
            reason TEXT,
            submit_to_knowledge_base INTEGER NOT NULL DEFAULT 0,
            knowledge_base_comment TEXT,
            staff_id INTEGER,
            created_at TEXT NOT NULL,

            FOREIGN KEY (quote_id) REFERENCES quotes(id)
        )
        """
    )

    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_corrections_quote_id ON staff_corrections(quote_id)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_corrections_field ON staff_corrections(field_name)"
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_corrections_knowledge_base
        ON staff_corrections(submit_to_knowledge_base)
        """
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove the corrections audit log."""
    conn.execute("DROP INDEX IF EXISTS idx_corrections_knowledge_base")
    conn.execute("DROP INDEX IF EXISTS idx_corrections_field")
    conn.execute("DROP INDEX IF EXISTS idx_corrections_quote_id")
    conn.execute("DROP TABLE IF EXISTS staff_corrections")
