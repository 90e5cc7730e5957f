"""
Migration 001: Document groups and item assignments.

A document group prices several files/pages as one unit. Each file or page
may be assigned to at most one group at a time; the partial unique indexes
enforce that at the database level.
"""

import sqlite3

VERSION = 1
NAME = "document_groups"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create document_groups and group_assignments."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS document_groups (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            quote_id INTEGER NOT NULL,
            group_number INTEGER NOT NULL,
            group_label TEXT NOT NULL,
            document_type TEXT,
            complexity TEXT NOT NULL DEFAULT 'easy',
            complexity_multiplier TEXT NOT NULL DEFAULT '1.00',
            certification_type_id INTEGER,
            certification_price TEXT NOT NULL DEFAULT '0.00',
            word_count INTEGER NOT NULL DEFAULT 0,
            total_pages INTEGER NOT NULL DEFAULT 0,
            billable_pages TEXT NOT NULL DEFAULT '0.0',
            line_total TEXT NOT NULL DEFAULT '0.00',
            created_by INTEGER,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,

            FOREIGN KEY (quote_id) REFERENCES quotes(id),
            FOREIGN KEY (certification_type_id) REFERENCES certification_types(id)
        )
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS group_assignments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            group_id INTEGER NOT NULL,
            quote_id INTEGER NOT NULL,
            item_type TEXT NOT NULL,  -- file, page
            file_id INTEGER,
            page_id INTEGER,
            word_count_override INTEGER,
            assigned_by INTEGER,
            assigned_at TEXT NOT NULL,

            FOREIGN KEY (group_id) REFERENCES document_groups(id),
            FOREIGN KEY (file_id) REFERENCES quote_files(id),
            FOREIGN KEY (page_id) REFERENCES quote_pages(id),
            CHECK (
                (item_type = 'file' AND file_id IS NOT NULL AND page_id IS NULL)
                OR (item_type = 'page' AND page_id IS NOT NULL AND file_id IS NULL)
            )
        )
        """
    )

    conn.execute("CREATE INDEX IF NOT EXISTS idx_groups_quote_id ON document_groups(quote_id)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_assignments_group_id ON group_assignments(group_id)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_assignments_quote_id ON group_assignments(quote_id)"
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_assignments_file_unique
        ON group_assignments(file_id) WHERE file_id IS NOT NULL
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_assignments_page_unique
        ON group_assignments(page_id) WHERE page_id IS NOT NULL
        """
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove document groups and assignments."""
    conn.execute("DROP INDEX IF EXISTS idx_assignments_page_unique")
    conn.execute("DROP INDEX IF EXISTS idx_assignments_file_unique")
    conn.execute("DROP INDEX IF EXISTS idx_assignments_quote_id")
    conn.execute("DROP INDEX IF EXISTS idx_assignments_group_id")
    conn.execute("DROP INDEX IF EXISTS idx_groups_quote_id")
    conn.execute("DROP TABLE IF EXISTS group_assignments")
    conn.execute("DROP TABLE IF EXISTS document_groups")
