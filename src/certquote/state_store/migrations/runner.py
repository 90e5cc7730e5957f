"""
Versioned schema changes for the pricing store.

Each module in this package named NNN_<name>.py is one step of the schema
history. A step defines VERSION (int), NAME (str), upgrade(conn) and
optionally downgrade(conn). Versions must run 1..n without gaps because
later steps reference tables created by earlier ones (group assignments
before adjustments, adjustments before corrections).

Every step runs inside its own explicit transaction together with its
bookkeeping row in schema_migrations, so a failed step leaves no trace.
"""

import importlib
import logging
import pkgutil
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

_STEP_PREFIX_LEN = 3


@dataclass(frozen=True)
class SchemaStep:
    """One versioned schema change."""

    version: int
    name: str
    upgrade: Callable[[sqlite3.Connection], None]
    downgrade: Callable[[sqlite3.Connection], None] | None = None

    @property
    def label(self) -> str:
        return f"{self.version:03d}_{self.name}"


def discover_steps() -> list[SchemaStep]:
    """Import every NNN_*.py step in this package, ordered by version."""
    from certquote.state_store import migrations as package

    steps = []
    for info in pkgutil.iter_modules(package.__path__):
        if not info.name[:_STEP_PREFIX_LEN].isdigit():
            continue
        module = importlib.import_module(f"{package.__name__}.{info.name}")
        steps.append(
            SchemaStep(
                version=module.VERSION,
                name=module.NAME,
                upgrade=module.upgrade,
                downgrade=getattr(module, "downgrade", None),
            )
        )

    steps.sort(key=lambda s: s.version)
    expected = list(range(1, len(steps) + 1))
    found = [s.version for s in steps]
    if found != expected:
        raise RuntimeError(f"Schema steps must be numbered 1..n without gaps, found {found}")
    return steps


class MigrationRunner:
    """Brings a pricing database up (or down) to a schema version."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
            """
        )
        self.conn.commit()

    @property
    def current_version(self) -> int:
        row = self.conn.execute("SELECT COALESCE(MAX(version), 0) FROM schema_migrations").fetchone()
        return row[0]

    def applied_versions(self) -> set[int]:
        return {r[0] for r in self.conn.execute("SELECT version FROM schema_migrations")}

    def pending(self) -> list[SchemaStep]:
        done = self.applied_versions()
        return [s for s in discover_steps() if s.version not in done]

    def _run_step(self, step: SchemaStep, forward: bool) -> None:
        action = "upgrade" if forward else "downgrade"
        self.conn.execute("BEGIN")
        try:
            if forward:
                step.upgrade(self.conn)
                applied_at = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
                self.conn.execute(
                    "INSERT INTO schema_migrations (version, name, applied_at) VALUES (?, ?, ?)",
                    (step.version, step.name, applied_at),
                )
            else:
                step.downgrade(self.conn)
                self.conn.execute("DELETE FROM schema_migrations WHERE version = ?", (step.version,))
        except Exception as e:
            self.conn.rollback()
            logger.error(f"Schema {action} {step.label} failed: {e}")
            raise
        self.conn.commit()
        logger.info(f"Schema {action} {step.label} done")

    def upgrade(self) -> list[int]:
        """Apply every pending step; returns the versions applied."""
        applied = []
        for step in self.pending():
            self._run_step(step, forward=True)
            applied.append(step.version)
        if applied:
            logger.info(f"Pricing schema now at version {self.current_version}")
        return applied

    def downgrade_to(self, target_version: int) -> list[int]:
        """Undo applied steps above target_version, newest first."""
        if target_version < 0:
            raise ValueError(f"Invalid schema version: {target_version}")
        done = self.applied_versions()
        undone = []
        for step in reversed(discover_steps()):
            if step.version <= target_version or step.version not in done:
                continue
            if step.downgrade is None:
                raise NotImplementedError(f"Schema step {step.label} cannot be undone")
            self._run_step(step, forward=False)
            undone.append(step.version)
        return undone
