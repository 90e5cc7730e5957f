"""Schema steps for the pricing store (groups, ledger, corrections, activity)."""

from .runner import MigrationRunner, SchemaStep, discover_steps

__all__ = ["MigrationRunner", "SchemaStep", "discover_steps"]
