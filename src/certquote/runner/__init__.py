"""
CLI runner module.

Provides commands:
- init / load-reference: Set up config, database and reference data
- new-quote / ingest: Open a quote and store file analyses
- recompute / show / status: Inspect pricing
- correct / finalize / corrections: Staff corrections and snapshots
- offset / refund: Balance reconciliation
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
