"""
Staff activity events.

Service operations return ActivityEvent values alongside their primary
result; the ActivityDispatcher is the only place that persists them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any


class ActivityType(str, Enum):
    """Kinds of staff activity recorded in the activity log."""

    ANALYSIS_INGESTED = "analysis_ingested"
    TOTALS_RECOMPUTED = "totals_recomputed"
    CORRECTION_APPLIED = "correction_applied"
    GROUP_CREATED = "group_created"
    GROUP_UPDATED = "group_updated"
    GROUP_DELETED = "group_deleted"
    ITEM_ASSIGNED = "item_assigned"
    ITEM_UNASSIGNED = "item_unassigned"
    ADJUSTMENT_ADDED = "adjustment_added"
    ADJUSTMENT_SUPERSEDED = "adjustment_superseded"
    BALANCE_OFFSET = "balance_offset"
    REFUND_RECORDED = "refund_recorded"
    PAYMENT_RECORDED = "payment_recorded"
    QUOTE_FINALIZED = "quote_finalized"
    FAST_QUOTE_CREATED = "fast_quote_created"


def _json_safe(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


@dataclass(frozen=True)
class ActivityEvent:
    """One staff activity log entry, not yet persisted."""

    activity_type: ActivityType
    staff_id: int | None
    entity_type: str
    entity_id: int | None
    quote_id: int | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def details_json_safe(self) -> dict[str, Any]:
        """Details with Decimal and Enum values converted for JSON."""
        return _json_safe(self.details)
