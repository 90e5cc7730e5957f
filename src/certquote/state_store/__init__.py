"""
State Store (SQLite-based).

Persistent DB for the pricing core:
- Reference data (certifications, languages, document types, delivery, staff)
- Quotes with their files, pages and analysis results
- Document groups and assignments
- Adjustment ledger, correction audit log, staff activity log

Enforces at most one assignment per file/page and one analysis per file.
"""

from .sqlite_store import (
    FINALIZED_STATUSES,
    TERMINAL_STATUSES,
    ActivityRecord,
    AdjustmentRecord,
    AnalysisRecord,
    AssignmentRecord,
    CertificationTypeRecord,
    CorrectionRecord,
    CustomerRecord,
    DeliveryOptionRecord,
    DocumentGroupRecord,
    DocumentTypeRecord,
    ItemType,
    LanguageRecord,
    QuoteCertificationRecord,
    QuoteFileRecord,
    QuotePageRecord,
    QuoteRecord,
    QuoteStatus,
    StaffRecord,
    StateStore,
)

__all__ = [
    "StateStore",
    "QuoteStatus",
    "ItemType",
    "FINALIZED_STATUSES",
    "TERMINAL_STATUSES",
    "ActivityRecord",
    "AdjustmentRecord",
    "AnalysisRecord",
    "AssignmentRecord",
    "CertificationTypeRecord",
    "CorrectionRecord",
    "CustomerRecord",
    "DeliveryOptionRecord",
    "DocumentGroupRecord",
    "DocumentTypeRecord",
    "LanguageRecord",
    "QuoteCertificationRecord",
    "QuoteFileRecord",
    "QuotePageRecord",
    "QuoteRecord",
    "StaffRecord",
]
