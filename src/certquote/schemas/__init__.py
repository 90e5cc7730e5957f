"""
SSOT (Single Source of Truth) schemas for the pricing core.

These canonical value objects are the ONLY models passed between modules.
No duplicated "near-same" models allowed.
"""

from .activity import ActivityEvent, ActivityType
from .amounts import (
    CURRENCY_PRECISION,
    PAGE_PRECISION,
    ZERO,
    is_page_multiple,
    quantize_currency,
    to_decimal,
    validate_amount,
    validate_multiplier,
    validate_rate,
    validate_word_count,
)
from .complexity import ComplexityLevel
from .corrections import (
    AnalysisCategoricalCorrection,
    AnalysisNumericCorrection,
    CorrectionField,
    CorrectionPayload,
    CorrectionVariant,
    CustomerFieldCorrection,
    FieldFamily,
    GroupFieldCorrection,
    PageWordCountCorrection,
    QuoteFieldCorrection,
    TargetRef,
    UnknownFieldCorrection,
    parse_correction,
    stringify_value,
)
from .quote_totals import (
    AdjustmentType,
    QuoteTotals,
    ValueType,
    compute_totals,
)
from .snapshot import (
    AdjustmentInput,
    CustomerInput,
    FastQuoteRequest,
    PricingSnapshot,
    SnapshotLine,
)

__all__ = [
    # Amounts (SSOT)
    "CURRENCY_PRECISION",
    "PAGE_PRECISION",
    "ZERO",
    "is_page_multiple",
    "quantize_currency",
    "to_decimal",
    "validate_amount",
    "validate_multiplier",
    "validate_rate",
    "validate_word_count",
    "ComplexityLevel",
    # Totals
    "AdjustmentType",
    "ValueType",
    "QuoteTotals",
    "compute_totals",
    # Corrections
    "CorrectionField",
    "FieldFamily",
    "CorrectionPayload",
    "TargetRef",
    "CorrectionVariant",
    "AnalysisNumericCorrection",
    "AnalysisCategoricalCorrection",
    "GroupFieldCorrection",
    "PageWordCountCorrection",
    "QuoteFieldCorrection",
    "CustomerFieldCorrection",
    "UnknownFieldCorrection",
    "parse_correction",
    "stringify_value",
    # Snapshots
    "AdjustmentInput",
    "CustomerInput",
    "FastQuoteRequest",
    "PricingSnapshot",
    "SnapshotLine",
    # Activity
    "ActivityEvent",
    "ActivityType",
]
