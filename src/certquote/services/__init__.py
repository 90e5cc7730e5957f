"""Pricing services: groups, ledger, corrections, totals and the QuoteDesk facade."""

from certquote.services.activity import ActivityDispatcher
from certquote.services.adjustments import AdjustmentLedger
from certquote.services.corrections import CorrectionOutcome, CorrectionService
from certquote.services.document_groups import DocumentGroupManager
from certquote.services.intake import AnalysisIntakeService
from certquote.services.quote_builder import FastQuoteResult, FinalizeResult, QuoteBuilder
from certquote.services.rate_table import RateTable
from certquote.services.totals import QuoteTotalsAggregator, require_open_quote, settle_status
from certquote.services.workbench import QuoteDesk

__all__ = [
    "ActivityDispatcher",
    "AdjustmentLedger",
    "AnalysisIntakeService",
    "CorrectionOutcome",
    "CorrectionService",
    "DocumentGroupManager",
    "FastQuoteResult",
    "FinalizeResult",
    "QuoteBuilder",
    "QuoteDesk",
    "QuoteTotalsAggregator",
    "RateTable",
    "require_open_quote",
    "settle_status",
]
