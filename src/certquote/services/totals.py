"""
Quote totals aggregator.

The ONLY writer of quote totals. recompute() reads the quote's current priced
units and active ledger entries, folds them with compute_totals() and writes
the flat columns plus the calculated_totals snapshot in one statement.

Priced units:
- every document group with at least one assignment (line_total +
  certification_price)
- every analysis result whose file is not grouped; staff-created lines are
  always standalone
- for a file with only some pages grouped, one remainder unit: the ungrouped
  pages' word counts priced with the analysis's multiplier, rate and
  certification

Balance:
    balance_due = max(0, total - amount_paid - Σ offset_credit)
    overpayment_credit = max(0, amount_paid + Σ offset_credit - total)

Recompute is idempotent and runs inside the caller's unit of work when there
is one; on any error nothing is written and prior totals stay in place.
"""

import logging
from decimal import Decimal

from ..errors import ConsistencyFailure, ValidationError
from ..pricing import PricingResult
from ..schemas.amounts import ZERO, quantize_currency
from ..schemas.quote_totals import AdjustmentType, QuoteTotals, compute_totals
from ..state_store import (
    TERMINAL_STATUSES,
    AnalysisRecord,
    ItemType,
    QuoteRecord,
    QuoteStatus,
    StateStore,
)
from .rate_table import RateTable

logger = logging.getLogger(__name__)

# Statuses in which the balance decides between paid and balance_due
_SETTLEMENT_STATUSES = frozenset({QuoteStatus.PAID, QuoteStatus.BALANCE_DUE})
_PAYABLE_STATUSES = frozenset({QuoteStatus.QUOTE_READY, QuoteStatus.AWAITING_PAYMENT})


def require_open_quote(store: StateStore, quote_id: int) -> QuoteRecord:
    """Get a quote that still accepts pricing changes.

    Raises:
        NotFoundError: If the quote does not exist
        ValidationError: If the quote is completed or cancelled
    """
    quote = store.require_quote(quote_id)
    if quote.status in TERMINAL_STATUSES:
        raise ValidationError(f"Quote {quote.quote_number} is {quote.status.value}; pricing is locked")
    return quote


def settle_status(status: QuoteStatus, balance_due: Decimal, amount_paid: Decimal) -> QuoteStatus:
    """Status implied by the balance.

    Paid quotes flip to balance_due when money is owed again and back to paid
    once it is settled. A payable quote becomes paid/balance_due on its first
    payment. Other statuses are left alone.
    """
    if status in _SETTLEMENT_STATUSES or (status in _PAYABLE_STATUSES and amount_paid > 0):
        return QuoteStatus.BALANCE_DUE if balance_due > 0 else QuoteStatus.PAID
    return status


class QuoteTotalsAggregator:
    """Folds priced units and the adjustment ledger into quote totals."""

    def __init__(self, store: StateStore, rates: RateTable):
        self.store = store
        self.rates = rates

    def compute(self, quote_id: int) -> QuoteTotals:
        """Derive totals from the current records without writing anything.

        Raises:
            NotFoundError: If the quote does not exist
            ConsistencyFailure: If an assignment points at a missing item or group
        """
        quote = self.store.require_quote(quote_id)
        line_totals, certification_prices = self._priced_units(quote)

        quote_cert_total = sum(
            (c.line_amount for c in self.store.list_quote_certifications(quote_id)), ZERO
        )
        adjustments = [
            (AdjustmentType(a.adjustment_type), a.calculated_amount)
            for a in self.store.list_adjustments(quote_id, active_only=True)
        ]

        return compute_totals(
            line_totals=line_totals,
            certification_prices=certification_prices,
            quote_certification_total=quote_cert_total,
            adjustments=adjustments,
            is_rush=quote.is_rush,
            rush_rate=self.rates.rush_rate,
            delivery_fee=quote.delivery_fee,
            tax_rate=quote.tax_rate,
            language_multiplier=self.rates.language_multiplier(quote),
        )

    def recompute(self, quote_id: int) -> QuoteTotals:
        """Recompute and persist a quote's totals, balance and settlement status.

        Raises:
            NotFoundError: If the quote does not exist
            ConsistencyFailure: If totals cannot be derived; prior totals are kept
        """
        with self.store.quote_transaction(quote_id):
            quote = self.store.require_quote(quote_id)
            totals = self.compute(quote_id)

            offset_credits = sum(
                (
                    a.calculated_amount
                    for a in self.store.list_adjustments(quote_id, active_only=True)
                    if a.adjustment_type == AdjustmentType.OFFSET_CREDIT.value
                ),
                ZERO,
            )
            covered = quote.amount_paid + offset_credits
            balance_due = quantize_currency(max(ZERO, totals.total - covered))
            overpayment = quantize_currency(max(ZERO, covered - totals.total))
            status = settle_status(quote.status, balance_due, quote.amount_paid)

            self.store.write_quote_totals(
                quote_id,
                totals,
                balance_due=balance_due,
                overpayment_credit=overpayment,
                status=status if status != quote.status else None,
            )

        if status != quote.status:
            logger.info(f"Quote {quote.quote_number}: {quote.status.value} -> {status.value}")
        logger.debug(f"Recomputed quote {quote.quote_number}: total={totals.total}")
        return totals

    def _priced_units(self, quote: QuoteRecord) -> tuple[list[Decimal], list[Decimal]]:
        """line_total and certification_price of every billable unit."""
        groups = {g.id: g for g in self.store.list_groups(quote.id)}
        members: dict[int, int] = {}
        whole_files: set[int] = set()
        grouped_pages: dict[int, set[int]] = {}

        for assignment in self.store.list_quote_assignments(quote.id):
            if assignment.group_id not in groups:
                raise ConsistencyFailure(
                    f"Assignment {assignment.id} references missing group {assignment.group_id}"
                )
            if assignment.item_type == ItemType.FILE:
                file = self.store.get_file(assignment.file_id)
                if file is None or file.quote_id != quote.id:
                    raise ConsistencyFailure(
                        f"Assignment {assignment.id} references missing file {assignment.file_id}"
                    )
                whole_files.add(file.id)
            else:
                page = self.store.get_page(assignment.page_id)
                if page is None or page.quote_id != quote.id:
                    raise ConsistencyFailure(
                        f"Assignment {assignment.id} references missing page {assignment.page_id}"
                    )
                grouped_pages.setdefault(page.file_id, set()).add(page.id)
            members[assignment.group_id] = members.get(assignment.group_id, 0) + 1

        line_totals: list[Decimal] = []
        certification_prices: list[Decimal] = []

        for analysis in self.store.list_analyses(quote.id):
            if analysis.file_id in whole_files:
                continue
            if analysis.file_id in grouped_pages:
                remainder = self._remainder(quote, analysis, grouped_pages[analysis.file_id])
                if remainder is not None:
                    line_totals.append(remainder.line_total)
                    certification_prices.append(remainder.certification_price)
                continue
            line_totals.append(analysis.line_total)
            certification_prices.append(analysis.certification_price)

        # Empty groups are visible to staff but price nothing
        for group_id, group in groups.items():
            if members.get(group_id):
                line_totals.append(group.line_total)
                certification_prices.append(group.certification_price)

        return line_totals, certification_prices

    def _remainder(
        self, quote: QuoteRecord, analysis: AnalysisRecord, grouped_page_ids: set[int]
    ) -> PricingResult | None:
        # Pinned billable_pages/line_total describe the whole file and do not apply here
        loose = [
            p for p in self.store.list_pages(quote.id, analysis.file_id) if p.id not in grouped_page_ids
        ]
        if not loose:
            return None
        return self.rates.calculator.price(
            sum(p.word_count for p in loose),
            analysis.complexity_multiplier,
            language_multiplier=self.rates.language_multiplier(quote),
            base_rate=analysis.base_rate,
            certification_price=analysis.certification_price,
        )
