"""
Quote builder: staff-authored pricing.

finalize_quote() writes a complete, staff-approved pricing snapshot onto an
existing quote; create_fast_quote() builds a new quote (customer, manual
document lines, adjustments) without AI analysis.

Both paths apply the same checks as incremental corrections:
- every line is priced by the calculator; a line_total supplied by staff
  must match billable_pages x rate x language multiplier to the cent
- totals are recomputed by the aggregator, never taken from the snapshot;
  a claimed total that disagrees with the computed one rejects the whole
  operation
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from ..errors import NotFoundError, ValidationError
from ..schemas.activity import ActivityEvent, ActivityType
from ..schemas.amounts import CURRENCY_PRECISION, is_page_multiple, validate_multiplier
from ..schemas.quote_totals import AdjustmentType, QuoteTotals, ValueType
from ..schemas.snapshot import AdjustmentInput, CustomerInput, FastQuoteRequest, PricingSnapshot, SnapshotLine
from ..state_store import FINALIZED_STATUSES, AnalysisRecord, QuoteRecord, QuoteStatus, StateStore
from .activity import ActivityDispatcher
from .adjustments import AdjustmentLedger
from .rate_table import RateTable
from .totals import QuoteTotalsAggregator, require_open_quote

logger = logging.getLogger(__name__)


@dataclass
class PricedLine:
    """A snapshot line after validation and pricing."""

    word_count: int
    page_count: int
    complexity: str
    complexity_multiplier: Decimal
    billable_pages: Decimal
    base_rate: Decimal
    line_total: Decimal
    certification_type_id: int | None
    certification_price: Decimal
    billable_pages_pinned: bool


@dataclass
class FinalizeResult:
    """Result of finalize_quote."""

    quote_id: int
    totals: QuoteTotals
    analysis_ids: list[int]


@dataclass
class FastQuoteResult:
    """Result of create_fast_quote."""

    quote_id: int
    quote_number: str
    customer_id: int
    totals: QuoteTotals
    analysis_ids: list[int]


class QuoteBuilder:
    """Writes staff-built pricing snapshots."""

    def __init__(
        self,
        store: StateStore,
        rates: RateTable,
        aggregator: QuoteTotalsAggregator,
        ledger: AdjustmentLedger,
        dispatcher: ActivityDispatcher,
    ):
        self.store = store
        self.rates = rates
        self.aggregator = aggregator
        self.ledger = ledger
        self.dispatcher = dispatcher

    # -------------------------------------------------------------------------
    # Line pricing
    # -------------------------------------------------------------------------

    def price_line(self, index: int, line: SnapshotLine, language_multiplier: Decimal) -> PricedLine:
        """Validate and price one snapshot line.

        Raises:
            ValidationError: If the line is inconsistent
        """
        where = f"Line {index + 1}"
        multiplier = (
            validate_multiplier(line.complexity_multiplier, field_name=f"{where} complexity_multiplier")
            if line.complexity_multiplier is not None
            else self.rates.complexity_multiplier(line.complexity)
        )
        base_rate = line.base_rate if line.base_rate is not None else self.rates.base_rate
        if base_rate <= 0:
            raise ValidationError(f"{where}: base_rate must be positive, got {base_rate}")
        line_multiplier = (
            validate_multiplier(line.language_multiplier, field_name=f"{where} language_multiplier")
            if line.language_multiplier is not None
            else language_multiplier
        )

        if line.billable_pages is not None:
            billable = line.billable_pages
            if billable < 0 or not is_page_multiple(billable):
                raise ValidationError(
                    f"{where}: billable_pages must be a non-negative multiple of 0.1, got {billable}"
                )
        else:
            billable = self.rates.calculator.price(
                line.word_count, multiplier, line_multiplier, base_rate
            ).billable_pages

        derived = self.rates.calculator.line_total(billable, base_rate, line_multiplier)
        if line.line_total is not None and abs(line.line_total - derived) > CURRENCY_PRECISION:
            raise ValidationError(
                f"{where}: line_total {line.line_total} does not match "
                f"{billable} pages x {base_rate} x {line_multiplier} = {derived}"
            )

        if line.certification_type_id is not None:
            listed_price = self.rates.certification_price(line.certification_type_id)
            cert_price = line.certification_price if line.certification_price is not None else listed_price
        else:
            cert_price = line.certification_price if line.certification_price is not None else Decimal("0.00")
        if cert_price < 0:
            raise ValidationError(f"{where}: certification_price must not be negative")

        return PricedLine(
            word_count=line.word_count,
            page_count=line.page_count,
            complexity=line.complexity,
            complexity_multiplier=multiplier,
            billable_pages=billable,
            base_rate=base_rate,
            line_total=derived,
            certification_type_id=line.certification_type_id,
            certification_price=cert_price,
            billable_pages_pinned=line.billable_pages is not None,
        )

    def _write_line(
        self,
        quote: QuoteRecord,
        line: SnapshotLine,
        priced: PricedLine,
        staff_id: int | None,
        is_staff_created: bool,
    ) -> int:
        """Update the targeted analysis, or insert a manual one. Returns its ID."""
        analysis: AnalysisRecord | None = None
        if line.analysis_id is not None:
            analysis = self.store.get_analysis(line.analysis_id)
            if analysis is None or analysis.quote_id != quote.id:
                raise NotFoundError("Analysis result", line.analysis_id)
        elif line.file_id is not None:
            file = self.store.get_file(line.file_id)
            if file is None or file.quote_id != quote.id:
                raise NotFoundError("File", line.file_id)
            analysis = self.store.get_analysis_by_file(line.file_id)

        fields: dict[str, Any] = {
            "assessed_complexity": priced.complexity,
            "complexity_multiplier": priced.complexity_multiplier,
            "word_count": priced.word_count,
            "page_count": priced.page_count,
            "billable_pages": priced.billable_pages,
            "base_rate": priced.base_rate,
            "line_total": priced.line_total,
            "certification_type_id": priced.certification_type_id,
            "certification_price": priced.certification_price,
            "overridden_fields": ["billable_pages"] if priced.billable_pages_pinned else [],
        }
        if line.detected_language is not None:
            fields["detected_language"] = line.detected_language
        if line.document_type is not None:
            fields["detected_document_type"] = line.document_type

        if analysis is not None:
            self.store.update_analysis_fields(analysis.id, fields)
            return analysis.id

        analysis_id = self.store.create_analysis(
            quote_id=quote.id,
            base_rate=priced.base_rate,
            file_id=line.file_id,
            manual_label=line.label or f"Document {line.file_id or ''}".strip(),
            is_staff_created=is_staff_created,
            created_by_staff_id=staff_id,
        )
        self.store.update_analysis_fields(analysis_id, fields)
        return analysis_id

    def _write_adjustments(
        self, quote_id: int, snapshot: PricingSnapshot, staff_id: int | None
    ) -> None:
        """Make the snapshot's discount/surcharge the quote's active entries."""
        entries: list[tuple[AdjustmentType, AdjustmentInput | None]] = [
            (AdjustmentType.DISCOUNT, snapshot.discount),
            (AdjustmentType.SURCHARGE, snapshot.surcharge),
        ]
        for adjustment_type, entry in entries:
            if entry is None:
                # The snapshot is complete: no entry means none applies
                self.ledger.set_adjustment(
                    quote_id, adjustment_type, ValueType.FIXED, Decimal("0"), staff_id=staff_id
                )
                continue
            self.ledger.set_adjustment(
                quote_id,
                adjustment_type,
                entry.value_type,
                entry.value,
                reason=entry.reason,
                staff_id=staff_id,
            )

    @staticmethod
    def _check_claimed_total(snapshot: PricingSnapshot, totals: QuoteTotals) -> None:
        if snapshot.claimed_total is None:
            return
        if abs(snapshot.claimed_total - totals.total) > CURRENCY_PRECISION:
            raise ValidationError(
                f"Submitted total {snapshot.claimed_total} does not match the computed "
                f"total {totals.total}"
            )

    # -------------------------------------------------------------------------
    # Finalize
    # -------------------------------------------------------------------------

    def finalize_quote(
        self,
        quote_id: int,
        snapshot: PricingSnapshot,
        staff_notes: str | None = None,
        staff_id: int | None = None,
    ) -> FinalizeResult:
        """
        Write a staff-approved pricing snapshot and mark the quote ready.

        Raises:
            ValidationError: If a line is invalid, the quote was already paid
                against, or the claimed total disagrees
            NotFoundError: If the quote or a referenced entity does not exist
        """
        with self.store.quote_transaction(quote_id):
            quote = require_open_quote(self.store, quote_id)
            if quote.status in FINALIZED_STATUSES:
                raise ValidationError(
                    f"Quote {quote.quote_number} is {quote.status.value}; it cannot be re-finalized"
                )

            language_multiplier = self.rates.language_multiplier(quote)
            priced = [self.price_line(i, line, language_multiplier) for i, line in enumerate(snapshot.lines)]
            analysis_ids = [
                self._write_line(quote, line, p, staff_id, is_staff_created=line.file_id is None)
                for line, p in zip(snapshot.lines, priced)
            ]

            fields: dict[str, Any] = {
                "is_rush": snapshot.is_rush,
                "status": QuoteStatus.QUOTE_READY,
            }
            if snapshot.delivery_option_id is not None:
                fields["delivery_option_id"] = snapshot.delivery_option_id
                fields["delivery_fee"] = self.rates.delivery_fee(snapshot.delivery_option_id)
            if snapshot.tax_rate is not None:
                fields["tax_rate"] = snapshot.tax_rate
            if staff_notes:
                fields["staff_notes"] = staff_notes
            self.store.update_quote_fields(quote_id, fields)

            self._write_adjustments(quote_id, snapshot, staff_id)
            totals = self.aggregator.recompute(quote_id)
            self._check_claimed_total(snapshot, totals)

            self.dispatcher.dispatch(
                ActivityEvent(
                    ActivityType.QUOTE_FINALIZED,
                    staff_id,
                    "quote",
                    quote_id,
                    quote_id,
                    {
                        "quote_number": quote.quote_number,
                        "document_count": len(analysis_ids),
                        "total": totals.total,
                        "staff_notes": staff_notes,
                    },
                )
            )

        logger.info(f"Finalized quote {quote.quote_number}: {len(analysis_ids)} lines, total {totals.total}")
        return FinalizeResult(quote_id=quote_id, totals=totals, analysis_ids=analysis_ids)

    # -------------------------------------------------------------------------
    # Fast quote
    # -------------------------------------------------------------------------

    def _resolve_customer(self, customer: CustomerInput) -> int:
        """Existing customer ID, else match by email then phone, else create."""
        if customer.existing_customer_id is not None:
            if self.store.get_customer(customer.existing_customer_id) is None:
                raise NotFoundError("Customer", customer.existing_customer_id)
            return customer.existing_customer_id

        found = self.store.find_customer(email=customer.email, phone=customer.phone)
        if found is not None:
            logger.debug(f"Fast quote: matched existing customer {found.id}")
            return found.id
        return self.store.create_customer(customer.full_name, customer.email, customer.phone)

    def create_fast_quote(self, request: FastQuoteRequest, staff_id: int | None = None) -> FastQuoteResult:
        """
        Create a complete quote from staff input, without AI analysis.

        Raises:
            ValidationError: If a line is invalid or the claimed total disagrees
            NotFoundError: If a language, customer or reference does not exist
        """
        source = self.rates.resolve_language(request.source_language)
        target = self.rates.resolve_language(request.target_language)
        pricing = request.pricing

        with self.store.transaction(immediate=True):
            customer_id = self._resolve_customer(request.customer)
            quote_id = self.store.create_quote(
                customer_id=customer_id,
                tax_rate=pricing.tax_rate if pricing.tax_rate is not None else self.rates.default_tax_rate,
                source_language_id=source.id,
                target_language_id=target.id,
                is_rush=pricing.is_rush,
                delivery_option_id=pricing.delivery_option_id,
                is_manual=True,
                created_by_staff_id=staff_id,
                staff_notes=request.notes,
            )

            with self.store.quote_transaction(quote_id):
                quote = self.store.require_quote(quote_id)
                if pricing.delivery_option_id is not None:
                    self.store.update_quote_fields(
                        quote_id, {"delivery_fee": self.rates.delivery_fee(pricing.delivery_option_id)}
                    )

                language_multiplier = self.rates.language_multiplier(quote)
                analysis_ids = []
                for i, line in enumerate(pricing.lines):
                    if line.analysis_id is not None or line.file_id is not None:
                        raise ValidationError(f"Line {i + 1}: fast quote documents cannot reference files")
                    priced = self.price_line(i, line, language_multiplier)
                    analysis_ids.append(
                        self._write_line(quote, line, priced, staff_id, is_staff_created=True)
                    )

                self._write_adjustments(quote_id, pricing, staff_id)
                self.store.update_quote_fields(quote_id, {"status": QuoteStatus.QUOTE_READY})
                totals = self.aggregator.recompute(quote_id)
                self._check_claimed_total(pricing, totals)

                self.dispatcher.dispatch(
                    ActivityEvent(
                        ActivityType.FAST_QUOTE_CREATED,
                        staff_id,
                        "quote",
                        quote_id,
                        quote_id,
                        {
                            "quote_number": quote.quote_number,
                            "customer_id": customer_id,
                            "document_count": len(analysis_ids),
                            "total": totals.total,
                        },
                    )
                )

        logger.info(f"Created fast quote {quote.quote_number} for customer {customer_id}: {totals.total}")
        return FastQuoteResult(
            quote_id=quote_id,
            quote_number=quote.quote_number,
            customer_id=customer_id,
            totals=totals,
            analysis_ids=analysis_ids,
        )
