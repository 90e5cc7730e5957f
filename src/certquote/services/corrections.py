"""
Correction service: apply one staff override and record it.

Dispatch is over the closed set of correction variants produced by
parse_correction(); each variant has one handler. A handler mutates exactly
one field of one entity and reports the value it replaced.

Audit rules:
- ai_value is the live value immediately before this edit, so repeated
  corrections of the same field each keep their own prior value
- corrections that affect pricing write their audit record in the same unit
  of work as the mutation and the recompute; if the audit insert fails the
  whole correction rolls back
- corrections that do not affect pricing (labels, addresses, customer
  contact, unknown fields) write their audit record inside a savepoint; a
  failed insert is logged and the mutation stands
- unknown field names never error: they are recorded as generic corrections
  with no side effect

Manual override preservation: every corrected analysis field is recorded in
overridden_fields. Re-ingesting the file keeps pinned inputs (word count,
complexity, labels), and re-derivation never overwrites a pinned
billable_pages or line_total.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from ..errors import NotFoundError, ValidationError
from ..schemas.activity import ActivityEvent, ActivityType
from ..schemas.corrections import (
    AnalysisCategoricalCorrection,
    AnalysisNumericCorrection,
    CorrectionField,
    CorrectionPayload,
    CorrectionVariant,
    CustomerFieldCorrection,
    GroupFieldCorrection,
    PageWordCountCorrection,
    QuoteFieldCorrection,
    UnknownFieldCorrection,
    field_spec,
    parse_correction,
    stringify_value,
)
from ..schemas.quote_totals import AdjustmentType, QuoteTotals, ValueType
from ..state_store import AnalysisRecord, CorrectionRecord, ItemType, QuoteRecord, StateStore
from .activity import ActivityDispatcher
from .adjustments import AdjustmentLedger
from .document_groups import DocumentGroupManager
from .rate_table import RateTable
from .totals import QuoteTotalsAggregator, require_open_quote

logger = logging.getLogger(__name__)

DEFAULT_REASON = "Staff correction"

# Label and multiplier are one override
_COMPLEXITY_COLUMNS = frozenset({"assessed_complexity", "complexity_multiplier"})


def _pin(analysis: AnalysisRecord, column: str) -> list[str]:
    """overridden_fields after staff correct column."""
    columns = {column} | (_COMPLEXITY_COLUMNS if column in _COMPLEXITY_COLUMNS else set())
    return sorted(set(analysis.overridden_fields) | columns)


@dataclass
class _Change:
    """What a handler did."""

    prior_value: Any
    new_value: Any
    analysis_id: int | None = None
    group_id: int | None = None
    file_id: int | None = None
    page_id: int | None = None
    affects_pricing: bool = True
    suggestions: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class CorrectionOutcome:
    """Result of apply_correction."""

    correction_id: int | None
    field_name: str
    known_field: bool
    recomputed: bool
    prior_value: str | None
    corrected_value: str | None
    totals: QuoteTotals | None = None
    suggested_corrections: list[dict[str, Any]] = field(default_factory=list)

    @property
    def message(self) -> str:
        if not self.known_field:
            return f"Recorded correction of {self.field_name} (no pricing effect)"
        if self.recomputed:
            return f"Updated {self.field_name}; totals recalculated"
        return f"Updated {self.field_name}"


class CorrectionService:
    """Applies staff corrections with their audit trail."""

    def __init__(
        self,
        store: StateStore,
        rates: RateTable,
        aggregator: QuoteTotalsAggregator,
        groups: DocumentGroupManager,
        ledger: AdjustmentLedger,
        dispatcher: ActivityDispatcher,
    ):
        self.store = store
        self.rates = rates
        self.aggregator = aggregator
        self.groups = groups
        self.ledger = ledger
        self.dispatcher = dispatcher

    def apply_correction(self, payload: CorrectionPayload, staff_id: int | None = None) -> CorrectionOutcome:
        """
        Apply one correction.

        Raises:
            ValidationError: If the corrected value is malformed or the quote
                is locked (nothing is written)
            NotFoundError: If the quote or target entity does not exist
        """
        variant = parse_correction(payload.field_name, payload.corrected_value)
        quote_id = payload.target_ref.quote_id
        reason = (payload.reason or "").strip() or DEFAULT_REASON

        with self.store.quote_transaction(quote_id):
            if isinstance(variant, UnknownFieldCorrection):
                quote = self.store.require_quote(quote_id)
            else:
                quote = require_open_quote(self.store, quote_id)

            change = self._dispatch(variant, payload, quote, staff_id)
            recompute = self._needs_recompute(variant) and change.affects_pricing

            prior = stringify_value(change.prior_value)
            corrected = stringify_value(change.new_value)
            if payload.original_value is not None and stringify_value(payload.original_value) != prior:
                logger.debug(
                    f"Correction of {payload.field_name}: caller saw {payload.original_value!r}, "
                    f"live value was {prior!r}"
                )

            audit = dict(
                quote_id=quote_id,
                field_name=payload.field_name,
                ai_value=prior,
                corrected_value=corrected,
                reason=reason,
                staff_id=staff_id,
                analysis_id=change.analysis_id,
                group_id=change.group_id,
                file_id=change.file_id,
                page_id=change.page_id,
                submit_to_knowledge_base=payload.knowledge_base_flag,
                knowledge_base_comment=payload.knowledge_base_comment,
            )

            totals = None
            if recompute:
                correction_id = self.store.insert_correction(**audit)
                totals = self.aggregator.recompute(quote_id)
            else:
                correction_id = self._insert_best_effort(audit)

            self.dispatcher.dispatch(
                ActivityEvent(
                    ActivityType.CORRECTION_APPLIED,
                    staff_id,
                    "staff_correction",
                    correction_id,
                    quote_id,
                    {
                        "field_name": payload.field_name,
                        "ai_value": prior,
                        "corrected_value": corrected,
                        "reason": reason,
                    },
                )
            )

        logger.info(
            f"Quote {quote.quote_number}: {payload.field_name} {prior!r} -> {corrected!r}"
            + (" (recomputed)" if recompute else "")
        )
        return CorrectionOutcome(
            correction_id=correction_id,
            field_name=payload.field_name,
            known_field=not isinstance(variant, UnknownFieldCorrection),
            recomputed=recompute,
            prior_value=prior,
            corrected_value=corrected,
            totals=totals,
            suggested_corrections=change.suggestions,
        )

    def list_corrections(self, quote_id: int) -> list[CorrectionRecord]:
        """A quote's correction history in commit order."""
        self.store.require_quote(quote_id)
        return self.store.list_corrections(quote_id=quote_id)

    def list_knowledge_base_corrections(self, limit: int = 500) -> list[CorrectionRecord]:
        """Corrections staff flagged for the knowledge base."""
        return self.store.list_corrections(knowledge_base_only=True, limit=limit)

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    @staticmethod
    def _needs_recompute(variant: CorrectionVariant) -> bool:
        if isinstance(variant, UnknownFieldCorrection):
            return False
        return field_spec(variant.field).recompute

    def _dispatch(
        self,
        variant: CorrectionVariant,
        payload: CorrectionPayload,
        quote: QuoteRecord,
        staff_id: int | None,
    ) -> _Change:
        if isinstance(variant, AnalysisNumericCorrection):
            return self._apply_analysis_numeric(variant, payload, quote)
        if isinstance(variant, AnalysisCategoricalCorrection):
            return self._apply_analysis_categorical(variant, payload, quote)
        if isinstance(variant, GroupFieldCorrection):
            return self._apply_group(variant, payload, quote)
        if isinstance(variant, PageWordCountCorrection):
            return self._apply_page_word_count(variant, payload, quote)
        if isinstance(variant, QuoteFieldCorrection):
            return self._apply_quote_field(variant, payload, quote, staff_id)
        if isinstance(variant, CustomerFieldCorrection):
            return self._apply_customer(variant, quote)
        if isinstance(variant, UnknownFieldCorrection):
            logger.warning(f"Unknown correction field {variant.field_name!r}, recording only")
            ref = payload.target_ref
            return _Change(
                prior_value=payload.original_value,
                new_value=variant.value,
                analysis_id=ref.analysis_id,
                group_id=ref.group_id,
                file_id=ref.file_id,
                page_id=ref.page_id,
                affects_pricing=False,
            )
        raise TypeError(f"Unhandled correction variant: {type(variant).__name__}")

    # -------------------------------------------------------------------------
    # Analysis fields
    # -------------------------------------------------------------------------

    def _require_analysis(self, payload: CorrectionPayload, quote: QuoteRecord) -> AnalysisRecord:
        ref = payload.target_ref
        if ref.analysis_id is not None:
            analysis = self.store.get_analysis(ref.analysis_id)
            missing = ("Analysis result", ref.analysis_id)
        elif ref.file_id is not None:
            analysis = self.store.get_analysis_by_file(ref.file_id)
            missing = ("Analysis for file", ref.file_id)
        else:
            raise ValidationError(f"{payload.field_name} corrections need target_ref.analysis_id or file_id")
        if analysis is None or analysis.quote_id != quote.id:
            raise NotFoundError(*missing)
        return analysis

    def _reprice(self, analysis: AnalysisRecord, quote: QuoteRecord, fields: dict[str, Any]) -> None:
        """Re-derive billable_pages/line_total after an input change, honoring pinned fields."""
        word_count = fields.get("word_count", analysis.word_count)
        multiplier = fields.get("complexity_multiplier", analysis.complexity_multiplier)
        pinned = set(fields.get("overridden_fields", analysis.overridden_fields))
        language_multiplier = self.rates.language_multiplier(quote)

        billable = fields.get("billable_pages", analysis.billable_pages)
        if "billable_pages" not in pinned:
            billable = self.rates.calculator.price(
                word_count,
                multiplier,
                language_multiplier=language_multiplier,
                base_rate=analysis.base_rate,
            ).billable_pages
            fields["billable_pages"] = billable
        if "line_total" not in pinned:
            fields["line_total"] = self.rates.calculator.line_total(
                billable, analysis.base_rate, language_multiplier
            )

    def _recalculate_file_group(self, analysis: AnalysisRecord) -> int | None:
        group_id = self.groups.group_for_file(analysis.file_id)
        if group_id is not None:
            self.groups.recalculate_from_assignments(group_id)
        return group_id

    def _apply_analysis_numeric(
        self, variant: AnalysisNumericCorrection, payload: CorrectionPayload, quote: QuoteRecord
    ) -> _Change:
        analysis = self._require_analysis(payload, quote)
        column = variant.column
        prior = getattr(analysis, column)
        pinned = _pin(analysis, column)
        fields: dict[str, Any] = {column: variant.value, "overridden_fields": pinned}

        if column == "billable_pages" and "line_total" not in pinned:
            fields["line_total"] = self.rates.calculator.line_total(
                variant.value, analysis.base_rate, self.rates.language_multiplier(quote)
            )
        elif column in ("word_count", "complexity_multiplier"):
            self._reprice(analysis, quote, fields)

        self.store.update_analysis_fields(analysis.id, fields)
        group_id = self._recalculate_file_group(analysis) if column == "word_count" else None
        return _Change(
            prior_value=prior,
            new_value=variant.value,
            analysis_id=analysis.id,
            file_id=analysis.file_id,
            group_id=group_id,
        )

    def _apply_analysis_categorical(
        self, variant: AnalysisCategoricalCorrection, payload: CorrectionPayload, quote: QuoteRecord
    ) -> _Change:
        analysis = self._require_analysis(payload, quote)
        column = variant.column
        prior = getattr(analysis, column)
        fields: dict[str, Any] = {column: variant.value, "overridden_fields": _pin(analysis, column)}
        suggestions: list[dict[str, Any]] = []
        group_id = None

        if variant.field == CorrectionField.ASSESSED_COMPLEXITY:
            fields["complexity_multiplier"] = self.rates.complexity_multiplier(variant.value)
            self._reprice(analysis, quote, fields)
        elif variant.field == CorrectionField.CERTIFICATION_TYPE_ID:
            fields["certification_price"] = self.rates.certification_price(variant.value)
        elif variant.field == CorrectionField.DETECTED_DOCUMENT_TYPE:
            suggestions = self._certification_suggestion(
                variant.value, analysis.certification_type_id, "certification_type_id"
            )

        self.store.update_analysis_fields(analysis.id, fields)
        if variant.field == CorrectionField.ASSESSED_COMPLEXITY:
            group_id = self._recalculate_file_group(analysis)

        return _Change(
            prior_value=prior,
            new_value=variant.value,
            analysis_id=analysis.id,
            file_id=analysis.file_id,
            group_id=group_id,
            suggestions=suggestions,
        )

    def _certification_suggestion(
        self, document_type: str | None, current_cert_id: int | None, field_name: str
    ) -> list[dict[str, Any]]:
        """Suggest (never apply) the new document type's default certification."""
        default_id = self.rates.default_certification_for(document_type)
        if default_id is None or default_id == current_cert_id:
            return []
        certification = self.rates.certification(default_id)
        return [
            {
                "field_name": field_name,
                "current_value": current_cert_id,
                "suggested_value": default_id,
                "suggested_price": certification.price,
                "reason": f"Default certification for {document_type} is {certification.name}",
            }
        ]

    # -------------------------------------------------------------------------
    # Group and page fields
    # -------------------------------------------------------------------------

    def _apply_group(
        self, variant: GroupFieldCorrection, payload: CorrectionPayload, quote: QuoteRecord
    ) -> _Change:
        group_id = payload.target_ref.group_id
        if group_id is None:
            raise ValidationError(f"{payload.field_name} corrections need target_ref.group_id")
        group = self.groups.require_group(group_id, quote.id)
        prior = getattr(group, variant.column)

        self.groups.apply_group_changes(group_id, {variant.column: variant.value})

        suggestions: list[dict[str, Any]] = []
        if variant.field == CorrectionField.GROUP_DOCUMENT_TYPE:
            suggestions = self._certification_suggestion(
                variant.value, group.certification_type_id, CorrectionField.GROUP_CERTIFICATION_TYPE_ID.value
            )
        return _Change(
            prior_value=prior,
            new_value=variant.value,
            group_id=group_id,
            suggestions=suggestions,
        )

    def _apply_page_word_count(
        self, variant: PageWordCountCorrection, payload: CorrectionPayload, quote: QuoteRecord
    ) -> _Change:
        page_id = payload.target_ref.page_id
        if page_id is None:
            raise ValidationError("page_word_count corrections need target_ref.page_id")
        page = self.store.get_page(page_id)
        if page is None or page.quote_id != quote.id:
            raise NotFoundError("Page", page_id)

        self.store.update_page_word_count(page_id, variant.value)

        assignment = self.store.get_assignment_for_item(ItemType.PAGE, page_id)
        group_id = assignment.group_id if assignment else None
        if group_id is not None:
            self.groups.recalculate_from_assignments(group_id)

        return _Change(
            prior_value=page.word_count,
            new_value=variant.value,
            page_id=page_id,
            file_id=page.file_id,
            group_id=group_id,
        )

    # -------------------------------------------------------------------------
    # Quote and customer fields
    # -------------------------------------------------------------------------

    def _apply_quote_field(
        self,
        variant: QuoteFieldCorrection,
        payload: CorrectionPayload,
        quote: QuoteRecord,
        staff_id: int | None,
    ) -> _Change:
        field_name = variant.field

        if field_name in (CorrectionField.DISCOUNT, CorrectionField.SURCHARGE):
            adjustment_type = AdjustmentType(field_name.value)
            active = self.ledger.active_entry(quote.id, adjustment_type)
            self.ledger.set_adjustment(
                quote.id,
                adjustment_type,
                ValueType.FIXED,
                variant.value,
                reason=payload.reason,
                staff_id=staff_id,
            )
            return _Change(
                prior_value=active.calculated_amount if active else Decimal("0.00"),
                new_value=variant.value,
            )

        if field_name == CorrectionField.DELIVERY_OPTION:
            option = self.rates.resolve_delivery_option(variant.value) if variant.value else None
            self.store.update_quote_fields(
                quote.id,
                {
                    "delivery_option_id": option.id if option else None,
                    "delivery_fee": option.fee if option else Decimal("0.00"),
                },
            )
            return _Change(
                prior_value=quote.delivery_option_id,
                new_value=option.id if option else None,
            )

        prior = getattr(quote, variant.column)
        self.store.update_quote_fields(quote.id, {variant.column: variant.value})
        return _Change(
            prior_value=prior,
            new_value=variant.value,
            affects_pricing=field_spec(field_name).recompute,
        )

    def _apply_customer(self, variant: CustomerFieldCorrection, quote: QuoteRecord) -> _Change:
        if quote.customer_id is None:
            raise ValidationError(f"Quote {quote.quote_number} has no linked customer")
        customer = self.store.get_customer(quote.customer_id)
        if customer is None:
            raise NotFoundError("Customer", quote.customer_id)
        prior = getattr(customer, variant.column)
        self.store.update_customer_field(customer.id, variant.column, variant.value)
        return _Change(prior_value=prior, new_value=variant.value, affects_pricing=False)

    # -------------------------------------------------------------------------
    # Audit
    # -------------------------------------------------------------------------

    def _insert_best_effort(self, audit: dict[str, Any]) -> int | None:
        """Audit insert that never undoes a non-pricing mutation."""
        try:
            with self.store.savepoint("correction_audit"):
                return self.store.insert_correction(**audit)
        except sqlite3.Error as e:
            logger.error(f"Correction audit insert failed for {audit['field_name']}: {e}")
            return None

