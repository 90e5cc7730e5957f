"""
Analysis intake: store OCR/AI results with provisional pricing.

The collaborator's values are taken as an unvalidated starting point:
- counts must be non-negative integers (otherwise the payload is rejected)
- an unknown complexity label falls back to easy
- a document type with a default certification starts the file with it,
  otherwise the default active certification applies

Re-ingesting a file refreshes the AI fields and re-prices the analysis.
Fields listed in overridden_fields keep their staff-corrected values, and
the re-price runs on the corrected word count and complexity.
"""

import logging
from typing import Any, Optional

from ..errors import NotFoundError, ValidationError
from ..schemas.activity import ActivityEvent, ActivityType
from ..schemas.amounts import validate_word_count
from ..schemas.complexity import ComplexityLevel
from ..state_store import StateStore
from .activity import ActivityDispatcher
from .document_groups import DocumentGroupManager
from .rate_table import RateTable
from .totals import QuoteTotalsAggregator, require_open_quote

logger = logging.getLogger(__name__)


def _complexity(value: Any) -> ComplexityLevel:
    if not value:
        return ComplexityLevel.EASY
    try:
        return ComplexityLevel.parse(value)
    except ValidationError:
        logger.warning(f"Unknown complexity {value!r} from analysis, using easy")
        return ComplexityLevel.EASY


class AnalysisIntakeService:
    """Turns collaborator analyses into priced AnalysisResults."""

    def __init__(
        self,
        store: StateStore,
        rates: RateTable,
        aggregator: QuoteTotalsAggregator,
        groups: DocumentGroupManager,
        dispatcher: ActivityDispatcher,
        client=None,
    ):
        self.store = store
        self.rates = rates
        self.aggregator = aggregator
        self.groups = groups
        self.dispatcher = dispatcher
        self.client = client

    def ingest(
        self,
        quote_id: int,
        file_id: int,
        analysis: dict[str, Any],
        staff_id: Optional[int] = None,
    ) -> int:
        """
        Store a file's analysis with provisional pricing and recompute the quote.

        Args:
            quote_id: Quote the file belongs to
            file_id: Analyzed file
            analysis: {word_count, page_count, detected_language,
                detected_document_type, assessed_complexity, pages?}
            staff_id: Staff member triggering the intake, if any

        Returns:
            Analysis result ID
        """
        word_count = validate_word_count(analysis.get("word_count") or 0)
        page_count = validate_word_count(analysis.get("page_count") or 1, field_name="page_count")
        level = _complexity(analysis.get("assessed_complexity"))
        document_type = analysis.get("detected_document_type")

        with self.store.quote_transaction(quote_id):
            quote = require_open_quote(self.store, quote_id)
            file = self.store.get_file(file_id)
            if file is None or file.quote_id != quote_id:
                raise NotFoundError("File", file_id)

            if not self.store.list_pages(quote_id, file_id):
                for i, page in enumerate(analysis.get("pages") or []):
                    self.store.add_page(
                        file_id,
                        int(page.get("page_number") or i + 1),
                        validate_word_count(page.get("word_count") or 0),
                    )

            existing = self.store.get_analysis_by_file(file_id)
            base_rate = existing.base_rate if existing else self.rates.base_rate
            pinned = set(existing.overridden_fields) if existing else set()

            fields: dict[str, Any] = {
                "detected_language": analysis.get("detected_language"),
                "detected_document_type": document_type,
                "assessed_complexity": level.value,
                "complexity_multiplier": self.rates.complexity_multiplier(level),
                "word_count": word_count,
                "page_count": page_count,
            }
            kept = sorted(pinned & set(fields))
            if kept:
                logger.info(f"Re-ingest of file {file_id} keeps staff-corrected {', '.join(kept)}")
                for column in kept:
                    del fields[column]
            word_count = fields.get("word_count", existing.word_count if existing else 0)
            multiplier = fields.get("complexity_multiplier", existing.complexity_multiplier if existing else None)
            complexity = fields.get("assessed_complexity", existing.assessed_complexity if existing else None)

            result = self.rates.calculator.price(
                word_count,
                multiplier,
                language_multiplier=self.rates.language_multiplier(quote),
                base_rate=base_rate,
            )
            if "billable_pages" not in pinned:
                fields["billable_pages"] = result.billable_pages
            if "line_total" not in pinned:
                billable = fields.get("billable_pages", existing.billable_pages if existing else result.billable_pages)
                fields["line_total"] = self.rates.calculator.line_total(
                    billable, base_rate, self.rates.language_multiplier(quote)
                )

            if existing is None:
                cert_id = self.rates.default_certification_for(document_type)
                if cert_id is None:
                    default = self.rates.default_certification()
                    cert_id = default.id if default else None
                fields["certification_type_id"] = cert_id
                fields["certification_price"] = self.rates.certification_price(cert_id)
                analysis_id = self.store.create_analysis(quote_id=quote_id, base_rate=base_rate, file_id=file_id)
            else:
                analysis_id = existing.id

            self.store.update_analysis_fields(analysis_id, fields)

            group_id = self.groups.group_for_file(file_id)
            if group_id is not None:
                self.groups.recalculate_from_assignments(group_id)
            self.aggregator.recompute(quote_id)

            self.dispatcher.dispatch(
                ActivityEvent(
                    ActivityType.ANALYSIS_INGESTED,
                    staff_id,
                    "analysis_result",
                    analysis_id,
                    quote_id,
                    {
                        "file_id": file_id,
                        "word_count": word_count,
                        "complexity": complexity,
                        "reingested": existing is not None,
                    },
                )
            )

        logger.info(
            f"Ingested analysis for file {file.filename}: {word_count} words, "
            f"{result.billable_pages} pages"
        )
        return analysis_id

    def fetch_and_ingest(self, quote_id: int, file_id: int, staff_id: Optional[int] = None) -> int:
        """Fetch a file's analysis from the collaborator and ingest it."""
        if self.client is None:
            raise ValidationError("No analysis service client configured")
        file = self.store.get_file(file_id)
        if file is None or file.quote_id != quote_id:
            raise NotFoundError("File", file_id)
        analysis = self.client.get_analysis(file.filename)
        return self.ingest(quote_id, file_id, analysis.to_dict(), staff_id=staff_id)
