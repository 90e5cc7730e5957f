"""
QuoteDesk: the staff workbench facade.

Wires the pricing services together over one StateStore and exposes the
operations downstream consumers (invoicing, payment, UI) call. Services raise;
this layer turns their errors into response dictionaries:

    {"success": True, ...}
    {"success": False, "error": "<message safe to show to staff>"}

Consistency failures and database errors are reported with the generic
"totals unchanged" message and logged with their details.
"""

import logging
import sqlite3
from collections.abc import Callable
from decimal import Decimal
from typing import Any

from ..analysis_client import AnalysisClient, AnalysisError
from ..config import Config
from ..errors import ConsistencyFailure, PricingError
from ..schemas.activity import ActivityEvent, ActivityType
from ..schemas.corrections import CorrectionPayload
from ..schemas.snapshot import FastQuoteRequest, PricingSnapshot
from ..state_store import CorrectionRecord, StateStore
from .activity import ActivityDispatcher
from .adjustments import AdjustmentLedger
from .corrections import CorrectionService
from .document_groups import DocumentGroupManager
from .intake import AnalysisIntakeService
from .quote_builder import QuoteBuilder
from .rate_table import RateTable
from .totals import QuoteTotalsAggregator

logger = logging.getLogger(__name__)


def _failure(message: str) -> dict[str, Any]:
    return {"success": False, "error": message}


def correction_to_dict(record: CorrectionRecord) -> dict[str, Any]:
    """Serialize a correction record for API responses."""
    return {
        "id": record.id,
        "quote_id": record.quote_id,
        "field_name": record.field_name,
        "ai_value": record.ai_value,
        "corrected_value": record.corrected_value,
        "reason": record.reason,
        "staff_id": record.staff_id,
        "analysis_id": record.analysis_id,
        "group_id": record.group_id,
        "submit_to_knowledge_base": record.submit_to_knowledge_base,
        "knowledge_base_comment": record.knowledge_base_comment,
        "created_at": record.created_at,
    }


class QuoteDesk:
    """
    Entry point for staff pricing operations.

    Example:
        desk = QuoteDesk.from_config(load_config(Path("config.yaml")))
        desk.apply_correction({"target_ref": {"quote_id": 1, "analysis_id": 3},
                               "field_name": "word_count", "corrected_value": 480})
    """

    def __init__(
        self,
        store: StateStore,
        config: Config,
        client: AnalysisClient | None = None,
        log_activity: bool = True,
    ):
        self.store = store
        self.config = config
        self.rates = RateTable(store, config)
        self.dispatcher = ActivityDispatcher(store, enabled=log_activity)
        self.aggregator = QuoteTotalsAggregator(store, self.rates)
        self.groups = DocumentGroupManager(store, self.rates, self.aggregator, self.dispatcher)
        self.ledger = AdjustmentLedger(store, self.rates, self.aggregator, self.dispatcher)
        self.corrections = CorrectionService(
            store, self.rates, self.aggregator, self.groups, self.ledger, self.dispatcher
        )
        self.builder = QuoteBuilder(store, self.rates, self.aggregator, self.ledger, self.dispatcher)
        self.intake = AnalysisIntakeService(
            store, self.rates, self.aggregator, self.groups, self.dispatcher, client=client
        )

    @classmethod
    def from_config(cls, config: Config, with_client: bool = False) -> "QuoteDesk":
        """Open the configured state database (and analysis client, if asked)."""
        store = StateStore(config.state_db_path)
        client = None
        if with_client:
            client = AnalysisClient(
                base_url=config.analysis_service.base_url,
                token=config.analysis_service.token,
                timeout=config.analysis_service.timeout_seconds,
                max_retries=config.analysis_service.max_retries,
            )
        return cls(store, config, client=client)

    def load_reference_data(self, data: dict[str, Any]) -> dict[str, int]:
        """Upsert reference data and drop the cached rates built from the old rows.

        Raises:
            ValidationError: If the data is malformed (nothing is written)
        """
        counts = self.store.load_reference_data(data)
        self.rates.invalidate()
        return counts

    def _guard(self, action: str, func: Callable[[], dict[str, Any]]) -> dict[str, Any]:
        """Run an operation, converting errors into a failure response."""
        try:
            return func()
        except ConsistencyFailure as e:
            logger.error(f"{action} failed: {e}")
            return _failure(e.user_message)
        except PricingError as e:
            logger.warning(f"{action} rejected: {e}")
            return _failure(e.user_message)
        except AnalysisError as e:
            logger.error(f"{action} failed: {e}")
            return _failure(f"Analysis service error: {e}")
        except sqlite3.Error as e:
            logger.exception(f"{action} failed with a database error")
            return _failure(ConsistencyFailure.GENERIC_MESSAGE)

    # -------------------------------------------------------------------------
    # Totals
    # -------------------------------------------------------------------------

    def recompute_quote_totals(self, quote_id: int, staff_id: int | None = None) -> dict[str, Any]:
        """Recompute and persist a quote's totals."""

        def run():
            with self.store.quote_transaction(quote_id):
                totals = self.aggregator.recompute(quote_id)
                self.dispatcher.dispatch(
                    ActivityEvent(
                        ActivityType.TOTALS_RECOMPUTED,
                        staff_id,
                        "quote",
                        quote_id,
                        quote_id,
                        {"total": totals.total},
                    )
                )
            return {"success": True, **totals.to_response()}

        return self._guard("recompute_quote_totals", run)

    def get_quote_summary(self, quote_id: int) -> dict[str, Any]:
        """Stored totals and balance of a quote (no recompute)."""

        def run():
            quote = self.store.require_quote(quote_id)
            return {
                "success": True,
                "quote_id": quote.id,
                "quote_number": quote.quote_number,
                "status": quote.status.value,
                "totals": quote.calculated_totals,
                "amount_paid": quote.amount_paid,
                "balance_due": quote.balance_due,
                "refund_amount": quote.refund_amount,
                "overpayment_credit": quote.overpayment_credit,
            }

        return self._guard("get_quote_summary", run)

    # -------------------------------------------------------------------------
    # Corrections
    # -------------------------------------------------------------------------

    def apply_correction(self, payload: dict[str, Any], staff_id: int | None = None) -> dict[str, Any]:
        """Apply a staff correction from an API payload."""

        def run():
            outcome = self.corrections.apply_correction(CorrectionPayload.from_dict(payload), staff_id)
            response: dict[str, Any] = {
                "success": True,
                "message": outcome.message,
                "correction_id": outcome.correction_id,
            }
            if outcome.totals is not None:
                response["totals"] = outcome.totals.to_response()
            if outcome.suggested_corrections:
                response["suggested_corrections"] = outcome.suggested_corrections
            return response

        return self._guard("apply_correction", run)

    def list_corrections(self, quote_id: int) -> dict[str, Any]:
        return self._guard(
            "list_corrections",
            lambda: {
                "success": True,
                "corrections": [correction_to_dict(c) for c in self.corrections.list_corrections(quote_id)],
            },
        )

    def list_knowledge_base_corrections(self, limit: int = 500) -> dict[str, Any]:
        """Corrections flagged for model improvement."""
        return self._guard(
            "list_knowledge_base_corrections",
            lambda: {
                "success": True,
                "corrections": [
                    correction_to_dict(c) for c in self.corrections.list_knowledge_base_corrections(limit)
                ],
            },
        )

    # -------------------------------------------------------------------------
    # Document groups
    # -------------------------------------------------------------------------

    def create_document_group(
        self,
        quote_id: int,
        group_label: str,
        document_type: str | None = None,
        complexity: str = "easy",
        certification_type_id: int | None = None,
        staff_id: int | None = None,
    ) -> dict[str, Any]:
        def run():
            group_id = self.groups.create_group(
                quote_id,
                group_label,
                document_type=document_type,
                complexity=complexity,
                staff_id=staff_id,
                certification_type_id=certification_type_id,
            )
            return {"success": True, "group_id": group_id}

        return self._guard("create_document_group", run)

    def update_document_group(
        self, group_id: int, changes: dict[str, Any], staff_id: int | None = None
    ) -> dict[str, Any]:
        return self._guard(
            "update_document_group",
            lambda: {"success": True, "group_id": self.groups.update_group(group_id, changes, staff_id)},
        )

    def delete_document_group(self, group_id: int, staff_id: int | None = None) -> dict[str, Any]:
        return self._guard(
            "delete_document_group",
            lambda: {"success": True, "group_id": self.groups.delete_group(group_id, staff_id)},
        )

    def assign_item_to_group(
        self,
        group_id: int,
        item_type: str,
        item_id: int,
        staff_id: int | None = None,
        word_count_override: int | None = None,
    ) -> dict[str, Any]:
        def run():
            assignment_id = self.groups.assign_item(
                group_id, item_type, item_id, staff_id=staff_id, word_count_override=word_count_override
            )
            return {"success": True, "assignment_id": assignment_id, "group_id": group_id}

        return self._guard("assign_item_to_group", run)

    def unassign_item_from_group(self, assignment_id: int, staff_id: int | None = None) -> dict[str, Any]:
        def run():
            group_id = self.groups.unassign_item(assignment_id, staff_id)
            return {"success": True, "assignment_id": assignment_id, "group_id": group_id}

        return self._guard("unassign_item_from_group", run)

    def list_unassigned_items(self, quote_id: int) -> dict[str, Any]:
        return self._guard(
            "list_unassigned_items",
            lambda: {"success": True, **self.groups.list_unassigned_items(quote_id)},
        )

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def finalize_quote(
        self,
        quote_id: int,
        pricing_snapshot: dict[str, Any],
        staff_notes: str | None = None,
        staff_id: int | None = None,
    ) -> dict[str, Any]:
        """Write a staff-approved pricing snapshot."""

        def run():
            snapshot = PricingSnapshot.from_dict(pricing_snapshot)
            result = self.builder.finalize_quote(quote_id, snapshot, staff_notes=staff_notes, staff_id=staff_id)
            return {"success": True, "quoteId": result.quote_id, "total": result.totals.total}

        return self._guard("finalize_quote", run)

    def create_fast_quote(self, data: dict[str, Any], staff_id: int | None = None) -> dict[str, Any]:
        """Create a quote from {customer, quote, documents, pricing}."""

        def run():
            result = self.builder.create_fast_quote(FastQuoteRequest.from_dict(data), staff_id=staff_id)
            return {
                "success": True,
                "quoteId": result.quote_id,
                "quoteNumber": result.quote_number,
                "customerId": result.customer_id,
                "total": result.totals.total,
            }

        return self._guard("create_fast_quote", run)

    # -------------------------------------------------------------------------
    # Ledger
    # -------------------------------------------------------------------------

    def add_adjustment(
        self,
        quote_id: int,
        adjustment_type: str,
        value_type: str,
        value,
        reason: str | None = None,
        staff_id: int | None = None,
    ) -> dict[str, Any]:
        def run():
            adjustment_id = self.ledger.add_adjustment(
                quote_id, adjustment_type, value_type, value, reason=reason, staff_id=staff_id
            )
            return {"success": True, "adjustment_id": adjustment_id}

        return self._guard("add_adjustment", run)

    def supersede_adjustment(
        self,
        adjustment_id: int,
        value_type: str = "fixed",
        value=Decimal("0"),
        reason: str | None = None,
        staff_id: int | None = None,
    ) -> dict[str, Any]:
        def run():
            new_id = self.ledger.supersede_adjustment(
                adjustment_id, value_type=value_type, value=value, reason=reason, staff_id=staff_id
            )
            return {"success": True, "adjustment_id": new_id, "superseded_id": adjustment_id}

        return self._guard("supersede_adjustment", run)

    def offset_balance(
        self, quote_id: int, amount, offset_type: str, reason: str, staff_id: int
    ) -> dict[str, Any]:
        def run():
            adjustment_id = self.ledger.offset_balance(quote_id, amount, offset_type, reason, staff_id)
            quote = self.store.require_quote(quote_id)
            return {
                "success": True,
                "adjustment_id": adjustment_id,
                "balance_due": quote.balance_due,
                "status": quote.status.value,
            }

        return self._guard("offset_balance", run)

    def record_refund(
        self,
        quote_id: int,
        amount,
        method: str,
        reference: str | None = None,
        staff_id: int | None = None,
        reason: str | None = None,
    ) -> dict[str, Any]:
        def run():
            refund_id = self.ledger.record_refund(
                quote_id, amount, method, reference=reference, staff_id=staff_id, reason=reason
            )
            quote = self.store.require_quote(quote_id)
            return {
                "success": True,
                "refund_id": refund_id,
                "amount_paid": quote.amount_paid,
                "balance_due": quote.balance_due,
                "status": quote.status.value,
            }

        return self._guard("record_refund", run)

    def record_payment(
        self,
        quote_id: int,
        amount,
        staff_id: int | None = None,
        method: str | None = None,
        reference: str | None = None,
    ) -> dict[str, Any]:
        def run():
            amount_paid = self.ledger.record_payment(
                quote_id, amount, staff_id=staff_id, method=method, reference=reference
            )
            quote = self.store.require_quote(quote_id)
            return {
                "success": True,
                "amount_paid": amount_paid,
                "balance_due": quote.balance_due,
                "status": quote.status.value,
            }

        return self._guard("record_payment", run)

    # -------------------------------------------------------------------------
    # Intake
    # -------------------------------------------------------------------------

    def ingest_analysis(
        self,
        quote_id: int,
        file_id: int,
        analysis: dict[str, Any] | None = None,
        staff_id: int | None = None,
    ) -> dict[str, Any]:
        """Ingest an analysis payload, or fetch it from the analysis service when omitted."""

        def run():
            if analysis is None:
                analysis_id = self.intake.fetch_and_ingest(quote_id, file_id, staff_id=staff_id)
            else:
                analysis_id = self.intake.ingest(quote_id, file_id, analysis, staff_id=staff_id)
            return {"success": True, "analysis_id": analysis_id}

        return self._guard("ingest_analysis", run)
