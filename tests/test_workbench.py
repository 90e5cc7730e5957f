"""Tests for the QuoteDesk facade and its response shapes."""

import sqlite3
from decimal import Decimal

import responses

from certquote.analysis_client import AnalysisClient
from certquote.errors import ConsistencyFailure
from certquote.services import QuoteDesk
from certquote.state_store import QuoteStatus


class TestResponses:
    """Tests for success and failure responses."""

    def test_recompute_quote_totals(self, desk, new_quote, ingested_file):
        """Recompute returns the totals breakdown."""
        quote_id = new_quote()
        ingested_file(quote_id, 300)
        response = desk.recompute_quote_totals(quote_id)
        assert response["success"] is True
        assert response["subtotal"] == Decimal("91.00")
        assert response["tax_amount"] == Decimal("4.55")
        assert response["total"] == Decimal("95.55")
        assert response["is_rush"] is False

    def test_unknown_quote(self, desk):
        """Unknown quotes produce a failure response."""
        response = desk.recompute_quote_totals(77)
        assert response == {"success": False, "error": "Quote not found: 77"}

    def test_consistency_failure_message(self, desk, new_quote, monkeypatch):
        """Consistency failures use the generic message."""
        quote_id = new_quote()

        def broken(quote_id):
            raise ConsistencyFailure("Assignment 3 references missing page 9")

        monkeypatch.setattr(desk.aggregator, "recompute", broken)
        response = desk.recompute_quote_totals(quote_id)
        assert response == {"success": False, "error": ConsistencyFailure.GENERIC_MESSAGE}

    def test_database_error_message(self, desk, new_quote, monkeypatch):
        """Database errors are reported with the generic message."""
        quote_id = new_quote()

        def broken(quote_id):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(desk.aggregator, "recompute", broken)
        response = desk.recompute_quote_totals(quote_id)
        assert response["success"] is False
        assert response["error"] == ConsistencyFailure.GENERIC_MESSAGE

    def test_quote_summary(self, desk, new_quote, ingested_file):
        """The summary reports stored totals and balance."""
        quote_id = new_quote()
        ingested_file(quote_id, 300)
        summary = desk.get_quote_summary(quote_id)
        assert summary["status"] == "draft"
        assert summary["totals"]["total"] == "95.55"
        assert summary["balance_due"] == Decimal("95.55")


class TestOperations:
    """Tests for the operations exposed to downstream consumers."""

    def test_reload_reference_data_refreshes_rates(self, desk, cert_ids):
        """Reloaded prices replace the cached ones."""
        assert desk.rates.certification_price(cert_ids["sworn"]) == Decimal("35.00")
        counts = desk.load_reference_data(
            {"certification_types": [{"code": "sworn", "name": "Sworn translation", "price": "40.00", "sort_order": 1}]}
        )
        assert counts["certification_types"] == 1
        assert desk.rates.certification_price(cert_ids["sworn"]) == Decimal("40.00")

    def test_correction_with_suggestion(self, desk, new_quote, ingested_file, cert_ids, staff):
        """Suggestions are returned alongside the correction."""
        quote_id = new_quote()
        _, analysis_id = ingested_file(quote_id, 300, document_type="passport")
        response = desk.apply_correction(
            {
                "target_ref": {"quote_id": quote_id, "analysis_id": analysis_id},
                "field_name": "detected_document_type",
                "original_value": "passport",
                "corrected_value": "id_card",
            },
            staff_id=staff["reviewer"],
        )
        assert response["success"] is True
        assert response["correction_id"] is not None
        assert "totals" not in response
        assert response["suggested_corrections"][0]["suggested_value"] == cert_ids["sworn"]

        listed = desk.list_corrections(quote_id)
        assert listed["corrections"][0]["ai_value"] == "passport"

    def test_correction_with_totals(self, desk, new_quote, ingested_file):
        """Priced corrections return the new totals."""
        quote_id = new_quote()
        _, analysis_id = ingested_file(quote_id, 300)
        response = desk.apply_correction(
            {
                "target_ref": {"quote_id": quote_id, "analysis_id": analysis_id},
                "field_name": "word_count",
                "corrected_value": 450,
            }
        )
        assert response["message"] == "Updated word_count; totals recalculated"
        assert response["totals"]["subtotal"] == Decimal("130.00")

    def test_bad_payload(self, desk):
        """Malformed payloads are rejected with a message."""
        response = desk.apply_correction({"field_name": "word_count", "corrected_value": 1})
        assert response == {"success": False, "error": "Missing required field: target_ref"}

    def test_group_workflow(self, desk, new_quote, ingested_file):
        """Groups can be created, filled, emptied and deleted through the desk."""
        quote_id = new_quote()
        file_id, _ = ingested_file(quote_id, 230, pages=[100, 130])

        created = desk.create_document_group(quote_id, "Birth certificate", complexity="medium")
        assert created["success"] is True
        group_id = created["group_id"]

        assigned = desk.assign_item_to_group(group_id, "file", file_id)
        assert assigned["group_id"] == group_id
        assert desk.store.require_quote(quote_id).total == Decimal("81.90")
        assert desk.list_unassigned_items(quote_id) == {"success": True, "files": [], "pages": []}

        assert desk.update_document_group(group_id, {"complexity": "hard"})["success"] is True
        assert desk.unassign_item_from_group(assigned["assignment_id"])["group_id"] == group_id
        assert desk.delete_document_group(group_id)["success"] is True
        assert desk.store.require_quote(quote_id).total == Decimal("75.08")

    def test_offset_over_limit(self, desk, new_quote, staff):
        """Limit violations come back as failures with the manager hint."""
        quote_id = new_quote()
        response = desk.offset_balance(quote_id, "15.00", "credit", "Rounding", staff["reviewer"])
        assert response["success"] is False
        assert "Contact a manager" in response["error"]

    def test_payment_refund_cycle(self, desk, new_quote, ingested_file, staff):
        """Payments and refunds report the balance and status."""
        quote_id = new_quote(status=QuoteStatus.QUOTE_READY)
        ingested_file(quote_id, 300)

        paid = desk.record_payment(quote_id, "95.55", staff_id=staff["reviewer"], method="card")
        assert paid["status"] == "paid"

        refund = desk.record_refund(quote_id, "10.00", "card", reference="R-9", staff_id=staff["reviewer"])
        assert refund["amount_paid"] == Decimal("85.55")
        assert refund["balance_due"] == Decimal("10.00")
        assert refund["status"] == "balance_due"

        offset = desk.offset_balance(quote_id, "10.00", "credit", "Goodwill", staff["reviewer"])
        assert offset["balance_due"] == Decimal("0.00")
        assert offset["status"] == "paid"

    def test_adjustment_supersede(self, desk, new_quote, ingested_file):
        """Adjustments are appended and superseded through the desk."""
        quote_id = new_quote()
        ingested_file(quote_id, 300)
        added = desk.add_adjustment(quote_id, "surcharge", "percentage", "10", reason="Complex layout")
        replaced = desk.supersede_adjustment(added["adjustment_id"], "fixed", "5.00")
        assert replaced["superseded_id"] == added["adjustment_id"]
        assert desk.store.require_quote(quote_id).total == Decimal("100.80")

    def test_finalize_and_fast_quote(self, desk, new_quote, ingested_file):
        """Snapshot operations return ids and totals."""
        quote_id = new_quote()
        _, analysis_id = ingested_file(quote_id, 300)
        finalized = desk.finalize_quote(
            quote_id, {"lines": [{"analysis_id": analysis_id, "word_count": 300}], "total": "95.55"}
        )
        assert finalized == {"success": True, "quoteId": quote_id, "total": Decimal("95.55")}

        fast = desk.create_fast_quote(
            {
                "customer": {"full_name": "Ana Lopez", "phone": "555-0100"},
                "quote": {"source_language": "es", "target_language": "en"},
                "documents": [{"label": "Diploma", "word_count": 100}],
            }
        )
        assert fast["success"] is True
        assert fast["total"] == Decimal("68.25")
        assert fast["quoteNumber"].startswith("QT-")

    def test_knowledge_base_listing(self, desk, new_quote, ingested_file):
        """Flagged corrections are listed through the desk."""
        quote_id = new_quote()
        _, analysis_id = ingested_file(quote_id, 300)
        desk.apply_correction(
            {
                "target_ref": {"quote_id": quote_id, "analysis_id": analysis_id},
                "field_name": "assessed_complexity",
                "corrected_value": "hard",
                "knowledge_base_flag": True,
            }
        )
        listed = desk.list_knowledge_base_corrections()
        assert [c["field_name"] for c in listed["corrections"]] == ["assessed_complexity"]


class TestIntake:
    """Tests for intake through the desk."""

    BASE_URL = "http://analysis.test:8500"

    @responses.activate
    def test_analysis_service_error(self, store, config, new_quote):
        """Collaborator failures are reported, not raised."""
        responses.add(
            responses.GET,
            f"{self.BASE_URL}/api/files/a.pdf/analysis",
            json={"detail": "gone"},
            status=404,
        )
        desk = QuoteDesk(store, config, client=AnalysisClient(self.BASE_URL, "t", max_retries=0))
        quote_id = new_quote()
        file_id = store.add_file(quote_id, "a.pdf")

        response = desk.ingest_analysis(quote_id, file_id)

        assert response["success"] is False
        assert response["error"].startswith("Analysis service error")

    def test_ingest_payload(self, desk, new_quote):
        """Explicit payloads are ingested directly."""
        quote_id = new_quote()
        file_id = desk.store.add_file(quote_id, "a.pdf")
        response = desk.ingest_analysis(quote_id, file_id, {"word_count": 100})
        assert response["success"] is True
        assert desk.store.get_analysis(response["analysis_id"]).line_total == Decimal("65.00")

    def test_from_config(self, config):
        """from_config opens the configured database."""
        desk = QuoteDesk.from_config(config)
        assert desk.store.db_path == config.state_db_path
        assert desk.intake.client is None
        assert QuoteDesk.from_config(config, with_client=True).intake.client is not None
