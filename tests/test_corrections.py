"""Tests for staff corrections and their audit trail."""

import sqlite3
import threading
from decimal import Decimal

import pytest

from certquote.errors import NotFoundError, ValidationError
from certquote.schemas.corrections import CorrectionPayload
from certquote.state_store import QuoteStatus


def _payload(quote_id, field_name, value, reason=None, **target):
    return CorrectionPayload.from_dict(
        {
            "target_ref": {"quote_id": quote_id, **target},
            "field_name": field_name,
            "corrected_value": value,
            "reason": reason,
        }
    )


@pytest.fixture
def passport_quote(new_quote, ingested_file):
    """A quote with one 300-word passport (1.4 pages, 91.00)."""
    quote_id = new_quote()
    file_id, analysis_id = ingested_file(quote_id, 300, document_type="passport")
    return quote_id, file_id, analysis_id


class TestAnalysisCorrections:
    """Tests for corrections of analysis fields."""

    def test_document_type_suggests_certification(self, desk, passport_quote, cert_ids, staff):
        """Changing the document type suggests, but never applies, its certification."""
        quote_id, _, analysis_id = passport_quote
        before = desk.store.get_analysis(analysis_id)

        outcome = desk.corrections.apply_correction(
            _payload(quote_id, "detected_document_type", "id_card", analysis_id=analysis_id),
            staff_id=staff["reviewer"],
        )

        assert outcome.prior_value == "passport"
        assert outcome.corrected_value == "id_card"
        assert outcome.recomputed is False
        assert outcome.suggested_corrections == [
            {
                "field_name": "certification_type_id",
                "current_value": cert_ids["standard"],
                "suggested_value": cert_ids["sworn"],
                "suggested_price": Decimal("35.00"),
                "reason": "Default certification for id_card is Sworn translation",
            }
        ]

        after = desk.store.get_analysis(analysis_id)
        assert after.detected_document_type == "id_card"
        assert after.billable_pages == before.billable_pages == Decimal("1.4")
        assert after.certification_type_id == cert_ids["standard"]

        (record,) = desk.corrections.list_corrections(quote_id)
        assert record.ai_value == "passport"
        assert record.corrected_value == "id_card"
        assert record.staff_id == staff["reviewer"]
        assert record.reason == "Staff correction"

    def test_word_count_reprices(self, desk, passport_quote):
        """A word count correction re-derives pages and the line total."""
        quote_id, file_id, analysis_id = passport_quote
        outcome = desk.corrections.apply_correction(_payload(quote_id, "word_count", 450, file_id=file_id))

        assert outcome.recomputed is True
        assert outcome.totals.subtotal == Decimal("130.00")
        analysis = desk.store.get_analysis(analysis_id)
        assert analysis.billable_pages == Decimal("2.0")
        assert analysis.line_total == Decimal("130.00")

    def test_repeated_corrections_keep_prior_values(self, desk, passport_quote):
        """Each correction records the value it replaced."""
        quote_id, _, analysis_id = passport_quote
        for value in (450, 500):
            desk.corrections.apply_correction(_payload(quote_id, "word_count", value, analysis_id=analysis_id))

        records = desk.corrections.list_corrections(quote_id)
        assert [(r.ai_value, r.corrected_value) for r in records] == [("300", "450"), ("450", "500")]

    def test_concurrent_corrections_serialize(self, desk, passport_quote):
        """Two writers to one field both land, each recording the value it replaced."""
        quote_id, _, analysis_id = passport_quote
        barrier = threading.Barrier(2)
        errors = []

        def correct(value):
            try:
                barrier.wait(timeout=10)
                desk.corrections.apply_correction(_payload(quote_id, "word_count", value, analysis_id=analysis_id))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=correct, args=(value,)) for value in (450, 900)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert errors == []
        first, second = desk.corrections.list_corrections(quote_id)
        assert first.ai_value == "300"
        assert second.ai_value == first.corrected_value
        assert {first.corrected_value, second.corrected_value} == {"450", "900"}
        analysis = desk.store.get_analysis(analysis_id)
        assert str(analysis.word_count) == second.corrected_value
        expected_total = desk.aggregator.compute(quote_id).total
        assert desk.store.require_quote(quote_id).total == expected_total

    def test_billable_pages_is_pinned(self, desk, passport_quote, ingested_file):
        """A staff-set billable_pages survives later re-derivation."""
        quote_id, file_id, analysis_id = passport_quote
        desk.corrections.apply_correction(_payload(quote_id, "billable_pages", "2.0", analysis_id=analysis_id))
        analysis = desk.store.get_analysis(analysis_id)
        assert analysis.line_total == Decimal("130.00")
        assert analysis.overridden_fields == ["billable_pages"]

        desk.corrections.apply_correction(_payload(quote_id, "word_count", 1000, analysis_id=analysis_id))
        desk.intake.ingest(quote_id, file_id, {"word_count": 50, "assessed_complexity": "hard"})

        analysis = desk.store.get_analysis(analysis_id)
        assert analysis.word_count == 1000
        assert analysis.assessed_complexity == "hard"
        assert analysis.overridden_fields == ["billable_pages", "word_count"]
        assert analysis.billable_pages == Decimal("2.0")
        assert analysis.line_total == Decimal("130.00")

    def test_line_total_is_pinned(self, desk, passport_quote):
        """A staff-set line_total survives a complexity change."""
        quote_id, _, analysis_id = passport_quote
        desk.corrections.apply_correction(_payload(quote_id, "line_total", "80.00", analysis_id=analysis_id))
        desk.corrections.apply_correction(_payload(quote_id, "assessed_complexity", "hard", analysis_id=analysis_id))

        analysis = desk.store.get_analysis(analysis_id)
        assert analysis.complexity_multiplier == Decimal("1.25")
        assert analysis.billable_pages == Decimal("1.7")
        assert analysis.line_total == Decimal("80.00")

    def test_certification_change(self, desk, passport_quote, cert_ids):
        """Switching certification re-fetches the price and recomputes."""
        quote_id, _, analysis_id = passport_quote
        outcome = desk.corrections.apply_correction(
            _payload(quote_id, "certification_type_id", cert_ids["sworn"], analysis_id=analysis_id)
        )
        assert desk.store.get_analysis(analysis_id).certification_price == Decimal("35.00")
        assert outcome.totals.total == Decimal("132.30")

    def test_malformed_value_writes_nothing(self, desk, passport_quote):
        """Rejected values leave no audit record behind."""
        quote_id, _, analysis_id = passport_quote
        with pytest.raises(ValidationError):
            desk.corrections.apply_correction(_payload(quote_id, "billable_pages", "1.25", analysis_id=analysis_id))
        assert desk.corrections.list_corrections(quote_id) == []

    def test_target_required(self, desk, passport_quote):
        """Analysis corrections need an analysis or file reference."""
        quote_id, _, _ = passport_quote
        with pytest.raises(ValidationError):
            desk.corrections.apply_correction(_payload(quote_id, "word_count", 10))

    def test_analysis_of_other_quote(self, desk, passport_quote, new_quote):
        """An analysis from another quote is not found."""
        _, _, analysis_id = passport_quote
        with pytest.raises(NotFoundError):
            desk.corrections.apply_correction(_payload(new_quote(), "word_count", 10, analysis_id=analysis_id))


class TestGroupAndPageCorrections:
    """Tests for corrections routed through document groups."""

    @pytest.fixture
    def grouped(self, desk, new_quote, ingested_file):
        quote_id = new_quote()
        file_id, _ = ingested_file(quote_id, 230, pages=[100, 130])
        group_id = desk.groups.create_group(quote_id, "Certificate", complexity="medium")
        pages = desk.store.list_pages(quote_id, file_id)
        for page in pages:
            desk.groups.assign_item(group_id, "page", page.id)
        return quote_id, group_id, pages

    def test_page_word_count(self, desk, grouped):
        """Correcting a page recomputes its group."""
        quote_id, group_id, pages = grouped
        outcome = desk.corrections.apply_correction(
            _payload(quote_id, "page_word_count", 200, page_id=pages[0].id)
        )
        group = desk.store.get_group(group_id)
        assert group.word_count == 330
        assert group.line_total == Decimal("110.50")
        assert outcome.prior_value == "100"

        (record,) = desk.corrections.list_corrections(quote_id)
        assert record.group_id == group_id
        assert record.page_id == pages[0].id

    def test_group_complexity(self, desk, grouped):
        """Group complexity corrections re-resolve the multiplier."""
        quote_id, group_id, _ = grouped
        outcome = desk.corrections.apply_correction(_payload(quote_id, "group_complexity", "hard", group_id=group_id))
        assert outcome.prior_value == "medium"
        assert desk.store.get_group(group_id).line_total == Decimal("84.50")

    def test_group_document_type_suggestion(self, desk, grouped, cert_ids):
        """Group document type changes suggest the group certification."""
        quote_id, group_id, _ = grouped
        outcome = desk.corrections.apply_correction(
            _payload(quote_id, "group_document_type", "birth_certificate", group_id=group_id)
        )
        (suggestion,) = outcome.suggested_corrections
        assert suggestion["field_name"] == "group_certification_type_id"
        assert suggestion["suggested_value"] == cert_ids["notarized"]

    def test_group_of_other_quote(self, desk, grouped, new_quote):
        """Groups must belong to the referenced quote."""
        _, group_id, _ = grouped
        with pytest.raises(NotFoundError):
            desk.corrections.apply_correction(_payload(new_quote(), "group_label", "X", group_id=group_id))


class TestQuoteCorrections:
    """Tests for quote-level and customer corrections."""

    def test_discount_replaces_active_entry(self, desk, passport_quote):
        """Discount corrections supersede the active discount."""
        quote_id, _, _ = passport_quote
        first = desk.corrections.apply_correction(_payload(quote_id, "discount", "20.00"))
        assert first.prior_value == "0.00"
        assert first.totals.total == Decimal("74.55")

        second = desk.corrections.apply_correction(_payload(quote_id, "discount", "10.00"))
        assert second.prior_value == "20.00"
        assert second.totals.total == Decimal("85.05")
        assert len(desk.store.list_adjustments(quote_id, active_only=True)) == 1

    def test_delivery_option(self, desk, passport_quote, store):
        """Delivery corrections set the option and its fee."""
        quote_id, _, _ = passport_quote
        outcome = desk.corrections.apply_correction(_payload(quote_id, "delivery_option", "courier"))
        assert outcome.totals.delivery_fee == Decimal("25.00")
        assert outcome.totals.total == Decimal("121.80")
        assert store.require_quote(quote_id).delivery_option_id == store.get_delivery_option_by_code("courier").id

    def test_tax_rate(self, desk, passport_quote):
        """Tax corrections recompute the total."""
        quote_id, _, _ = passport_quote
        outcome = desk.corrections.apply_correction(_payload(quote_id, "tax_rate", "0.10"))
        assert outcome.prior_value == "0.05"
        assert outcome.totals.total == Decimal("100.10")

    def test_shipping_address(self, desk, passport_quote):
        """Addresses are stored without a recompute."""
        quote_id, _, _ = passport_quote
        address = {"line1": "1 Main St", "city": "Calgary"}
        outcome = desk.corrections.apply_correction(_payload(quote_id, "shipping_address", address))
        assert outcome.recomputed is False
        assert desk.store.require_quote(quote_id).shipping_address == address

    def test_customer_email(self, desk, store, new_quote):
        """Customer contact corrections update the linked customer."""
        customer_id = store.create_customer("Ana Lopez", "ana@example.com")
        quote_id = new_quote(customer_id=customer_id)
        outcome = desk.corrections.apply_correction(_payload(quote_id, "customer_email", "ana.lopez@example.com"))
        assert outcome.prior_value == "ana@example.com"
        assert outcome.recomputed is False
        assert store.get_customer(customer_id).email == "ana.lopez@example.com"

    def test_customer_required(self, desk, new_quote):
        """Customer corrections need a linked customer."""
        with pytest.raises(ValidationError):
            desk.corrections.apply_correction(_payload(new_quote(), "customer_phone", "555-0100"))

    def test_locked_quote(self, desk, passport_quote):
        """Known fields cannot be corrected on cancelled quotes."""
        quote_id, _, _ = passport_quote
        desk.store.update_quote_fields(quote_id, {"status": QuoteStatus.CANCELLED})
        with pytest.raises(ValidationError):
            desk.corrections.apply_correction(_payload(quote_id, "tax_rate", "0.10"))


class TestAudit:
    """Tests for audit recording rules."""

    def test_unknown_field_recorded(self, desk, passport_quote):
        """Unknown fields are recorded with no side effect, even on closed quotes."""
        quote_id, _, _ = passport_quote
        desk.store.update_quote_fields(quote_id, {"status": QuoteStatus.COMPLETED})
        before = desk.store.require_quote(quote_id)

        outcome = desk.corrections.apply_correction(_payload(quote_id, "favourite_colour", "teal"))

        assert outcome.known_field is False
        assert outcome.recomputed is False
        assert outcome.correction_id is not None
        assert desk.store.require_quote(quote_id).total == before.total
        (record,) = desk.corrections.list_corrections(quote_id)
        assert record.field_name == "favourite_colour"
        assert record.corrected_value == "teal"

    def test_knowledge_base_flag(self, desk, passport_quote):
        """Flagged corrections are listed for the knowledge base."""
        quote_id, _, analysis_id = passport_quote
        payload = CorrectionPayload.from_dict(
            {
                "target_ref": {"quote_id": quote_id, "analysis_id": analysis_id},
                "field_name": "detected_language",
                "corrected_value": "pt",
                "knowledge_base_flag": True,
                "knowledge_base_comment": "OCR confuses pt and es",
            }
        )
        desk.corrections.apply_correction(payload)
        desk.corrections.apply_correction(_payload(quote_id, "word_count", 310, analysis_id=analysis_id))

        (record,) = desk.corrections.list_knowledge_base_corrections()
        assert record.field_name == "detected_language"
        assert record.knowledge_base_comment == "OCR confuses pt and es"

    def test_priced_correction_rolls_back_with_audit(self, desk, passport_quote, monkeypatch):
        """If the audit insert fails, a priced correction is undone."""
        quote_id, _, analysis_id = passport_quote

        def failing_insert(**kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(desk.store, "insert_correction", failing_insert)
        with pytest.raises(sqlite3.OperationalError):
            desk.corrections.apply_correction(_payload(quote_id, "word_count", 450, analysis_id=analysis_id))

        analysis = desk.store.get_analysis(analysis_id)
        assert analysis.word_count == 300
        assert analysis.line_total == Decimal("91.00")

    def test_label_correction_survives_audit_failure(self, desk, passport_quote, monkeypatch):
        """Non-pricing corrections stand even when the audit insert fails."""
        quote_id, _, analysis_id = passport_quote

        def failing_insert(**kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(desk.store, "insert_correction", failing_insert)
        outcome = desk.corrections.apply_correction(
            _payload(quote_id, "detected_language", "fr", analysis_id=analysis_id)
        )
        assert outcome.correction_id is None
        assert desk.store.get_analysis(analysis_id).detected_language == "fr"
