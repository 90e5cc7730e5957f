"""Tests for document groups and their assignments."""

from decimal import Decimal

import pytest

from certquote.errors import ConsistencyFailure, NotFoundError, ValidationError
from certquote.state_store import ItemType, QuoteStatus


@pytest.fixture
def grouped_quote(desk, new_quote, ingested_file):
    """A quote with one two-page file (100 + 130 words) and an empty medium group."""
    quote_id = new_quote()
    file_id, analysis_id = ingested_file(quote_id, 230, pages=[100, 130])
    page_ids = [p.id for p in desk.store.list_pages(quote_id, file_id)]
    group_id = desk.groups.create_group(quote_id, "Birth certificate", complexity="medium")
    return {
        "quote_id": quote_id,
        "file_id": file_id,
        "analysis_id": analysis_id,
        "page_ids": page_ids,
        "group_id": group_id,
    }


class TestGroupLifecycle:
    """Tests for creating, updating and deleting groups."""

    def test_create_uses_default_certification(self, desk, grouped_quote, cert_ids):
        """New groups start with the default certification."""
        group = desk.store.get_group(grouped_quote["group_id"])
        assert group.group_number == 1
        assert group.certification_type_id == cert_ids["standard"]
        assert group.complexity_multiplier == Decimal("1.15")

    def test_create_requires_label(self, desk, new_quote):
        """A label is required."""
        with pytest.raises(ValidationError):
            desk.groups.create_group(new_quote(), "  ")

    def test_create_on_unknown_quote(self, desk):
        """Unknown quotes are rejected."""
        with pytest.raises(NotFoundError):
            desk.groups.create_group(999, "Passport")

    def test_empty_group_prices_nothing(self, desk, grouped_quote):
        """An empty group is zero and leaves the standalone line in place."""
        group = desk.store.get_group(grouped_quote["group_id"])
        assert group.billable_pages == Decimal("0.0")
        assert group.line_total == Decimal("0.00")

        # 230 words easy → 1.1 pages → 71.50 standalone
        quote = desk.store.require_quote(grouped_quote["quote_id"])
        assert quote.subtotal == Decimal("71.50")

    def test_update_complexity_reprices(self, desk, grouped_quote):
        """Changing complexity re-resolves the multiplier and recomputes."""
        group_id = grouped_quote["group_id"]
        for page_id in grouped_quote["page_ids"]:
            desk.groups.assign_item(group_id, "page", page_id)

        desk.groups.update_group(group_id, {"complexity": "hard"})

        group = desk.store.get_group(group_id)
        assert group.complexity_multiplier == Decimal("1.25")
        assert group.billable_pages == Decimal("1.3")
        assert group.line_total == Decimal("84.50")
        assert desk.store.require_quote(grouped_quote["quote_id"]).subtotal == Decimal("84.50")

    def test_update_certification(self, desk, grouped_quote, cert_ids):
        """Changing certification re-fetches its price."""
        group_id = grouped_quote["group_id"]
        desk.groups.assign_item(group_id, "page", grouped_quote["page_ids"][0])
        desk.groups.update_group(group_id, {"certification_type_id": cert_ids["sworn"]})

        assert desk.store.get_group(group_id).certification_price == Decimal("35.00")
        quote = desk.store.require_quote(grouped_quote["quote_id"])
        assert quote.certification_total == Decimal("35.00")

    def test_update_inactive_certification(self, desk, grouped_quote, cert_ids):
        """Inactive certification types are rejected."""
        with pytest.raises(ValidationError):
            desk.groups.update_group(grouped_quote["group_id"], {"certification_type_id": cert_ids["apostille"]})

    def test_update_malformed_certification(self, desk, grouped_quote):
        """A non-numeric certification id is a rejected update, not a crash."""
        group_id = grouped_quote["group_id"]
        result = desk.update_document_group(group_id, {"certification_type_id": "sworn"})
        assert result["success"] is False
        with pytest.raises(ValidationError, match="certification_type_id"):
            desk.groups.update_group(group_id, {"certification_type_id": "sworn"})

    def test_update_unknown_field(self, desk, grouped_quote):
        """Only known group fields can be changed."""
        with pytest.raises(ValidationError):
            desk.groups.update_group(grouped_quote["group_id"], {"line_total": "1.00"})

    def test_delete_restores_standalone(self, desk, grouped_quote):
        """Deleting a group detaches its items back to standalone pricing."""
        group_id = grouped_quote["group_id"]
        desk.groups.assign_item(group_id, "file", grouped_quote["file_id"])
        desk.groups.delete_group(group_id)

        assert desk.store.get_group(group_id) is None
        assert desk.store.list_quote_assignments(grouped_quote["quote_id"]) == []
        assert desk.store.require_quote(grouped_quote["quote_id"]).subtotal == Decimal("71.50")

    def test_delete_renumbers(self, desk, grouped_quote):
        """Remaining groups are renumbered 1..n."""
        quote_id = grouped_quote["quote_id"]
        second = desk.groups.create_group(quote_id, "Diploma")
        third = desk.groups.create_group(quote_id, "Transcript")
        desk.groups.delete_group(second)
        assert desk.store.get_group(third).group_number == 2

    def test_delete_blocked_after_payment(self, desk, grouped_quote):
        """Groups of paid quotes cannot be deleted."""
        desk.store.update_quote_fields(grouped_quote["quote_id"], {"status": QuoteStatus.PAID})
        with pytest.raises(ValidationError):
            desk.groups.delete_group(grouped_quote["group_id"])

    def test_cancelled_quote_locked(self, desk, grouped_quote):
        """Cancelled quotes reject group changes."""
        desk.store.update_quote_fields(grouped_quote["quote_id"], {"status": QuoteStatus.CANCELLED})
        with pytest.raises(ValidationError):
            desk.groups.update_group(grouped_quote["group_id"], {"label": "Other"})


class TestAssignments:
    """Tests for assigning and unassigning items."""

    def test_two_pages_medium(self, desk, grouped_quote):
        """Pages of 100 and 130 words at medium price as 1.2 pages."""
        group_id = grouped_quote["group_id"]
        for page_id in grouped_quote["page_ids"]:
            desk.groups.assign_item(group_id, ItemType.PAGE, page_id)

        group = desk.store.get_group(group_id)
        assert group.word_count == 230
        assert group.total_pages == 2
        assert group.billable_pages == Decimal("1.2")
        assert group.line_total == Decimal("78.00")

        # The file's standalone line no longer counts
        quote = desk.store.require_quote(grouped_quote["quote_id"])
        assert quote.subtotal == Decimal("78.00")
        assert quote.tax_amount == Decimal("3.90")
        assert quote.total == Decimal("81.90")

    def test_ungrouped_pages_still_priced(self, desk, new_quote, ingested_file):
        """Pages left out of a group price as a remainder of their file."""
        quote_id = new_quote(tax_rate="0")
        file_id, _ = ingested_file(quote_id, 675, pages=[225, 225, 225])
        page_ids = [p.id for p in desk.store.list_pages(quote_id, file_id)]
        group_id = desk.groups.create_group(quote_id, "Contract")
        assert desk.store.require_quote(quote_id).subtotal == Decimal("195.00")

        subtotals = []
        for page_id in page_ids:
            desk.groups.assign_item(group_id, "page", page_id)
            subtotals.append(desk.store.require_quote(quote_id).subtotal)

        # group 65 + remainder 130, then 130 + 65, then 195 + nothing
        assert subtotals == [Decimal("195.00")] * 3
        assert desk.groups.list_unassigned_items(quote_id)["pages"] == []

    def test_remainder_keeps_file_certification(self, desk, new_quote, ingested_file, cert_ids):
        """The remainder carries the file's certification; the group carries its own."""
        quote_id = new_quote(tax_rate="0")
        file_id, analysis_id = ingested_file(quote_id, 450, pages=[225, 225], document_type="id_card")
        assert desk.store.get_analysis(analysis_id).certification_type_id == cert_ids["sworn"]
        page_ids = [p.id for p in desk.store.list_pages(quote_id, file_id)]
        group_id = desk.groups.create_group(quote_id, "Front side")

        desk.groups.assign_item(group_id, "page", page_ids[0])

        quote = desk.store.require_quote(quote_id)
        assert quote.certification_total == Decimal("35.00")
        # group 65 + remainder 65 + sworn 35
        assert quote.subtotal == Decimal("165.00")

    def test_order_independence(self, desk, new_quote, ingested_file):
        """Assigning A then B equals assigning B then A."""
        results = []
        for order in (0, 1):
            quote_id = new_quote()
            file_a, _ = ingested_file(quote_id, 310, filename="a.pdf")
            file_b, _ = ingested_file(quote_id, 415, filename="b.pdf")
            group_id = desk.groups.create_group(quote_id, "Set", complexity="hard")
            items = [file_a, file_b] if order == 0 else [file_b, file_a]
            for file_id in items:
                desk.groups.assign_item(group_id, "file", file_id)
            group = desk.store.get_group(group_id)
            quote = desk.store.require_quote(quote_id)
            results.append((group.word_count, group.billable_pages, group.line_total, quote.total))

        assert results[0] == results[1]

    def test_recalculate_is_idempotent(self, desk, grouped_quote):
        """Recalculating twice changes nothing."""
        group_id = grouped_quote["group_id"]
        desk.groups.assign_item(group_id, "page", grouped_quote["page_ids"][0])
        first = desk.groups.recalculate_group(group_id)
        second = desk.groups.recalculate_group(group_id)
        assert (first.word_count, first.billable_pages, first.line_total) == (
            second.word_count,
            second.billable_pages,
            second.line_total,
        )

    def test_word_count_override(self, desk, grouped_quote):
        """An assignment override replaces the item's word count."""
        group_id = grouped_quote["group_id"]
        desk.groups.assign_item(group_id, "page", grouped_quote["page_ids"][0], word_count_override=450)
        group = desk.store.get_group(group_id)
        assert group.word_count == 450
        # 450 * 1.15 / 225 = 2.3
        assert group.billable_pages == Decimal("2.3")

    def test_move_between_groups(self, desk, grouped_quote):
        """Assigning an item again moves it and recalculates both groups."""
        quote_id = grouped_quote["quote_id"]
        first = grouped_quote["group_id"]
        second = desk.groups.create_group(quote_id, "Other")
        page_id = grouped_quote["page_ids"][1]

        desk.groups.assign_item(first, "page", page_id)
        desk.groups.assign_item(second, "page", page_id)

        assert desk.store.get_group(first).word_count == 0
        assert desk.store.get_group(first).line_total == Decimal("0.00")
        assert desk.store.get_group(second).word_count == 130
        assert len(desk.store.list_quote_assignments(quote_id)) == 1

    def test_file_absorbs_page_assignments(self, desk, grouped_quote):
        """Grouping a whole file removes its page assignments."""
        quote_id = grouped_quote["quote_id"]
        first = grouped_quote["group_id"]
        second = desk.groups.create_group(quote_id, "Whole file")
        desk.groups.assign_item(first, "page", grouped_quote["page_ids"][0])

        desk.groups.assign_item(second, "file", grouped_quote["file_id"])

        assert desk.store.get_group(first).word_count == 0
        whole = desk.store.get_group(second)
        assert whole.word_count == 230
        assert whole.total_pages == 2

    def test_page_of_grouped_file_rejected(self, desk, grouped_quote):
        """A page cannot be grouped while its file is grouped as a whole."""
        quote_id = grouped_quote["quote_id"]
        desk.groups.assign_item(grouped_quote["group_id"], "file", grouped_quote["file_id"])
        other = desk.groups.create_group(quote_id, "Other")
        with pytest.raises(ValidationError):
            desk.groups.assign_item(other, "page", grouped_quote["page_ids"][0])

    def test_item_from_other_quote(self, desk, grouped_quote, new_quote):
        """Items must belong to the group's quote."""
        other_quote = new_quote()
        foreign_file = desk.store.add_file(other_quote, "other.pdf")
        with pytest.raises(NotFoundError):
            desk.groups.assign_item(grouped_quote["group_id"], "file", foreign_file)

    def test_bad_item_type(self, desk, grouped_quote):
        """Item type must be file or page."""
        with pytest.raises(ValidationError):
            desk.groups.assign_item(grouped_quote["group_id"], "folder", 1)

    def test_unassign_keeps_group(self, desk, grouped_quote):
        """Unassigning leaves an empty group behind."""
        group_id = grouped_quote["group_id"]
        assignment_id = desk.groups.assign_item(group_id, "file", grouped_quote["file_id"])
        assert desk.groups.unassign_item(assignment_id) == group_id

        group = desk.store.get_group(group_id)
        assert group is not None
        assert group.word_count == 0
        assert desk.store.require_quote(grouped_quote["quote_id"]).subtotal == Decimal("71.50")

    def test_unassign_unknown(self, desk):
        """Unknown assignments raise NotFoundError."""
        with pytest.raises(NotFoundError):
            desk.groups.unassign_item(12345)

    def test_unassigned_items(self, desk, grouped_quote):
        """Files and pages not covered by a group are listed."""
        quote_id = grouped_quote["quote_id"]
        loose_file = desk.store.add_file(quote_id, "loose.pdf")
        desk.groups.assign_item(grouped_quote["group_id"], "page", grouped_quote["page_ids"][0])

        unassigned = desk.groups.list_unassigned_items(quote_id)
        assert unassigned["files"] == [loose_file]
        assert unassigned["pages"] == [grouped_quote["page_ids"][1]]

    def test_orphaned_assignment_is_consistency_failure(self, desk, grouped_quote):
        """A dangling assignment stops recompute and keeps prior totals."""
        quote_id = grouped_quote["quote_id"]
        desk.groups.assign_item(grouped_quote["group_id"], "page", grouped_quote["page_ids"][0])
        before = desk.store.require_quote(quote_id).total

        conn = desk.store._get_connection()
        try:
            conn.execute("PRAGMA foreign_keys = OFF")
            conn.execute("DELETE FROM quote_pages WHERE id = ?", (grouped_quote["page_ids"][0],))
            conn.commit()
        finally:
            conn.close()

        with pytest.raises(ConsistencyFailure):
            desk.aggregator.recompute(quote_id)
        assert desk.store.require_quote(quote_id).total == before
