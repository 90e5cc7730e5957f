"""
Document group manager.

Owns group membership and the group aggregates derived from it.

Invariants:
- A group's word_count, total_pages, billable_pages and line_total are always
  recalculated from its current assignments, never edited directly
- A file or page belongs to at most one group; assigning it again moves it
- A whole file and one of its pages are never grouped at the same time:
  assigning the file absorbs its page assignments, assigning a page of a
  grouped file is rejected
- Every membership or group change recomputes the quote in the same unit of
  work

Aggregation (order-independent):
    word_count = Σ (word_count_override or item word count)
    total_pages = Σ (file: analysis page_count or 1, page: 1)
    billable_pages, line_total = calculator(word_count, group multiplier)
"""

import logging
from typing import Any

from ..errors import ConsistencyFailure, NotFoundError, ValidationError
from ..schemas.activity import ActivityEvent, ActivityType
from ..schemas.amounts import validate_word_count
from ..schemas.complexity import ComplexityLevel
from ..schemas.corrections import parse_reference_id
from ..state_store import (
    FINALIZED_STATUSES,
    AssignmentRecord,
    DocumentGroupRecord,
    ItemType,
    StateStore,
)
from .activity import ActivityDispatcher
from .rate_table import RateTable
from .totals import QuoteTotalsAggregator, require_open_quote

logger = logging.getLogger(__name__)

# Keys accepted by update_group, mapped to group columns
_UPDATABLE = {
    "label": "group_label",
    "group_label": "group_label",
    "document_type": "document_type",
    "complexity": "complexity",
    "certification_type_id": "certification_type_id",
}


class DocumentGroupManager:
    """Create, edit and delete document groups and their assignments."""

    def __init__(
        self,
        store: StateStore,
        rates: RateTable,
        aggregator: QuoteTotalsAggregator,
        dispatcher: ActivityDispatcher,
    ):
        self.store = store
        self.rates = rates
        self.aggregator = aggregator
        self.dispatcher = dispatcher

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def require_group(self, group_id: int, quote_id: int | None = None) -> DocumentGroupRecord:
        """Get a group (optionally checking its quote) or raise NotFoundError."""
        group = self.store.get_group(group_id)
        if group is None or (quote_id is not None and group.quote_id != quote_id):
            raise NotFoundError("Document group", group_id)
        return group

    def _quote_id_of_group(self, group_id: int) -> int:
        return self.require_group(group_id).quote_id

    def list_unassigned_items(self, quote_id: int) -> dict[str, list[int]]:
        """Files and pages of a quote that no group covers."""
        self.store.require_quote(quote_id)
        assignments = self.store.list_quote_assignments(quote_id)
        assigned_files = {a.file_id for a in assignments if a.item_type == ItemType.FILE}
        assigned_pages = {a.page_id for a in assignments if a.item_type == ItemType.PAGE}

        pages = self.store.list_pages(quote_id)
        files_with_grouped_pages = {p.file_id for p in pages if p.id in assigned_pages}

        return {
            "files": [
                f.id
                for f in self.store.list_files(quote_id)
                if f.id not in assigned_files and f.id not in files_with_grouped_pages
            ],
            "pages": [
                p.id
                for p in pages
                if p.id not in assigned_pages and p.file_id not in assigned_files
            ],
        }

    # -------------------------------------------------------------------------
    # Group lifecycle
    # -------------------------------------------------------------------------

    def create_group(
        self,
        quote_id: int,
        label: str,
        document_type: str | None = None,
        complexity: str = ComplexityLevel.EASY.value,
        staff_id: int | None = None,
        certification_type_id: int | None = None,
    ) -> int:
        """
        Create an empty document group.

        The group starts with the given certification, else the default
        active certification type.

        Returns:
            New group ID
        """
        label = (label or "").strip()
        if not label:
            raise ValidationError("group_label is required")
        level = ComplexityLevel.parse(complexity)

        with self.store.quote_transaction(quote_id):
            require_open_quote(self.store, quote_id)
            multiplier = self.rates.complexity_multiplier(level)

            if certification_type_id is None:
                default = self.rates.default_certification()
                certification_type_id = default.id if default else None
            cert_price = self.rates.certification_price(certification_type_id)

            group_id = self.store.create_group(
                quote_id=quote_id,
                group_label=label,
                complexity=level.value,
                complexity_multiplier=multiplier,
                document_type=document_type,
                certification_type_id=certification_type_id,
                certification_price=cert_price,
                created_by=staff_id,
            )
            self.recalculate_from_assignments(group_id)
            self.aggregator.recompute(quote_id)
            self.dispatcher.dispatch(
                ActivityEvent(
                    ActivityType.GROUP_CREATED,
                    staff_id,
                    "document_group",
                    group_id,
                    quote_id,
                    {"label": label, "complexity": level.value, "document_type": document_type},
                )
            )

        logger.info(f"Created group {group_id} '{label}' on quote {quote_id}")
        return group_id

    def update_group(self, group_id: int, changes: dict[str, Any], staff_id: int | None = None) -> int:
        """
        Update a group's label, document type, complexity or certification.

        Complexity re-resolves the multiplier; certification re-fetches the
        price. The group and quote are recomputed.

        Returns:
            The group ID
        """
        quote_id = self._quote_id_of_group(group_id)
        with self.store.quote_transaction(quote_id):
            require_open_quote(self.store, quote_id)
            applied = self.apply_group_changes(group_id, changes)
            self.aggregator.recompute(quote_id)
            self.dispatcher.dispatch(
                ActivityEvent(
                    ActivityType.GROUP_UPDATED, staff_id, "document_group", group_id, quote_id, applied
                )
            )
        return group_id

    def apply_group_changes(self, group_id: int, changes: dict[str, Any]) -> dict[str, Any]:
        """Write group field changes and recalculate the group (no quote recompute).

        Must run inside the quote's unit of work.

        Returns:
            Column values actually written
        """
        unknown = set(changes) - set(_UPDATABLE)
        if unknown:
            raise ValidationError(f"Unknown group fields: {sorted(unknown)}")

        self.require_group(group_id)
        fields: dict[str, Any] = {}
        for key, value in changes.items():
            column = _UPDATABLE[key]
            if column == "group_label":
                label = str(value or "").strip()
                if not label:
                    raise ValidationError("group_label must not be empty")
                fields[column] = label
            elif column == "document_type":
                fields[column] = str(value).strip() if value else None
            elif column == "complexity":
                level = ComplexityLevel.parse(value)
                fields["complexity"] = level.value
                fields["complexity_multiplier"] = self.rates.complexity_multiplier(level)
            elif column == "certification_type_id":
                cert_id = parse_reference_id(value, field_name="certification_type_id")
                fields["certification_type_id"] = cert_id
                fields["certification_price"] = self.rates.certification_price(cert_id)

        self.store.update_group_fields(group_id, fields)
        self.recalculate_from_assignments(group_id)
        return fields

    def delete_group(self, group_id: int, staff_id: int | None = None) -> int:
        """
        Delete a group, detaching its assignments (files/pages are kept).

        Remaining groups are renumbered 1..n.

        Returns:
            The deleted group ID

        Raises:
            ValidationError: If the quote's pricing has been paid against
        """
        quote_id = self._quote_id_of_group(group_id)
        with self.store.quote_transaction(quote_id):
            quote = require_open_quote(self.store, quote_id)
            if quote.status in FINALIZED_STATUSES:
                raise ValidationError(
                    f"Cannot delete a group on quote {quote.quote_number} ({quote.status.value})"
                )
            group = self.require_group(group_id)
            detached = self.store.delete_group(group_id)
            self.store.renumber_groups(quote_id)
            self.aggregator.recompute(quote_id)
            self.dispatcher.dispatch(
                ActivityEvent(
                    ActivityType.GROUP_DELETED,
                    staff_id,
                    "document_group",
                    group_id,
                    quote_id,
                    {"label": group.group_label, "detached_assignments": detached},
                )
            )

        logger.info(f"Deleted group {group_id} ({detached} assignments detached)")
        return group_id

    # -------------------------------------------------------------------------
    # Membership
    # -------------------------------------------------------------------------

    def assign_item(
        self,
        group_id: int,
        item_type: ItemType | str,
        item_id: int,
        staff_id: int | None = None,
        word_count_override: int | None = None,
    ) -> int:
        """
        Assign a file or page to a group, moving it out of any other group.

        Returns:
            New assignment ID

        Raises:
            NotFoundError: If the group or item does not exist in the quote
            ValidationError: If the item is a page of a file grouped as a whole
        """
        try:
            item_type = ItemType(item_type)
        except ValueError as e:
            raise ValidationError(f"item_type must be file or page, got {item_type!r}") from e
        if word_count_override is not None:
            word_count_override = validate_word_count(
                word_count_override, field_name="word_count_override"
            )

        quote_id = self._quote_id_of_group(group_id)
        with self.store.quote_transaction(quote_id):
            require_open_quote(self.store, quote_id)
            self.require_group(group_id, quote_id)
            touched = {group_id}

            if item_type == ItemType.FILE:
                file = self.store.get_file(item_id)
                if file is None or file.quote_id != quote_id:
                    raise NotFoundError("File", item_id)
                touched.update(self.store.delete_page_assignments_for_file(item_id))
            else:
                page = self.store.get_page(item_id)
                if page is None or page.quote_id != quote_id:
                    raise NotFoundError("Page", item_id)
                file_assignment = self.store.get_assignment_for_item(ItemType.FILE, page.file_id)
                if file_assignment is not None:
                    raise ValidationError(
                        f"Page {item_id} belongs to file {page.file_id}, which is grouped "
                        f"as a whole; unassign the file first"
                    )

            previous = self.store.get_assignment_for_item(item_type, item_id)
            if previous is not None:
                self.store.delete_assignment(previous.id)
                touched.add(previous.group_id)

            assignment_id = self.store.create_assignment(
                group_id=group_id,
                quote_id=quote_id,
                item_type=item_type,
                item_id=item_id,
                word_count_override=word_count_override,
                assigned_by=staff_id,
            )

            for touched_id in sorted(touched):
                self.recalculate_from_assignments(touched_id)
            self.aggregator.recompute(quote_id)

            self.dispatcher.dispatch(
                ActivityEvent(
                    ActivityType.ITEM_ASSIGNED,
                    staff_id,
                    "group_assignment",
                    assignment_id,
                    quote_id,
                    {
                        "group_id": group_id,
                        "item_type": item_type.value,
                        "item_id": item_id,
                        "word_count_override": word_count_override,
                        "moved_from_group_id": previous.group_id if previous else None,
                    },
                )
            )

        return assignment_id

    def unassign_item(self, assignment_id: int, staff_id: int | None = None) -> int:
        """
        Remove an assignment. The group stays, even when it becomes empty.

        Returns:
            The group ID the item was removed from
        """
        assignment = self._require_assignment(assignment_id)
        quote_id = assignment.quote_id
        with self.store.quote_transaction(quote_id):
            require_open_quote(self.store, quote_id)
            assignment = self._require_assignment(assignment_id)
            self.store.delete_assignment(assignment_id)
            self.recalculate_from_assignments(assignment.group_id)
            self.aggregator.recompute(quote_id)
            self.dispatcher.dispatch(
                ActivityEvent(
                    ActivityType.ITEM_UNASSIGNED,
                    staff_id,
                    "group_assignment",
                    assignment_id,
                    quote_id,
                    {
                        "group_id": assignment.group_id,
                        "item_type": assignment.item_type.value,
                        "item_id": assignment.item_id,
                    },
                )
            )
        return assignment.group_id

    def _require_assignment(self, assignment_id: int) -> AssignmentRecord:
        assignment = self.store.get_assignment(assignment_id)
        if assignment is None:
            raise NotFoundError("Assignment", assignment_id)
        return assignment

    # -------------------------------------------------------------------------
    # Aggregation
    # -------------------------------------------------------------------------

    def recalculate_from_assignments(self, group_id: int) -> DocumentGroupRecord:
        """
        Re-derive a group's aggregates from its current assignments.

        Idempotent and independent of assignment order. Does not recompute the
        quote; callers that change pricing do that in the same unit of work.

        Raises:
            ConsistencyFailure: If an assignment points at a missing file/page
        """
        group = self.require_group(group_id)
        with self.store.transaction():
            assignments = self.store.list_assignments(group_id)
            word_count = 0
            total_pages = 0

            for assignment in assignments:
                words, pages = self._item_counts(assignment)
                word_count += words
                total_pages += pages

            quote = self.store.require_quote(group.quote_id)
            result = self.rates.calculator.price(
                word_count,
                group.complexity_multiplier,
                language_multiplier=self.rates.language_multiplier(quote),
                billable=bool(assignments),
            )

            self.store.update_group_fields(
                group_id,
                {
                    "word_count": word_count,
                    "total_pages": total_pages,
                    "billable_pages": result.billable_pages,
                    "line_total": result.line_total,
                },
            )

        logger.debug(
            f"Group {group_id}: {len(assignments)} items, {word_count} words, "
            f"{result.billable_pages} pages, {result.line_total}"
        )
        return self.require_group(group_id)

    def recalculate_group(self, group_id: int) -> DocumentGroupRecord:
        """Public recalculation: group aggregates plus quote recompute."""
        quote_id = self._quote_id_of_group(group_id)
        with self.store.quote_transaction(quote_id):
            group = self.recalculate_from_assignments(group_id)
            self.aggregator.recompute(quote_id)
        return group

    def _item_counts(self, assignment: AssignmentRecord) -> tuple[int, int]:
        """(word count, page count) contributed by one assignment."""
        if assignment.item_type == ItemType.FILE:
            if self.store.get_file(assignment.file_id) is None:
                raise ConsistencyFailure(
                    f"Assignment {assignment.id} references missing file {assignment.file_id}"
                )
            analysis = self.store.get_analysis_by_file(assignment.file_id)
            pages = (analysis.page_count or 1) if analysis else 1
            words = analysis.word_count if analysis else 0
        else:
            page = self.store.get_page(assignment.page_id)
            if page is None:
                raise ConsistencyFailure(
                    f"Assignment {assignment.id} references missing page {assignment.page_id}"
                )
            pages = 1
            words = page.word_count

        if assignment.word_count_override is not None:
            words = assignment.word_count_override
        return words, pages

    def group_for_file(self, file_id: int | None) -> int | None:
        """Group whose aggregate depends on a file's analysis (whole-file assignment)."""
        if file_id is None:
            return None
        assignment = self.store.get_assignment_for_item(ItemType.FILE, file_id)
        return assignment.group_id if assignment else None
