"""
Adjustment ledger service.

Append-only ledger of discounts, surcharges, refunds and balance offsets.

Rules:
- calculated_amount is resolved once, at insertion (percentages against the
  subtotal at that moment) and never re-derived afterwards
- Entries are never edited; supersede_adjustment() appends a replacement and
  the replaced entry stops counting (a zero replacement voids it)
- Role limits apply to offset_discount/offset_credit only; exceeding a limit
  is rejected, never capped
- Refunds are an explicit flow (record_refund), not a negative entry: they
  reduce amount_paid, grow refund_amount and may reopen a paid quote
"""

import logging
from decimal import Decimal

from ..errors import LimitExceededError, NotFoundError, ValidationError
from ..schemas.activity import ActivityEvent, ActivityType
from ..schemas.amounts import ZERO, quantize_currency, to_decimal, validate_amount
from ..schemas.quote_totals import AdjustmentType, ValueType
from ..state_store import AdjustmentRecord, QuoteStatus, StaffRecord, StateStore
from .activity import ActivityDispatcher
from .rate_table import RateTable
from .totals import QuoteTotalsAggregator, require_open_quote

logger = logging.getLogger(__name__)

OFFSET_TYPES = frozenset({AdjustmentType.OFFSET_DISCOUNT, AdjustmentType.OFFSET_CREDIT})

_OFFSET_KINDS = {
    "discount": AdjustmentType.OFFSET_DISCOUNT,
    "credit": AdjustmentType.OFFSET_CREDIT,
}


def parse_value_type(value_type: ValueType | str) -> ValueType:
    try:
        return ValueType(value_type)
    except ValueError as e:
        raise ValidationError(f"value_type must be fixed or percentage, got {value_type!r}") from e


class AdjustmentLedger:
    """Records ledger entries and keeps quote totals consistent with them."""

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
    # Helpers
    # -------------------------------------------------------------------------

    def resolve_amount(self, quote_id: int, value_type: ValueType | str, value) -> Decimal:
        """Resolve an input value to a currency amount against the current subtotal."""
        value_type = parse_value_type(value_type)
        if value_type == ValueType.FIXED:
            return validate_amount(value, field_name="value")

        percent = to_decimal(value, field_name="value")
        if percent <= 0 or percent > 100:
            raise ValidationError(f"value: percentage must be in (0, 100], got {percent}")
        subtotal = self.aggregator.compute(quote_id).subtotal
        return quantize_currency(subtotal * percent / Decimal("100"))

    def check_offset_limit(self, staff_id: int | None, amount: Decimal) -> StaffRecord:
        """Reject an offset above the staff member's role limit.

        Raises:
            ValidationError: If no staff member is given
            NotFoundError: If the staff member does not exist
            LimitExceededError: If the amount exceeds the role limit
        """
        if staff_id is None:
            raise ValidationError("Balance offsets require a staff member")
        staff = self.store.get_staff(staff_id)
        if staff is None or not staff.is_active:
            raise NotFoundError("Staff user", staff_id)
        limit = self.rates.offset_limit(staff.role)
        if limit is not None and amount > limit:
            raise LimitExceededError(staff.role, limit, amount)
        return staff

    def active_entry(self, quote_id: int, adjustment_type: AdjustmentType) -> AdjustmentRecord | None:
        """Most recent active entry of a type."""
        entries = [
            a
            for a in self.store.list_adjustments(quote_id, active_only=True)
            if a.adjustment_type == adjustment_type.value
        ]
        return entries[-1] if entries else None

    # -------------------------------------------------------------------------
    # Ledger operations
    # -------------------------------------------------------------------------

    def add_adjustment(
        self,
        quote_id: int,
        adjustment_type: AdjustmentType | str,
        value_type: ValueType | str,
        value,
        calculated_amount: Decimal | None = None,
        reason: str | None = None,
        staff_id: int | None = None,
    ) -> int:
        """
        Append a discount, surcharge or offset entry and recompute the quote.

        Args:
            quote_id: Quote to adjust
            adjustment_type: discount, surcharge, offset_discount or offset_credit
            value_type: fixed or percentage
            value: Input value as entered (amount or percent)
            calculated_amount: Resolved currency amount; resolved from the
                current subtotal when omitted
            reason: Free-text reason
            staff_id: Staff member creating the entry

        Returns:
            New adjustment ID
        """
        try:
            adjustment_type = AdjustmentType(adjustment_type)
        except ValueError as e:
            raise ValidationError(f"Unknown adjustment type {adjustment_type!r}") from e
        if adjustment_type == AdjustmentType.REFUND:
            raise ValidationError("Refunds must be recorded with record_refund")
        value_type = parse_value_type(value_type)

        with self.store.quote_transaction(quote_id):
            require_open_quote(self.store, quote_id)

            if calculated_amount is None:
                amount = self.resolve_amount(quote_id, value_type, value)
            else:
                amount = validate_amount(calculated_amount, field_name="calculated_amount")
            if amount <= 0:
                raise ValidationError("Adjustment amount must be greater than zero")
            if adjustment_type in OFFSET_TYPES:
                self.check_offset_limit(staff_id, amount)

            adjustment_id = self.store.insert_adjustment(
                quote_id=quote_id,
                adjustment_type=adjustment_type.value,
                value_type=value_type.value,
                value=to_decimal(value, field_name="value"),
                calculated_amount=amount,
                reason=reason,
                created_by=staff_id,
            )
            self.aggregator.recompute(quote_id)
            self.dispatcher.dispatch(
                ActivityEvent(
                    ActivityType.ADJUSTMENT_ADDED,
                    staff_id,
                    "quote_adjustment",
                    adjustment_id,
                    quote_id,
                    {"type": adjustment_type.value, "amount": amount, "reason": reason},
                )
            )

        logger.info(f"Quote {quote_id}: {adjustment_type.value} {amount} (entry {adjustment_id})")
        return adjustment_id

    def supersede_adjustment(
        self,
        adjustment_id: int,
        value_type: ValueType | str = ValueType.FIXED,
        value=ZERO,
        reason: str | None = None,
        staff_id: int | None = None,
    ) -> int:
        """
        Replace an active entry with a new one of the same type.

        A zero value voids the entry.

        Returns:
            The replacement entry's ID
        """
        original = self.store.get_adjustment(adjustment_id)
        if original is None:
            raise NotFoundError("Adjustment", adjustment_id)
        adjustment_type = AdjustmentType(original.adjustment_type)
        if adjustment_type == AdjustmentType.REFUND:
            raise ValidationError("Refunds cannot be superseded")

        quote_id = original.quote_id
        with self.store.quote_transaction(quote_id):
            require_open_quote(self.store, quote_id)
            original = self.store.get_adjustment(adjustment_id)
            if original.is_void:
                raise ValidationError(f"Adjustment {adjustment_id} is a void entry")
            if not original.is_active:
                raise ValidationError(
                    f"Adjustment {adjustment_id} was already superseded by {original.superseded_by_id}"
                )

            replacement_id = self._supersede(original, value_type, value, reason, staff_id)
            self.aggregator.recompute(quote_id)

        return replacement_id

    def _supersede(
        self,
        original: AdjustmentRecord,
        value_type: ValueType | str,
        value,
        reason: str | None,
        staff_id: int | None,
    ) -> int:
        """Append the replacement entry (no recompute). Runs inside the quote's unit of work."""
        adjustment_type = AdjustmentType(original.adjustment_type)
        value_type = parse_value_type(value_type)
        if to_decimal(value, field_name="value") == 0:
            amount = Decimal("0.00")
        else:
            amount = self.resolve_amount(original.quote_id, value_type, value)
        if adjustment_type in OFFSET_TYPES and amount > 0:
            self.check_offset_limit(staff_id, amount)

        replacement_id = self.store.insert_adjustment(
            quote_id=original.quote_id,
            adjustment_type=adjustment_type.value,
            value_type=value_type.value,
            value=to_decimal(value, field_name="value"),
            calculated_amount=amount,
            reason=reason,
            created_by=staff_id,
            supersedes_id=original.id,
        )
        self.dispatcher.dispatch(
            ActivityEvent(
                ActivityType.ADJUSTMENT_SUPERSEDED,
                staff_id,
                "quote_adjustment",
                replacement_id,
                original.quote_id,
                {
                    "type": adjustment_type.value,
                    "supersedes_id": original.id,
                    "previous_amount": original.calculated_amount,
                    "amount": amount,
                },
            )
        )
        return replacement_id

    def set_adjustment(
        self,
        quote_id: int,
        adjustment_type: AdjustmentType,
        value_type: ValueType | str,
        value,
        reason: str | None = None,
        staff_id: int | None = None,
    ) -> int | None:
        """Make `value` the quote's single active entry of a type (no recompute).

        Supersedes the active entry if there is one, else appends a new entry.
        A zero value with no active entry writes nothing. Runs inside the
        quote's unit of work.

        Returns:
            ID of the entry written, or None
        """
        active = self.active_entry(quote_id, adjustment_type)
        if active is not None:
            return self._supersede(active, value_type, value, reason, staff_id)
        if to_decimal(value, field_name="value") == 0:
            return None

        amount = self.resolve_amount(quote_id, value_type, value)
        adjustment_id = self.store.insert_adjustment(
            quote_id=quote_id,
            adjustment_type=adjustment_type.value,
            value_type=parse_value_type(value_type).value,
            value=to_decimal(value, field_name="value"),
            calculated_amount=amount,
            reason=reason,
            created_by=staff_id,
        )
        self.dispatcher.dispatch(
            ActivityEvent(
                ActivityType.ADJUSTMENT_ADDED,
                staff_id,
                "quote_adjustment",
                adjustment_id,
                quote_id,
                {"type": adjustment_type.value, "amount": amount, "reason": reason},
            )
        )
        return adjustment_id

    def offset_balance(
        self,
        quote_id: int,
        amount,
        offset_type: str,
        reason: str,
        staff_id: int,
    ) -> int:
        """
        Reconcile a small balance difference with an offset entry.

        offset_type "discount" lowers the total; "credit" leaves the total and
        reduces the balance due.

        Returns:
            New adjustment ID

        Raises:
            LimitExceededError: If the amount exceeds the staff role limit
        """
        kind = _OFFSET_KINDS.get(str(offset_type).strip().lower())
        if kind is None:
            raise ValidationError(f"offset_type must be discount or credit, got {offset_type!r}")
        if not reason or not str(reason).strip():
            raise ValidationError("A reason is required for balance offsets")
        amount = validate_amount(amount)

        quote = self.store.require_quote(quote_id)
        if quote.status == QuoteStatus.CANCELLED:
            raise ValidationError(f"Quote {quote.quote_number} is cancelled")

        adjustment_id = self.add_adjustment(
            quote_id,
            kind,
            ValueType.FIXED,
            amount,
            calculated_amount=amount,
            reason=reason,
            staff_id=staff_id,
        )
        self.dispatcher.dispatch(
            ActivityEvent(
                ActivityType.BALANCE_OFFSET,
                staff_id,
                "quote",
                quote_id,
                quote_id,
                {"offset_type": kind.value, "amount": amount, "reason": reason},
            )
        )
        return adjustment_id

    def record_refund(
        self,
        quote_id: int,
        amount,
        method: str,
        reference: str | None = None,
        staff_id: int | None = None,
        reason: str | None = None,
    ) -> int:
        """
        Refund money already paid.

        Appends a refund entry, lowers amount_paid, grows refund_amount and
        recomputes the balance; a paid quote flips to balance_due when money
        is owed again.

        Returns:
            Refund entry ID
        """
        amount = validate_amount(amount)
        if not method or not str(method).strip():
            raise ValidationError("Refund method is required")

        with self.store.quote_transaction(quote_id):
            quote = require_open_quote(self.store, quote_id)
            if amount > quote.amount_paid:
                raise ValidationError(
                    f"Refund {amount} exceeds the amount paid ({quote.amount_paid})"
                )

            refund_id = self.store.insert_adjustment(
                quote_id=quote_id,
                adjustment_type=AdjustmentType.REFUND.value,
                value_type=ValueType.FIXED.value,
                value=amount,
                calculated_amount=amount,
                reason=reason,
                created_by=staff_id,
                method=method,
                reference=reference,
            )
            self.store.update_quote_fields(
                quote_id,
                {
                    "amount_paid": quote.amount_paid - amount,
                    "refund_amount": quote.refund_amount + amount,
                },
            )
            self.aggregator.recompute(quote_id)
            self.dispatcher.dispatch(
                ActivityEvent(
                    ActivityType.REFUND_RECORDED,
                    staff_id,
                    "quote_adjustment",
                    refund_id,
                    quote_id,
                    {"amount": amount, "method": method, "reference": reference},
                )
            )

        logger.info(f"Quote {quote.quote_number}: refunded {amount} via {method}")
        return refund_id

    def record_payment(
        self,
        quote_id: int,
        amount,
        staff_id: int | None = None,
        method: str | None = None,
        reference: str | None = None,
    ) -> Decimal:
        """
        Record money received for a quote.

        Returns:
            New amount_paid
        """
        amount = validate_amount(amount)
        with self.store.quote_transaction(quote_id):
            quote = require_open_quote(self.store, quote_id)
            amount_paid = quote.amount_paid + amount
            fields = {"amount_paid": amount_paid}
            if method:
                fields["payment_method"] = method
            self.store.update_quote_fields(quote_id, fields)
            self.aggregator.recompute(quote_id)
            self.dispatcher.dispatch(
                ActivityEvent(
                    ActivityType.PAYMENT_RECORDED,
                    staff_id,
                    "quote",
                    quote_id,
                    quote_id,
                    {"amount": amount, "method": method, "reference": reference},
                )
            )

        logger.info(f"Quote {quote.quote_number}: payment {amount} (paid {amount_paid})")
        return amount_paid
