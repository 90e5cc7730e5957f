"""Tests for amount validation and totals folding."""

from decimal import Decimal

import pytest

from certquote.errors import ValidationError
from certquote.schemas.amounts import (
    quantize_currency,
    to_decimal,
    validate_amount,
    validate_rate,
    validate_word_count,
)
from certquote.schemas.quote_totals import AdjustmentType, QuoteTotals, compute_totals


class TestAmountValidation:
    """Tests for amount helpers."""

    def test_to_decimal_accepts_comma(self):
        """European decimal commas are accepted."""
        assert to_decimal("12,50") == Decimal("12.50")

    def test_to_decimal_float_is_exact(self):
        """Floats go through their string form."""
        assert to_decimal(0.1) == Decimal("0.1")

    def test_to_decimal_rejects_bool(self):
        """Booleans are not amounts."""
        with pytest.raises(ValidationError):
            to_decimal(True)

    def test_to_decimal_rejects_garbage(self):
        """Non-numeric strings are rejected."""
        with pytest.raises(ValidationError):
            to_decimal("abc")

    def test_quantize_half_up(self):
        """Cents round half up."""
        assert quantize_currency(Decimal("2.345")) == Decimal("2.35")

    def test_validate_amount_positive(self):
        """Amounts must be positive."""
        assert validate_amount("15") == Decimal("15.00")
        with pytest.raises(ValidationError):
            validate_amount("-5")
        with pytest.raises(ValidationError):
            validate_amount(0)

    def test_validate_amount_allow_zero(self):
        """Zero is allowed on request."""
        assert validate_amount(0, allow_zero=True) == Decimal("0.00")

    def test_validate_amount_max(self):
        """Maximum is enforced."""
        with pytest.raises(ValidationError):
            validate_amount(101, max_amount=Decimal("100"))

    def test_word_count_whole_number(self):
        """Word counts are whole and non-negative."""
        assert validate_word_count("120") == 120
        with pytest.raises(ValidationError):
            validate_word_count("12.5")
        with pytest.raises(ValidationError):
            validate_word_count(-3)

    def test_rate_fraction(self):
        """Rates are fractions in [0, 1)."""
        assert validate_rate("0.05") == Decimal("0.05")
        with pytest.raises(ValidationError):
            validate_rate("5")


class TestComputeTotals:
    """Tests for compute_totals()."""

    def test_scenario_three(self):
        """$100 + $50, $20 discount, 5% tax → $136.50."""
        totals = compute_totals(
            line_totals=[Decimal("100.00"), Decimal("50.00")],
            certification_prices=[Decimal("0.00"), Decimal("0.00")],
            adjustments=[(AdjustmentType.DISCOUNT, Decimal("20.00"))],
            tax_rate=Decimal("0.05"),
        )
        assert totals.subtotal == Decimal("150.00")
        assert totals.discount_total == Decimal("-20.00")
        assert totals.pre_tax_total == Decimal("130.00")
        assert totals.tax_amount == Decimal("6.50")
        assert totals.total == Decimal("136.50")

    def test_empty_quote(self):
        """No units and no entries total zero."""
        totals = compute_totals(line_totals=[], certification_prices=[])
        assert totals.total == Decimal("0.00")
        assert str(totals.discount_total) == "0.00"

    def test_certifications_in_subtotal(self):
        """Document and quote-level certifications count toward the subtotal."""
        totals = compute_totals(
            line_totals=[Decimal("149.50")],
            certification_prices=[Decimal("35.00")],
            quote_certification_total=Decimal("20.00"),
        )
        assert totals.certification_total == Decimal("55.00")
        assert totals.subtotal == Decimal("204.50")

    def test_rush_fee_on_adjusted_subtotal(self):
        """Rush fee applies after discounts and surcharges."""
        totals = compute_totals(
            line_totals=[Decimal("100.00")],
            certification_prices=[],
            adjustments=[
                (AdjustmentType.DISCOUNT, Decimal("10.00")),
                (AdjustmentType.SURCHARGE, Decimal("30.00")),
            ],
            is_rush=True,
            rush_rate=Decimal("0.30"),
            delivery_fee=Decimal("25.00"),
        )
        assert totals.rush_fee == Decimal("36.00")
        assert totals.pre_tax_total == Decimal("181.00")

    def test_rush_fee_zero_when_not_rush(self):
        """No rush, no fee."""
        totals = compute_totals(
            line_totals=[Decimal("100.00")], certification_prices=[], rush_rate=Decimal("0.30")
        )
        assert totals.rush_fee == Decimal("0.00")

    def test_balance_only_entries_do_not_change_total(self):
        """Refunds and offset credits leave the total alone."""
        base = dict(line_totals=[Decimal("100.00")], certification_prices=[])
        plain = compute_totals(**base)
        with_credits = compute_totals(
            **base,
            adjustments=[
                (AdjustmentType.REFUND, Decimal("40.00")),
                (AdjustmentType.OFFSET_CREDIT, Decimal("5.00")),
            ],
        )
        assert plain.total == with_credits.total

    def test_offset_discount_lowers_total(self):
        """Offset discounts count as discounts."""
        totals = compute_totals(
            line_totals=[Decimal("100.00")],
            certification_prices=[],
            adjustments=[(AdjustmentType.OFFSET_DISCOUNT, Decimal("5.00"))],
        )
        assert totals.total == Decimal("95.00")

    def test_order_independent(self):
        """Summation order does not matter."""
        lines = [Decimal("10.10"), Decimal("20.20"), Decimal("30.33")]
        a = compute_totals(line_totals=lines, certification_prices=[], tax_rate=Decimal("0.07"))
        b = compute_totals(line_totals=lines[::-1], certification_prices=[], tax_rate=Decimal("0.07"))
        assert a == b

    def test_snapshot_roundtrip(self):
        """The stored snapshot rebuilds the same totals."""
        totals = compute_totals(
            line_totals=[Decimal("149.50")],
            certification_prices=[Decimal("35.00")],
            is_rush=True,
            rush_rate=Decimal("0.30"),
            tax_rate=Decimal("0.05"),
        )
        assert QuoteTotals.from_snapshot(totals.to_snapshot()) == totals

    def test_aggregation_invariant(self):
        """total = subtotal + adjustments + fees + tax."""
        totals = compute_totals(
            line_totals=[Decimal("78.00"), Decimal("149.50")],
            certification_prices=[Decimal("35.00"), Decimal("0")],
            adjustments=[(AdjustmentType.SURCHARGE, Decimal("12.34"))],
            is_rush=True,
            rush_rate=Decimal("0.30"),
            delivery_fee=Decimal("25.00"),
            tax_rate=Decimal("0.13"),
        )
        assert totals.total == (
            totals.subtotal
            + totals.adjustments_total
            + totals.rush_fee
            + totals.delivery_fee
            + totals.tax_amount
        )
