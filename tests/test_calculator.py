"""Tests for the pricing calculator."""

from decimal import Decimal

import pytest

from certquote.config import PricingConfig
from certquote.errors import ValidationError
from certquote.pricing import PricingCalculator, calculate, calculate_billable_pages
from certquote.pricing.calculator import calculate_line_total, effective_page_rate
from certquote.schemas.amounts import is_page_multiple


class TestBillablePages:
    """Tests for billable page rounding."""

    def test_500_words_easy(self):
        """500 words at easy complexity round up to 2.3 pages."""
        assert calculate_billable_pages(500, Decimal("1.00")) == Decimal("2.3")

    def test_grouped_pages_medium(self):
        """230 words at medium complexity round up to 1.2 pages."""
        assert calculate_billable_pages(230, Decimal("1.15")) == Decimal("1.2")

    def test_exact_tenth_is_not_rounded_up(self):
        """A page count that is already a tenth stays put."""
        # 450 words = exactly 2.0 pages
        assert calculate_billable_pages(450, Decimal("1.00")) == Decimal("2.0")

    def test_minimum_billing_floor(self):
        """Short documents are billed at the minimum page count."""
        assert calculate_billable_pages(10, Decimal("1.00")) == Decimal("1.0")
        assert calculate_billable_pages(0, Decimal("1.25")) == Decimal("1.0")

    def test_custom_minimum(self):
        """The floor is configurable."""
        assert calculate_billable_pages(10, Decimal("1.00"), min_billable_pages=Decimal("0")) == Decimal("0.1")

    def test_non_billable_unit_prices_zero(self):
        """Units flagged non-billable are zero pages."""
        assert calculate_billable_pages(900, Decimal("1.00"), billable=False) == Decimal("0.0")

    @pytest.mark.parametrize("word_count", [1, 99, 224, 226, 451, 1000, 4567, 12345])
    @pytest.mark.parametrize("multiplier", ["1.00", "1.15", "1.25", "1.333"])
    def test_rounding_law(self, word_count, multiplier):
        """Billable pages are tenths and never below the unrounded value."""
        m = Decimal(multiplier)
        pages = calculate_billable_pages(word_count, m, min_billable_pages=Decimal("0"))
        raw = Decimal(word_count) * m / Decimal(225)
        assert is_page_multiple(pages)
        assert pages >= raw
        assert pages - raw < Decimal("0.1")


class TestLineTotal:
    """Tests for rates and line totals."""

    def test_scenario_line_total(self):
        """2.3 pages at $65 is $149.50."""
        assert calculate_line_total(Decimal("2.3"), Decimal("65.00"), Decimal("1.0")) == Decimal("149.50")

    def test_language_multiplier_applies_to_rate(self):
        """Language multiplier scales the per-page rate."""
        assert effective_page_rate(Decimal("65.00"), Decimal("1.20")) == Decimal("78.0000")

    def test_rate_rounding_increment(self):
        """With an increment the rate is rounded up to it."""
        assert effective_page_rate(Decimal("65.00"), Decimal("1.15"), Decimal("2.50")) == Decimal("75.00")

    def test_line_total_rounds_half_up(self):
        """Line totals are quantized to cents."""
        assert calculate_line_total(Decimal("1.1"), Decimal("33.335"), Decimal("1.0")) == Decimal("36.67")


class TestCalculate:
    """Tests for the full calculate() function."""

    def test_scenario_one(self):
        """500 words, easy, $65, multiplier 1.0."""
        result = calculate(500, Decimal("1.00"), Decimal("1.0"), Decimal("65"))
        assert result.billable_pages == Decimal("2.3")
        assert result.line_total == Decimal("149.50")
        assert result.certification_price == Decimal("0.00")

    def test_certification_kept_separate(self):
        """Certification price is reported but not folded into line_total."""
        result = calculate(500, Decimal("1.00"), Decimal("1.0"), Decimal("65"), Decimal("35"))
        assert result.line_total == Decimal("149.50")
        assert result.total_with_certification == Decimal("184.50")

    def test_determinism(self):
        """Same inputs give identical results."""
        args = (1234, Decimal("1.15"), Decimal("1.20"), Decimal("65.00"))
        assert calculate(*args) == calculate(*args)

    def test_rejects_negative_word_count(self):
        """Negative word counts are rejected."""
        with pytest.raises(ValidationError):
            calculate(-1, Decimal("1.00"), Decimal("1.0"), Decimal("65"))

    def test_rejects_multiplier_below_one(self):
        """Complexity multipliers below 1.0 are rejected."""
        with pytest.raises(ValidationError):
            calculate(100, Decimal("0.9"), Decimal("1.0"), Decimal("65"))

    def test_rejects_negative_rate(self):
        """Negative base rates are rejected."""
        with pytest.raises(ValidationError):
            calculate(100, Decimal("1.0"), Decimal("1.0"), Decimal("-1"))


class TestPricingCalculator:
    """Tests for the config-bound calculator."""

    def test_complexity_lookup(self):
        """Complexity levels resolve to configured multipliers."""
        calc = PricingCalculator(PricingConfig())
        assert calc.complexity_multiplier("easy") == Decimal("1.00")
        assert calc.complexity_multiplier("medium") == Decimal("1.15")
        assert calc.complexity_multiplier("HIGH") == Decimal("1.25")

    def test_unknown_complexity(self):
        """Unknown complexity labels are rejected."""
        with pytest.raises(ValidationError):
            PricingCalculator(PricingConfig()).complexity_multiplier("extreme")

    def test_price_uses_config(self):
        """Configured base rate and words per page are applied."""
        calc = PricingCalculator(PricingConfig(words_per_page=250, base_rate=Decimal("50.00")))
        result = calc.price(500, Decimal("1.00"))
        assert result.billable_pages == Decimal("2.0")
        assert result.line_total == Decimal("100.00")
