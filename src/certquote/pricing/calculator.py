"""
Pricing calculator (SSOT).

Pure functions: no I/O, no clock, no randomness. Same input → same output,
which is what makes every recompute idempotent.

Billable pages:
    raw = word_count / words_per_page * complexity_multiplier
    billable_pages = ceil(raw * 10) / 10, floored at min_billable_pages

A unit flagged non-billable (e.g. an empty document group) prices at zero.

Line total:
    line_total = billable_pages * per_page_rate
    per_page_rate = base_rate * language_multiplier (optionally rounded UP to
    a configured increment)

Certification price is tracked separately and never folded into line_total.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal

from ..config import PricingConfig
from ..errors import ValidationError
from ..schemas.amounts import (
    PAGE_PRECISION,
    ZERO,
    quantize_currency,
    to_decimal,
    validate_multiplier,
    validate_word_count,
)
from ..schemas.complexity import ComplexityLevel


@dataclass(frozen=True)
class PricingResult:
    """Priced unit of work."""

    word_count: int
    complexity_multiplier: Decimal
    billable_pages: Decimal
    per_page_rate: Decimal
    line_total: Decimal
    certification_price: Decimal

    @property
    def total_with_certification(self) -> Decimal:
        return self.line_total + self.certification_price


def calculate_billable_pages(
    word_count: int,
    complexity_multiplier: Decimal,
    *,
    words_per_page: int = 225,
    min_billable_pages: Decimal = Decimal("1.0"),
    billable: bool = True,
) -> Decimal:
    """Compute billable pages, rounded UP to the next tenth of a page.

    Args:
        word_count: Word count (>= 0)
        complexity_multiplier: Complexity factor (>= 1.0)
        words_per_page: Words per billable page
        min_billable_pages: Minimum charged for any billable unit
        billable: False for units that must price at zero

    Returns:
        Billable pages as a Decimal multiple of 0.1
    """
    if not billable:
        return ZERO.quantize(PAGE_PRECISION)
    if words_per_page <= 0:
        raise ValidationError("words_per_page must be positive")

    # Multiply before dividing so exact tenths stay exact
    tenths = Decimal(word_count) * complexity_multiplier * 10 / Decimal(words_per_page)
    pages = tenths.to_integral_value(rounding=ROUND_CEILING) / 10
    pages = max(pages, min_billable_pages)
    return pages.quantize(PAGE_PRECISION, rounding=ROUND_CEILING)


def effective_page_rate(
    base_rate: Decimal,
    language_multiplier: Decimal,
    rounding_increment: Decimal | None = None,
) -> Decimal:
    """Per-page rate after the language multiplier.

    With a rounding increment (e.g. 2.50) the rate is rounded UP to the next
    increment: 65.00 x 1.15 = 74.75 → 75.00.
    """
    rate = base_rate * language_multiplier
    if rounding_increment:
        steps = (rate / rounding_increment).to_integral_value(rounding=ROUND_CEILING)
        rate = steps * rounding_increment
    return rate


def calculate_line_total(
    billable_pages: Decimal,
    base_rate: Decimal,
    language_multiplier: Decimal,
    rounding_increment: Decimal | None = None,
) -> Decimal:
    """Line total for a number of billable pages, rounded to cents."""
    rate = effective_page_rate(base_rate, language_multiplier, rounding_increment)
    return quantize_currency(billable_pages * rate)


def calculate(
    word_count: int,
    complexity_multiplier: Decimal,
    language_multiplier: Decimal,
    base_rate: Decimal,
    certification_price: Decimal | None = None,
    *,
    words_per_page: int = 225,
    min_billable_pages: Decimal = Decimal("1.0"),
    billable: bool = True,
    rate_rounding_increment: Decimal | None = None,
) -> PricingResult:
    """Price a single unit of work (file, page, or document group aggregate).

    Raises:
        ValidationError: If any input is out of range
    """
    word_count = validate_word_count(word_count)
    complexity_multiplier = validate_multiplier(
        complexity_multiplier, field_name="complexity_multiplier"
    )
    language_multiplier = validate_multiplier(
        language_multiplier, field_name="language_multiplier"
    )
    base_rate = to_decimal(base_rate, field_name="base_rate")
    if base_rate < 0:
        raise ValidationError(f"base_rate: must not be negative, got {base_rate}")
    cert = quantize_currency(to_decimal(certification_price or 0, field_name="certification_price"))
    if cert < 0:
        raise ValidationError(f"certification_price: must not be negative, got {cert}")

    pages = calculate_billable_pages(
        word_count,
        complexity_multiplier,
        words_per_page=words_per_page,
        min_billable_pages=min_billable_pages,
        billable=billable,
    )
    rate = effective_page_rate(base_rate, language_multiplier, rate_rounding_increment)

    return PricingResult(
        word_count=word_count,
        complexity_multiplier=complexity_multiplier,
        billable_pages=pages,
        per_page_rate=quantize_currency(rate),
        line_total=quantize_currency(pages * rate),
        certification_price=cert,
    )


class PricingCalculator:
    """Config-bound front end to the pure pricing functions.

    Resolves complexity levels to multipliers from the rate table; the
    mapping is looked up on every call so a corrected complexity never
    reuses a stale multiplier.
    """

    def __init__(self, pricing: PricingConfig):
        self.pricing = pricing

    def complexity_multiplier(self, complexity: str | ComplexityLevel) -> Decimal:
        """Resolve a complexity level to its configured multiplier."""
        level = ComplexityLevel.parse(complexity)
        return self.pricing.complexity_multipliers[level.value]

    def price(
        self,
        word_count: int,
        complexity_multiplier: Decimal,
        language_multiplier: Decimal = Decimal("1.0"),
        base_rate: Decimal | None = None,
        certification_price: Decimal | None = None,
        billable: bool = True,
    ) -> PricingResult:
        """Price a unit with this configuration's constants."""
        return calculate(
            word_count,
            complexity_multiplier,
            language_multiplier,
            self.pricing.base_rate if base_rate is None else base_rate,
            certification_price,
            words_per_page=self.pricing.words_per_page,
            min_billable_pages=self.pricing.min_billable_pages,
            billable=billable,
            rate_rounding_increment=self.pricing.rate_rounding_increment,
        )

    def line_total(
        self,
        billable_pages: Decimal,
        base_rate: Decimal | None = None,
        language_multiplier: Decimal = Decimal("1.0"),
    ) -> Decimal:
        """Line total for already-known billable pages."""
        return calculate_line_total(
            billable_pages,
            self.pricing.base_rate if base_rate is None else base_rate,
            language_multiplier,
            self.pricing.rate_rounding_increment,
        )
