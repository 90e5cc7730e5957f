"""
Amount handling (SSOT).

This module provides the SINGLE canonical implementation for turning
user/API input into currency amounts and quantities.

Core Invariants:
- Money is always Decimal, quantized to CURRENCY_PRECISION with ROUND_HALF_UP
- Billable pages are always quantized to PAGE_PRECISION (tenths of a page)
- Floats are converted through str() so 0.1 stays 0.1
- Invalid input raises ValidationError before anything is written
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from ..errors import ValidationError

# Rounding precision for currency amounts
CURRENCY_PRECISION = Decimal("0.01")

# Billable pages are counted in tenths of a page
PAGE_PRECISION = Decimal("0.1")

ZERO = Decimal("0")


def to_decimal(value: Decimal | float | int | str, *, field_name: str = "value") -> Decimal:
    """Convert user input to Decimal.

    Raises:
        ValidationError: If the value is not a finite number
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field_name}: expected a number, got {value!r}")
    try:
        if isinstance(value, Decimal):
            result = value
        elif isinstance(value, str):
            result = Decimal(value.strip().replace(",", "."))
        elif isinstance(value, float):
            result = Decimal(str(value))
        else:
            result = Decimal(value)
    except (InvalidOperation, ValueError, TypeError) as e:
        raise ValidationError(f"{field_name}: invalid number {value!r}") from e

    if not result.is_finite():
        raise ValidationError(f"{field_name}: invalid number {value!r}")
    return result


def quantize_currency(amount: Decimal) -> Decimal:
    """Round an amount to cents (ROUND_HALF_UP)."""
    return amount.quantize(CURRENCY_PRECISION, rounding=ROUND_HALF_UP)


def validate_amount(
    amount: Decimal | float | int | str,
    *,
    field_name: str = "amount",
    allow_zero: bool = False,
    max_amount: Decimal | None = None,
) -> Decimal:
    """Validate and normalize a currency amount (SSOT for amount validation).

    Amount Sign Convention:
    - All stored amounts are positive
    - The adjustment type (discount/surcharge/refund/...) carries the direction

    Args:
        amount: The amount to validate (Decimal, float, int or string)
        field_name: Name for error messages
        allow_zero: Whether zero is a valid value (default: False)
        max_amount: Optional maximum allowed amount

    Returns:
        Validated Decimal amount, quantized to CURRENCY_PRECISION

    Raises:
        ValidationError: If amount is negative, zero when not allowed, or too large
    """
    amount = quantize_currency(to_decimal(amount, field_name=field_name))

    if amount < 0:
        raise ValidationError(
            f"{field_name}: Amount must be positive, got {amount}. "
            f"Use the adjustment type to indicate direction."
        )

    if not allow_zero and amount == 0:
        raise ValidationError(f"{field_name}: Amount must be greater than zero")

    if max_amount is not None and amount > max_amount:
        raise ValidationError(f"{field_name}: Amount {amount} exceeds maximum {max_amount}")

    return amount


def validate_word_count(value: int | str, *, field_name: str = "word_count") -> int:
    """Validate a word count (non-negative integer)."""
    number = to_decimal(value, field_name=field_name)
    if number != number.to_integral_value():
        raise ValidationError(f"{field_name}: must be a whole number, got {value!r}")
    if number < 0:
        raise ValidationError(f"{field_name}: must not be negative, got {value!r}")
    return int(number)


def validate_multiplier(value: Decimal | float | str, *, field_name: str) -> Decimal:
    """Validate a pricing multiplier (must be >= 1.0)."""
    multiplier = to_decimal(value, field_name=field_name)
    if multiplier < 1:
        raise ValidationError(f"{field_name}: multiplier must be >= 1.0, got {multiplier}")
    return multiplier


def validate_rate(value: Decimal | float | str, *, field_name: str = "tax_rate") -> Decimal:
    """Validate a fractional rate such as a tax rate (0 <= rate < 1)."""
    rate = to_decimal(value, field_name=field_name)
    if rate < 0 or rate >= 1:
        raise ValidationError(f"{field_name}: must be a fraction in [0, 1), got {rate}")
    return rate


def is_page_multiple(value: Decimal) -> bool:
    """Check that a billable page value is a whole number of tenths."""
    return value == value.quantize(PAGE_PRECISION)
