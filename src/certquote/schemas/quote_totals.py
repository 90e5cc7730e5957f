"""
Quote totals value object (SSOT).

QuoteTotals is computed ONCE per recompute and projected into both the flat
quote columns and the calculated_totals snapshot in a single write. Nothing
else may derive either view.

Formula:
    translation_total = Σ standalone line_total + Σ group line_total
    certification_total = Σ document certification_price + Σ quote certifications
    subtotal = translation_total + certification_total
    discount_total = -Σ(discount + offset_discount)
    surcharge_total = Σ surcharge
    rush_fee = (subtotal + discount_total + surcharge_total) * rush_rate  (rush only)
    pre_tax_total = subtotal + discount_total + surcharge_total + rush_fee + delivery_fee
    tax_amount = pre_tax_total * tax_rate
    total = pre_tax_total + tax_amount
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

from .amounts import ZERO, quantize_currency


class AdjustmentType(str, Enum):
    """Ledger entry types."""

    DISCOUNT = "discount"
    SURCHARGE = "surcharge"
    REFUND = "refund"
    OFFSET_DISCOUNT = "offset_discount"
    OFFSET_CREDIT = "offset_credit"


class ValueType(str, Enum):
    """How an adjustment's input value is expressed."""

    FIXED = "fixed"
    PERCENTAGE = "percentage"


# Entry types that lower the quote total
DISCOUNT_TYPES = frozenset({AdjustmentType.DISCOUNT, AdjustmentType.OFFSET_DISCOUNT})

# Entry types that only move the balance, never the total
BALANCE_ONLY_TYPES = frozenset({AdjustmentType.REFUND, AdjustmentType.OFFSET_CREDIT})


@dataclass(frozen=True)
class QuoteTotals:
    """Authoritative totals for one quote."""

    translation_total: Decimal
    doc_certification_total: Decimal
    quote_certification_total: Decimal
    certification_total: Decimal
    subtotal: Decimal
    discount_total: Decimal
    surcharge_total: Decimal
    rush_fee: Decimal
    delivery_fee: Decimal
    pre_tax_total: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal
    is_rush: bool
    language_multiplier: Decimal

    @property
    def adjustments_total(self) -> Decimal:
        return self.discount_total + self.surcharge_total

    def to_snapshot(self) -> dict[str, Any]:
        """JSON-safe projection stored in quotes.calculated_totals."""
        return {
            "translation_total": str(self.translation_total),
            "doc_certification_total": str(self.doc_certification_total),
            "quote_certification_total": str(self.quote_certification_total),
            "certification_total": str(self.certification_total),
            "subtotal": str(self.subtotal),
            "discount_total": str(self.discount_total),
            "surcharge_total": str(self.surcharge_total),
            "adjustments_total": str(self.adjustments_total),
            "rush_fee": str(self.rush_fee),
            "delivery_fee": str(self.delivery_fee),
            "pre_tax_total": str(self.pre_tax_total),
            "tax_rate": str(self.tax_rate),
            "tax_amount": str(self.tax_amount),
            "total": str(self.total),
            "is_rush": self.is_rush,
            "language_multiplier": str(self.language_multiplier),
        }

    @classmethod
    def from_snapshot(cls, snapshot: dict[str, Any]) -> "QuoteTotals":
        """Rebuild from a stored calculated_totals snapshot."""
        return cls(
            translation_total=Decimal(snapshot["translation_total"]),
            doc_certification_total=Decimal(snapshot.get("doc_certification_total", "0")),
            quote_certification_total=Decimal(snapshot.get("quote_certification_total", "0")),
            certification_total=Decimal(snapshot["certification_total"]),
            subtotal=Decimal(snapshot["subtotal"]),
            discount_total=Decimal(snapshot["discount_total"]),
            surcharge_total=Decimal(snapshot["surcharge_total"]),
            rush_fee=Decimal(snapshot["rush_fee"]),
            delivery_fee=Decimal(snapshot["delivery_fee"]),
            pre_tax_total=Decimal(snapshot["pre_tax_total"]),
            tax_rate=Decimal(snapshot["tax_rate"]),
            tax_amount=Decimal(snapshot["tax_amount"]),
            total=Decimal(snapshot["total"]),
            is_rush=bool(snapshot.get("is_rush", False)),
            language_multiplier=Decimal(snapshot.get("language_multiplier", "1.0")),
        )

    def to_response(self) -> dict[str, Any]:
        """Shape returned by recompute_quote_totals."""
        return {
            "subtotal": self.subtotal,
            "certification_total": self.certification_total,
            "rush_fee": self.rush_fee,
            "delivery_fee": self.delivery_fee,
            "tax_rate": self.tax_rate,
            "tax_amount": self.tax_amount,
            "total": self.total,
            "is_rush": self.is_rush,
            "translation_total": self.translation_total,
            "discount_total": self.discount_total,
            "surcharge_total": self.surcharge_total,
        }


def compute_totals(
    *,
    line_totals: Iterable[Decimal],
    certification_prices: Iterable[Decimal],
    quote_certification_total: Decimal = ZERO,
    adjustments: Iterable[tuple[AdjustmentType, Decimal]] = (),
    is_rush: bool = False,
    rush_rate: Decimal = ZERO,
    delivery_fee: Decimal = ZERO,
    tax_rate: Decimal = ZERO,
    language_multiplier: Decimal = Decimal("1.0"),
) -> QuoteTotals:
    """Fold priced units and ledger entries into quote totals.

    Pure: the result depends only on the arguments, and sums are
    order-independent.

    Args:
        line_totals: line_total of every billable unit (standalone analyses
            plus document groups, never both for the same file)
        certification_prices: certification price of every billable unit
        quote_certification_total: Σ price * quantity of quote-level certifications
        adjustments: (type, calculated_amount) of every active ledger entry;
            amounts are positive, the type carries the direction
        is_rush: Whether the rush fee applies
        rush_rate: Rush fee fraction
        delivery_fee: Delivery option fee
        tax_rate: Tax fraction
        language_multiplier: Reported in the snapshot only
    """
    translation_total = quantize_currency(sum(line_totals, ZERO))
    doc_certification_total = quantize_currency(sum(certification_prices, ZERO))
    quote_certification_total = quantize_currency(quote_certification_total)
    certification_total = doc_certification_total + quote_certification_total
    subtotal = translation_total + certification_total

    discounts = ZERO
    surcharges = ZERO
    for adjustment_type, amount in adjustments:
        adjustment_type = AdjustmentType(adjustment_type)
        if adjustment_type in DISCOUNT_TYPES:
            discounts += amount
        elif adjustment_type == AdjustmentType.SURCHARGE:
            surcharges += amount

    # Subtract from zero so an empty ledger yields 0.00, not -0.00
    discount_total = ZERO - quantize_currency(discounts)
    surcharge_total = quantize_currency(surcharges)

    adjusted = subtotal + discount_total + surcharge_total
    rush_fee = quantize_currency(adjusted * rush_rate) if is_rush else quantize_currency(ZERO)
    delivery_fee = quantize_currency(delivery_fee)

    pre_tax_total = adjusted + rush_fee + delivery_fee
    tax_amount = quantize_currency(pre_tax_total * tax_rate)
    total = pre_tax_total + tax_amount

    return QuoteTotals(
        translation_total=translation_total,
        doc_certification_total=doc_certification_total,
        quote_certification_total=quote_certification_total,
        certification_total=certification_total,
        subtotal=subtotal,
        discount_total=discount_total,
        surcharge_total=surcharge_total,
        rush_fee=rush_fee,
        delivery_fee=delivery_fee,
        pre_tax_total=pre_tax_total,
        tax_rate=tax_rate,
        tax_amount=tax_amount,
        total=total,
        is_rush=is_rush,
        language_multiplier=language_multiplier,
    )
