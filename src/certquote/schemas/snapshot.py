"""
Staff-built pricing snapshots.

A PricingSnapshot is what staff submit when they price a quote by hand
(finalize) or build one from scratch (fast quote): per-document lines, an
optional discount/surcharge, rush/delivery choices and the total they expect.
Parsing validates shapes only; pricing rules are checked by the quote builder.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from ..errors import ValidationError
from .amounts import to_decimal, validate_amount, validate_rate, validate_word_count
from .complexity import ComplexityLevel
from .quote_totals import AdjustmentType, ValueType


def _opt_decimal(data: dict[str, Any], key: str) -> Decimal | None:
    value = data.get(key)
    if value is None or value == "":
        return None
    return to_decimal(value, field_name=key)


def _opt_int(data: dict[str, Any], key: str) -> int | None:
    value = data.get(key)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{key} must be an integer, got {value!r}") from e


@dataclass(frozen=True)
class SnapshotLine:
    """One priced document in a snapshot."""

    word_count: int
    complexity: str = ComplexityLevel.EASY.value
    analysis_id: int | None = None
    file_id: int | None = None
    label: str | None = None
    detected_language: str | None = None
    document_type: str | None = None
    page_count: int = 1
    complexity_multiplier: Decimal | None = None
    billable_pages: Decimal | None = None
    base_rate: Decimal | None = None
    language_multiplier: Decimal | None = None
    line_total: Decimal | None = None
    certification_type_id: int | None = None
    certification_price: Decimal | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SnapshotLine":
        if not isinstance(data, dict):
            raise ValidationError("Each document line must be an object")
        return cls(
            word_count=validate_word_count(data.get("word_count", 0)),
            complexity=ComplexityLevel.parse(data.get("complexity") or "easy").value,
            analysis_id=_opt_int(data, "analysis_id"),
            file_id=_opt_int(data, "file_id"),
            label=data.get("label"),
            detected_language=data.get("detected_language"),
            document_type=data.get("document_type"),
            page_count=validate_word_count(data.get("page_count", 1), field_name="page_count"),
            complexity_multiplier=_opt_decimal(data, "complexity_multiplier"),
            billable_pages=_opt_decimal(data, "billable_pages"),
            base_rate=_opt_decimal(data, "base_rate"),
            language_multiplier=_opt_decimal(data, "language_multiplier"),
            line_total=_opt_decimal(data, "line_total"),
            certification_type_id=_opt_int(data, "certification_type_id"),
            certification_price=_opt_decimal(data, "certification_price"),
        )


@dataclass(frozen=True)
class AdjustmentInput:
    """A discount or surcharge as entered by staff."""

    adjustment_type: AdjustmentType
    value_type: ValueType
    value: Decimal
    reason: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], adjustment_type: AdjustmentType) -> "AdjustmentInput":
        if not isinstance(data, dict):
            raise ValidationError(f"{adjustment_type.value} must be an object")
        try:
            value_type = ValueType(data.get("value_type", "fixed"))
        except ValueError as e:
            raise ValidationError(
                f"{adjustment_type.value}.value_type must be fixed or percentage"
            ) from e
        return cls(
            adjustment_type=adjustment_type,
            value_type=value_type,
            value=validate_amount(data.get("value"), field_name=f"{adjustment_type.value}.value"),
            reason=data.get("reason"),
        )


@dataclass(frozen=True)
class PricingSnapshot:
    """Complete staff-approved pricing for a quote."""

    lines: list[SnapshotLine]
    is_rush: bool = False
    delivery_option_id: int | None = None
    discount: AdjustmentInput | None = None
    surcharge: AdjustmentInput | None = None
    tax_rate: Decimal | None = None
    claimed_total: Decimal | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], lines_key: str = "lines") -> "PricingSnapshot":
        """Parse a snapshot dictionary.

        Raises:
            ValidationError: If the snapshot is malformed
        """
        if not isinstance(data, dict):
            raise ValidationError("Pricing snapshot must be an object")
        raw_lines = data.get(lines_key) or []
        if not raw_lines:
            raise ValidationError("At least one document is required")

        discount = data.get("discount")
        surcharge = data.get("surcharge")
        tax_rate = data.get("tax_rate")
        return cls(
            lines=[SnapshotLine.from_dict(line) for line in raw_lines],
            is_rush=bool(data.get("is_rush", False)),
            delivery_option_id=_opt_int(data, "delivery_option_id"),
            discount=AdjustmentInput.from_dict(discount, AdjustmentType.DISCOUNT) if discount else None,
            surcharge=AdjustmentInput.from_dict(surcharge, AdjustmentType.SURCHARGE) if surcharge else None,
            tax_rate=validate_rate(tax_rate) if tax_rate is not None else None,
            claimed_total=_opt_decimal(data, "total"),
        )


@dataclass(frozen=True)
class CustomerInput:
    """Customer details for a fast quote."""

    full_name: str
    email: str | None = None
    phone: str | None = None
    existing_customer_id: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CustomerInput":
        if not isinstance(data, dict) or not data.get("full_name"):
            raise ValidationError("Missing required field: customer.full_name")
        existing = _opt_int(data, "existing_customer_id")
        if existing is None and not data.get("email") and not data.get("phone"):
            raise ValidationError("Customer must have email or phone")
        return cls(
            full_name=str(data["full_name"]).strip(),
            email=(data.get("email") or None),
            phone=(data.get("phone") or None),
            existing_customer_id=existing,
        )


@dataclass(frozen=True)
class FastQuoteRequest:
    """Everything needed to create a quote without AI analysis."""

    customer: CustomerInput
    source_language: str
    target_language: str
    pricing: PricingSnapshot
    notes: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FastQuoteRequest":
        """Parse {customer, quote, documents, pricing}.

        Raises:
            ValidationError: If required fields are missing
        """
        quote = data.get("quote") or {}
        if not quote.get("source_language"):
            raise ValidationError("Missing required field: quote.source_language")
        if not quote.get("target_language"):
            raise ValidationError("Missing required field: quote.target_language")

        pricing_data = dict(data.get("pricing") or {})
        pricing_data["documents"] = data.get("documents") or []
        pricing_data.setdefault("is_rush", quote.get("is_rush", False))
        pricing_data.setdefault("delivery_option_id", quote.get("delivery_option_id"))

        return cls(
            customer=CustomerInput.from_dict(data.get("customer") or {}),
            source_language=str(quote["source_language"]),
            target_language=str(quote["target_language"]),
            pricing=PricingSnapshot.from_dict(pricing_data, lines_key="documents"),
            notes=quote.get("notes"),
        )
