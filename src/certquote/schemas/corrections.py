"""
Correction payloads and field dispatch (SSOT).

Staff corrections arrive keyed by field_name. The set of known fields is
CLOSED: every CorrectionField member maps to exactly one FieldSpec (family,
target column, value parser). parse_correction() turns a raw payload into a
typed variant; names outside the enum become UnknownFieldCorrection, which
is recorded for audit but never touches pricing.

Families:
- ANALYSIS_NUMERIC: AnalysisResult numbers, always followed by a recompute
- ANALYSIS_CATEGORICAL: AnalysisResult labels/references
- GROUP: DocumentGroup fields, routed through the group manager
- PAGE: page word count, recomputes only the owning group
- QUOTE: quote-level fields (tax, ledger, delivery, addresses, payment method)
- CUSTOMER: linked customer contact fields, audit only
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Union

from ..errors import ValidationError
from .amounts import (
    PAGE_PRECISION,
    is_page_multiple,
    to_decimal,
    validate_amount,
    validate_multiplier,
    validate_rate,
    validate_word_count,
)
from .complexity import ComplexityLevel


class CorrectionField(str, Enum):
    """Known correctable fields."""

    # Analysis numeric
    WORD_COUNT = "word_count"
    PAGE_COUNT = "page_count"
    BILLABLE_PAGES = "billable_pages"
    LINE_TOTAL = "line_total"
    COMPLEXITY_MULTIPLIER = "complexity_multiplier"
    CERTIFICATION_PRICE = "certification_price"
    # Analysis categorical
    DETECTED_LANGUAGE = "detected_language"
    DETECTED_DOCUMENT_TYPE = "detected_document_type"
    ASSESSED_COMPLEXITY = "assessed_complexity"
    CERTIFICATION_TYPE_ID = "certification_type_id"
    # Document group
    GROUP_COMPLEXITY = "group_complexity"
    GROUP_DOCUMENT_TYPE = "group_document_type"
    GROUP_LABEL = "group_label"
    GROUP_CERTIFICATION_TYPE_ID = "group_certification_type_id"
    # Page
    PAGE_WORD_COUNT = "page_word_count"
    # Quote
    TAX_RATE = "tax_rate"
    DISCOUNT = "discount"
    SURCHARGE = "surcharge"
    DELIVERY_OPTION = "delivery_option"
    SHIPPING_ADDRESS = "shipping_address"
    BILLING_ADDRESS = "billing_address"
    PAYMENT_METHOD = "payment_method"
    # Customer
    CUSTOMER_EMAIL = "customer_email"
    CUSTOMER_PHONE = "customer_phone"
    CUSTOMER_FULL_NAME = "customer_full_name"


class FieldFamily(str, Enum):
    ANALYSIS_NUMERIC = "analysis_numeric"
    ANALYSIS_CATEGORICAL = "analysis_categorical"
    GROUP = "group"
    PAGE = "page"
    QUOTE = "quote"
    CUSTOMER = "customer"


# =============================================================================
# Value parsers
# =============================================================================


def _parse_count(value: Any) -> int:
    return validate_word_count(value, field_name="corrected_value")


def _parse_pages(value: Any) -> Decimal:
    pages = to_decimal(value, field_name="corrected_value")
    if pages < 0:
        raise ValidationError(f"billable_pages must not be negative, got {pages}")
    if not is_page_multiple(pages):
        raise ValidationError(f"billable_pages must be a multiple of 0.1, got {pages}")
    return pages.quantize(PAGE_PRECISION)


def _parse_money(value: Any) -> Decimal:
    return validate_amount(value, field_name="corrected_value", allow_zero=True)


def _parse_multiplier(value: Any) -> Decimal:
    return validate_multiplier(value, field_name="corrected_value")


def _parse_rate(value: Any) -> Decimal:
    return validate_rate(value, field_name="corrected_value")


def _parse_text(value: Any) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        raise ValidationError("corrected_value must not be empty")
    return text


def _parse_optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_complexity(value: Any) -> str:
    return ComplexityLevel.parse(value).value


def parse_reference_id(value: Any, field_name: str = "corrected_value") -> int | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        return int(str(value).strip())
    except ValueError as e:
        raise ValidationError(f"{field_name} must be an id, got {value!r}") from e


def _parse_address(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    try:
        parsed = json.loads(value)
    except (TypeError, json.JSONDecodeError) as e:
        raise ValidationError(f"Address must be a JSON object, got {value!r}") from e
    if not isinstance(parsed, dict):
        raise ValidationError(f"Address must be a JSON object, got {value!r}")
    return parsed


@dataclass(frozen=True)
class FieldSpec:
    """Dispatch entry for one known field."""

    family: FieldFamily
    column: str | None
    parser: Callable[[Any], Any]
    recompute: bool


_FIELD_SPECS: dict[CorrectionField, FieldSpec] = {
    CorrectionField.WORD_COUNT: FieldSpec(FieldFamily.ANALYSIS_NUMERIC, "word_count", _parse_count, True),
    CorrectionField.PAGE_COUNT: FieldSpec(FieldFamily.ANALYSIS_NUMERIC, "page_count", _parse_count, True),
    CorrectionField.BILLABLE_PAGES: FieldSpec(FieldFamily.ANALYSIS_NUMERIC, "billable_pages", _parse_pages, True),
    CorrectionField.LINE_TOTAL: FieldSpec(FieldFamily.ANALYSIS_NUMERIC, "line_total", _parse_money, True),
    CorrectionField.COMPLEXITY_MULTIPLIER: FieldSpec(
        FieldFamily.ANALYSIS_NUMERIC, "complexity_multiplier", _parse_multiplier, True
    ),
    CorrectionField.CERTIFICATION_PRICE: FieldSpec(
        FieldFamily.ANALYSIS_NUMERIC, "certification_price", _parse_money, True
    ),
    CorrectionField.DETECTED_LANGUAGE: FieldSpec(
        FieldFamily.ANALYSIS_CATEGORICAL, "detected_language", _parse_text, False
    ),
    CorrectionField.DETECTED_DOCUMENT_TYPE: FieldSpec(
        FieldFamily.ANALYSIS_CATEGORICAL, "detected_document_type", _parse_text, False
    ),
    CorrectionField.ASSESSED_COMPLEXITY: FieldSpec(
        FieldFamily.ANALYSIS_CATEGORICAL, "assessed_complexity", _parse_complexity, True
    ),
    CorrectionField.CERTIFICATION_TYPE_ID: FieldSpec(
        FieldFamily.ANALYSIS_CATEGORICAL, "certification_type_id", parse_reference_id, True
    ),
    CorrectionField.GROUP_COMPLEXITY: FieldSpec(FieldFamily.GROUP, "complexity", _parse_complexity, True),
    CorrectionField.GROUP_DOCUMENT_TYPE: FieldSpec(FieldFamily.GROUP, "document_type", _parse_text, False),
    CorrectionField.GROUP_LABEL: FieldSpec(FieldFamily.GROUP, "group_label", _parse_text, False),
    CorrectionField.GROUP_CERTIFICATION_TYPE_ID: FieldSpec(
        FieldFamily.GROUP, "certification_type_id", parse_reference_id, True
    ),
    CorrectionField.PAGE_WORD_COUNT: FieldSpec(FieldFamily.PAGE, "word_count", _parse_count, True),
    CorrectionField.TAX_RATE: FieldSpec(FieldFamily.QUOTE, "tax_rate", _parse_rate, True),
    CorrectionField.DISCOUNT: FieldSpec(FieldFamily.QUOTE, None, _parse_money, True),
    CorrectionField.SURCHARGE: FieldSpec(FieldFamily.QUOTE, None, _parse_money, True),
    CorrectionField.DELIVERY_OPTION: FieldSpec(
        FieldFamily.QUOTE, "delivery_option_id", _parse_optional_text, True
    ),
    CorrectionField.SHIPPING_ADDRESS: FieldSpec(FieldFamily.QUOTE, "shipping_address", _parse_address, False),
    CorrectionField.BILLING_ADDRESS: FieldSpec(FieldFamily.QUOTE, "billing_address", _parse_address, False),
    CorrectionField.PAYMENT_METHOD: FieldSpec(FieldFamily.QUOTE, "payment_method", _parse_text, False),
    CorrectionField.CUSTOMER_EMAIL: FieldSpec(FieldFamily.CUSTOMER, "email", _parse_text, False),
    CorrectionField.CUSTOMER_PHONE: FieldSpec(FieldFamily.CUSTOMER, "phone", _parse_text, False),
    CorrectionField.CUSTOMER_FULL_NAME: FieldSpec(FieldFamily.CUSTOMER, "full_name", _parse_text, False),
}

_unmapped = set(CorrectionField) - set(_FIELD_SPECS)
if _unmapped:
    raise RuntimeError(f"Correction fields without a dispatch entry: {sorted(f.value for f in _unmapped)}")


def field_spec(field: CorrectionField) -> FieldSpec:
    return _FIELD_SPECS[field]


# =============================================================================
# Typed variants
# =============================================================================


@dataclass(frozen=True)
class AnalysisNumericCorrection:
    field: CorrectionField
    column: str
    value: Decimal | int


@dataclass(frozen=True)
class AnalysisCategoricalCorrection:
    field: CorrectionField
    column: str
    value: str | int | None


@dataclass(frozen=True)
class GroupFieldCorrection:
    field: CorrectionField
    column: str
    value: str | int | None


@dataclass(frozen=True)
class PageWordCountCorrection:
    field: CorrectionField
    value: int


@dataclass(frozen=True)
class QuoteFieldCorrection:
    field: CorrectionField
    column: str | None
    value: Any


@dataclass(frozen=True)
class CustomerFieldCorrection:
    field: CorrectionField
    column: str
    value: str


@dataclass(frozen=True)
class UnknownFieldCorrection:
    field_name: str
    value: Any


CorrectionVariant = Union[
    AnalysisNumericCorrection,
    AnalysisCategoricalCorrection,
    GroupFieldCorrection,
    PageWordCountCorrection,
    QuoteFieldCorrection,
    CustomerFieldCorrection,
    UnknownFieldCorrection,
]


def parse_correction(field_name: str, corrected_value: Any) -> CorrectionVariant:
    """Turn a raw field name and value into a typed correction.

    Raises:
        ValidationError: If a known field's value is malformed
    """
    if not field_name or not str(field_name).strip():
        raise ValidationError("field_name is required")

    try:
        field = CorrectionField(str(field_name).strip())
    except ValueError:
        return UnknownFieldCorrection(field_name=str(field_name).strip(), value=corrected_value)

    spec = _FIELD_SPECS[field]
    value = spec.parser(corrected_value)

    if spec.family == FieldFamily.ANALYSIS_NUMERIC:
        return AnalysisNumericCorrection(field=field, column=spec.column, value=value)
    if spec.family == FieldFamily.ANALYSIS_CATEGORICAL:
        return AnalysisCategoricalCorrection(field=field, column=spec.column, value=value)
    if spec.family == FieldFamily.GROUP:
        return GroupFieldCorrection(field=field, column=spec.column, value=value)
    if spec.family == FieldFamily.PAGE:
        return PageWordCountCorrection(field=field, value=value)
    if spec.family == FieldFamily.QUOTE:
        return QuoteFieldCorrection(field=field, column=spec.column, value=value)
    return CustomerFieldCorrection(field=field, column=spec.column, value=value)


# =============================================================================
# Request payload
# =============================================================================


def _optional_id(data: dict[str, Any], key: str) -> int | None:
    value = data.get(key)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"target_ref.{key} must be an integer id, got {value!r}") from e


@dataclass(frozen=True)
class TargetRef:
    """Which entity a correction applies to."""

    quote_id: int
    analysis_id: int | None = None
    file_id: int | None = None
    group_id: int | None = None
    page_id: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TargetRef":
        if not isinstance(data, dict):
            raise ValidationError("target_ref must be an object")
        quote_id = _optional_id(data, "quote_id")
        if quote_id is None:
            raise ValidationError("target_ref.quote_id is required")
        return cls(
            quote_id=quote_id,
            analysis_id=_optional_id(data, "analysis_id"),
            file_id=_optional_id(data, "file_id"),
            group_id=_optional_id(data, "group_id"),
            page_id=_optional_id(data, "page_id"),
        )


@dataclass(frozen=True)
class CorrectionPayload:
    """A staff correction request."""

    target_ref: TargetRef
    field_name: str
    corrected_value: Any
    original_value: Any = None
    reason: str | None = None
    knowledge_base_flag: bool = False
    knowledge_base_comment: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CorrectionPayload":
        """Build from an API-style dictionary.

        Raises:
            ValidationError: If required keys are missing
        """
        if not isinstance(data, dict):
            raise ValidationError("Correction payload must be an object")
        if "target_ref" not in data:
            raise ValidationError("Missing required field: target_ref")
        if not data.get("field_name"):
            raise ValidationError("Missing required field: field_name")
        if "corrected_value" not in data:
            raise ValidationError("Missing required field: corrected_value")

        return cls(
            target_ref=TargetRef.from_dict(data["target_ref"]),
            field_name=str(data["field_name"]).strip(),
            corrected_value=data["corrected_value"],
            original_value=data.get("original_value"),
            reason=data.get("reason"),
            knowledge_base_flag=bool(data.get("knowledge_base_flag", False)),
            knowledge_base_comment=data.get("knowledge_base_comment"),
        )


def stringify_value(value: Any) -> str | None:
    """Render a field value the way the audit log stores it."""
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)
