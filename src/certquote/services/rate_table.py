"""
Rate table: read-only reference data for pricing.

Combines the configured constants (base rate, complexity multipliers, rush
rate, offset limits) with reference rows from the state store (certification
prices, language tiers, delivery fees). Reference rows are cached; call
invalidate() after reloading reference data.
"""

import logging
import threading
from decimal import Decimal

from ..config import Config
from ..errors import NotFoundError, ValidationError
from ..pricing import PricingCalculator
from ..schemas.complexity import ComplexityLevel
from ..state_store import (
    CertificationTypeRecord,
    DeliveryOptionRecord,
    DocumentTypeRecord,
    LanguageRecord,
    QuoteRecord,
    StateStore,
)

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE_MULTIPLIER = Decimal("1.0")


class RateTable:
    """Cached lookups of everything the pricing calculator consumes."""

    def __init__(self, store: StateStore, config: Config):
        self.store = store
        self.config = config
        self.calculator = PricingCalculator(config.pricing)
        self._lock = threading.Lock()
        self._certifications: dict[int, CertificationTypeRecord] = {}
        self._languages: dict[int, LanguageRecord] = {}
        self._delivery_options: dict[int, DeliveryOptionRecord] = {}
        self._document_types: dict[str, DocumentTypeRecord | None] = {}

    def invalidate(self) -> None:
        """Drop all cached reference rows."""
        with self._lock:
            self._certifications.clear()
            self._languages.clear()
            self._delivery_options.clear()
            self._document_types.clear()
        logger.debug("Rate table cache invalidated")

    # -------------------------------------------------------------------------
    # Constants
    # -------------------------------------------------------------------------

    @property
    def base_rate(self) -> Decimal:
        return self.config.pricing.base_rate

    @property
    def rush_rate(self) -> Decimal:
        return self.config.pricing.rush_rate

    @property
    def default_tax_rate(self) -> Decimal:
        return self.config.pricing.default_tax_rate

    def complexity_multiplier(self, complexity: str | ComplexityLevel) -> Decimal:
        """Current multiplier for a complexity level."""
        return self.calculator.complexity_multiplier(complexity)

    def offset_limit(self, role: str) -> Decimal | None:
        """Offset limit for a staff role (None = unlimited)."""
        return self.config.offset_limits.limit_for(role)

    # -------------------------------------------------------------------------
    # Reference rows
    # -------------------------------------------------------------------------

    def certification(self, cert_id: int) -> CertificationTypeRecord:
        """Get a certification type or raise NotFoundError."""
        with self._lock:
            cached = self._certifications.get(cert_id)
        if cached is not None:
            return cached
        record = self.store.get_certification_type(cert_id)
        if record is None:
            raise NotFoundError("Certification type", cert_id)
        with self._lock:
            self._certifications[cert_id] = record
        return record

    def certification_price(self, cert_id: int | None) -> Decimal:
        """Price of a certification type; no certification costs nothing."""
        if cert_id is None:
            return Decimal("0.00")
        certification = self.certification(cert_id)
        if not certification.is_active:
            raise ValidationError(f"Certification type {certification.code} is not active")
        return certification.price

    def default_certification(self) -> CertificationTypeRecord | None:
        """The certification new groups start with."""
        return self.store.get_default_certification_type()

    def language(self, language_id: int) -> LanguageRecord:
        """Get a language or raise NotFoundError."""
        with self._lock:
            cached = self._languages.get(language_id)
        if cached is not None:
            return cached
        record = self.store.get_language(language_id)
        if record is None:
            raise NotFoundError("Language", language_id)
        with self._lock:
            self._languages[language_id] = record
        return record

    def resolve_language(self, value: str | int) -> LanguageRecord:
        """Look a language up by ID or code."""
        text = str(value).strip()
        if text.isdigit():
            return self.language(int(text))
        record = self.store.get_language_by_code(text)
        if record is None:
            raise NotFoundError("Language", text)
        return record

    def language_multiplier(self, quote: QuoteRecord) -> Decimal:
        """Quote override, else the source language's tier multiplier, else 1.0."""
        if quote.language_multiplier_override is not None:
            return quote.language_multiplier_override
        if quote.source_language_id is not None:
            return self.language(quote.source_language_id).multiplier
        return DEFAULT_LANGUAGE_MULTIPLIER

    def delivery_option(self, option_id: int) -> DeliveryOptionRecord:
        """Get a delivery option or raise NotFoundError."""
        with self._lock:
            cached = self._delivery_options.get(option_id)
        if cached is not None:
            return cached
        record = self.store.get_delivery_option(option_id)
        if record is None:
            raise NotFoundError("Delivery option", option_id)
        with self._lock:
            self._delivery_options[option_id] = record
        return record

    def resolve_delivery_option(self, value: str | int) -> DeliveryOptionRecord:
        """Look a delivery option up by ID or code."""
        text = str(value).strip()
        if text.isdigit():
            return self.delivery_option(int(text))
        record = self.store.get_delivery_option_by_code(text)
        if record is None:
            raise NotFoundError("Delivery option", text)
        return record

    def delivery_fee(self, option_id: int | None) -> Decimal:
        if option_id is None:
            return Decimal("0.00")
        return self.delivery_option(option_id).fee

    def document_type(self, code: str | None) -> DocumentTypeRecord | None:
        """Document type by code, or None if unknown."""
        if not code:
            return None
        with self._lock:
            if code in self._document_types:
                return self._document_types[code]
        record = self.store.get_document_type_by_code(code)
        with self._lock:
            self._document_types[code] = record
        return record

    def default_certification_for(self, document_type: str | None) -> int | None:
        """Default certification type ID tied to a document type."""
        record = self.document_type(document_type)
        return record.default_certification_type_id if record else None
