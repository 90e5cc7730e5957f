"""
Configuration management (SSOT).

This module defines ALL configuration for the certquote pricing core.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- Money and multipliers are Decimal, never float
- The minimum-billing floor is an explicit setting, not a rounding side effect
- Complexity multipliers are always >= 1.0
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


def _default_complexity_multipliers() -> dict[str, Decimal]:
    return {
        "easy": Decimal("1.00"),
        "medium": Decimal("1.15"),
        "hard": Decimal("1.25"),
    }


@dataclass
class PricingConfig:
    """Rate table constants used by the pricing calculator.

    SSOT for the billable page formula:
    - words_per_page: words in one billable page
    - min_billable_pages: floor applied to every billable unit
    - rate_rounding_increment: if set, the per-page rate (base_rate x language
      multiplier) is rounded UP to this increment (e.g. 2.50)
    """

    words_per_page: int = 225
    base_rate: Decimal = Decimal("65.00")
    min_billable_pages: Decimal = Decimal("1.0")
    complexity_multipliers: dict[str, Decimal] = field(
        default_factory=_default_complexity_multipliers
    )
    # Rush fee as a fraction of the adjusted subtotal
    rush_rate: Decimal = Decimal("0.30")
    # Tax rate applied to new quotes
    default_tax_rate: Decimal = Decimal("0.05")
    rate_rounding_increment: Decimal | None = None


@dataclass
class OffsetLimitsConfig:
    """Per-role limits for balance offsets (offset_discount / offset_credit).

    A limit of None means unlimited. Roles not listed fall back to the
    reviewer limit.
    """

    limits: dict[str, Decimal | None] = field(
        default_factory=lambda: {
            "reviewer": Decimal("10.00"),
            "senior_reviewer": Decimal("25.00"),
            "super_admin": None,
        }
    )
    fallback_role: str = "reviewer"

    def limit_for(self, role: str) -> Decimal | None:
        """Get the offset limit for a staff role."""
        if role in self.limits:
            return self.limits[role]
        return self.limits.get(self.fallback_role, Decimal("10.00"))


@dataclass
class AnalysisServiceConfig:
    """OCR/AI analysis collaborator configuration."""

    base_url: str = "http://localhost:8500"
    token: str = ""
    timeout_seconds: int = 30
    max_retries: int = 3


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    pricing: PricingConfig = field(default_factory=PricingConfig)
    offset_limits: OffsetLimitsConfig = field(default_factory=OffsetLimitsConfig)
    analysis_service: AnalysisServiceConfig = field(default_factory=AnalysisServiceConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/certquote.db"))

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []
        pricing = self.pricing

        if pricing.words_per_page <= 0:
            errors.append("pricing.words_per_page must be positive")
        if pricing.base_rate <= 0:
            errors.append("pricing.base_rate must be positive")
        if pricing.min_billable_pages < 0:
            errors.append("pricing.min_billable_pages must not be negative")
        if pricing.rush_rate < 0:
            errors.append("pricing.rush_rate must not be negative")
        if not (Decimal("0") <= pricing.default_tax_rate < Decimal("1")):
            errors.append("pricing.default_tax_rate must be in [0, 1)")
        if pricing.rate_rounding_increment is not None and pricing.rate_rounding_increment <= 0:
            errors.append("pricing.rate_rounding_increment must be positive when set")

        for level in ("easy", "medium", "hard"):
            if level not in pricing.complexity_multipliers:
                errors.append(f"pricing.complexity_multipliers.{level} is required")
        for level, multiplier in pricing.complexity_multipliers.items():
            if multiplier < 1:
                errors.append(f"pricing.complexity_multipliers.{level} must be >= 1.0")

        for role, limit in self.offset_limits.limits.items():
            if limit is not None and limit < 0:
                errors.append(f"offset_limits.{role} must not be negative")

        if not self.analysis_service.base_url:
            errors.append("analysis_service.base_url is required")

        return errors


def _decimal(value, key: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ConfigValidationError(f"{key}: not a decimal value: {value!r}") from e


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - CERTQUOTE_DB_PATH
    - CERTQUOTE_BASE_RATE
    - CERTQUOTE_TAX_RATE
    - ANALYSIS_SERVICE_URL
    - ANALYSIS_SERVICE_TOKEN
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    # Pricing config
    pricing_data = data.get("pricing", {})
    multipliers = _default_complexity_multipliers()
    for level, value in (pricing_data.get("complexity_multipliers") or {}).items():
        multipliers[level] = _decimal(value, f"pricing.complexity_multipliers.{level}")

    increment = pricing_data.get("rate_rounding_increment")
    pricing = PricingConfig(
        words_per_page=int(pricing_data.get("words_per_page", 225)),
        base_rate=_decimal(
            os.environ.get("CERTQUOTE_BASE_RATE", pricing_data.get("base_rate", "65.00")),
            "pricing.base_rate",
        ),
        min_billable_pages=_decimal(
            pricing_data.get("min_billable_pages", "1.0"), "pricing.min_billable_pages"
        ),
        complexity_multipliers=multipliers,
        rush_rate=_decimal(pricing_data.get("rush_rate", "0.30"), "pricing.rush_rate"),
        default_tax_rate=_decimal(
            os.environ.get("CERTQUOTE_TAX_RATE", pricing_data.get("default_tax_rate", "0.05")),
            "pricing.default_tax_rate",
        ),
        rate_rounding_increment=(
            _decimal(increment, "pricing.rate_rounding_increment")
            if increment is not None
            else None
        ),
    )

    # Offset limits
    limits_data = data.get("offset_limits", {})
    offset_limits = OffsetLimitsConfig()
    for role, value in limits_data.items():
        offset_limits.limits[role] = (
            None if value is None else _decimal(value, f"offset_limits.{role}")
        )

    # Analysis service
    service_data = data.get("analysis_service", {})
    analysis_service = AnalysisServiceConfig(
        base_url=os.environ.get(
            "ANALYSIS_SERVICE_URL", service_data.get("base_url", "http://localhost:8500")
        ),
        token=os.environ.get("ANALYSIS_SERVICE_TOKEN", service_data.get("token", "")),
        timeout_seconds=int(service_data.get("timeout_seconds", 30)),
        max_retries=int(service_data.get("max_retries", 3)),
    )

    # State DB
    state_db = os.environ.get(
        "CERTQUOTE_DB_PATH", data.get("state_db_path", "data/certquote.db")
    )

    return Config(
        pricing=pricing,
        offset_limits=offset_limits,
        analysis_service=analysis_service,
        state_db_path=Path(state_db),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# certquote pricing core configuration

pricing:
  words_per_page: 225                      # Words in one billable page
  base_rate: "65.00"                       # Currency per billable page
  min_billable_pages: "1.0"                # Floor for every billable unit
  complexity_multipliers:
    easy: "1.00"
    medium: "1.15"
    hard: "1.25"
  rush_rate: "0.30"                        # Rush fee as fraction of adjusted subtotal
  default_tax_rate: "0.05"                 # Tax rate for new quotes
  rate_rounding_increment: null            # e.g. "2.50" to round per-page rate up

# Balance offset limits per staff role (null = unlimited)
offset_limits:
  reviewer: "10.00"
  senior_reviewer: "25.00"
  super_admin: null

# OCR/AI analysis collaborator
analysis_service:
  base_url: "http://localhost:8500"
  token: "YOUR_ANALYSIS_TOKEN"
  timeout_seconds: 30
  max_retries: 3

# State database path
state_db_path: "data/certquote.db"
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
