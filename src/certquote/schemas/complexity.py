"""Translation complexity levels."""

from enum import Enum

from ..errors import ValidationError


class ComplexityLevel(str, Enum):
    """Translation difficulty levels.

    The multiplier for each level lives in PricingConfig; it is resolved at
    the time of use, never stored on the enum.
    """

    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"

    @classmethod
    def parse(cls, value: str) -> "ComplexityLevel":
        """Parse a complexity label, accepting the low/high aliases."""
        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().lower()
        aliases = {"low": "easy", "high": "hard"}
        normalized = aliases.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError as e:
            raise ValidationError(
                f"Unknown complexity {value!r}: expected easy, medium or hard"
            ) from e
