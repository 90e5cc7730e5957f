"""
Pricing calculator.

Pure billable-page and line-total computation for a file, a page,
or a document group's aggregate word count.
"""

from .calculator import (
    ComplexityLevel,
    PricingCalculator,
    PricingResult,
    calculate,
    calculate_billable_pages,
    calculate_line_total,
    effective_page_rate,
)

__all__ = [
    "ComplexityLevel",
    "PricingCalculator",
    "PricingResult",
    "calculate",
    "calculate_billable_pages",
    "calculate_line_total",
    "effective_page_rate",
]
