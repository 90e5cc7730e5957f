"""
Certified translation quoting → Staff review → Authoritative quote totals

A deterministic, testable pricing core that turns per-file document analysis
into priced quotes, lets staff regroup pages and correct AI-derived values,
and keeps every priced entity and the quote total consistent, with an audit
trail of each correction.
"""

__version__ = "0.1.0"
