"""
OCR/AI analysis service client.

Provides:
- Fetch a file's analysis (word/page counts, language, document type, complexity)
- Submit a file for analysis
- Retry/backoff for transient network failures
"""

from .client import (
    AnalysisAPIError,
    AnalysisClient,
    AnalysisConnectionError,
    AnalysisError,
    FileAnalysis,
    PageAnalysis,
)

__all__ = [
    "AnalysisClient",
    "AnalysisError",
    "AnalysisAPIError",
    "AnalysisConnectionError",
    "FileAnalysis",
    "PageAnalysis",
]
