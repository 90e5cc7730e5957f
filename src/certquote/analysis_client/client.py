"""
OCR/AI analysis service client implementation.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)


class AnalysisError(Exception):
    """Base exception for analysis client errors."""
    pass


class AnalysisAPIError(AnalysisError):
    """API returned an error response."""
    def __init__(self, status_code: int, message: str, response_body: Optional[str] = None):
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        super().__init__(f"Analysis API error {status_code}: {message}")


class AnalysisConnectionError(AnalysisError):
    """Failed to connect to the analysis service."""
    pass


@dataclass
class PageAnalysis:
    """Word count of one page."""
    page_number: int
    word_count: int


@dataclass
class FileAnalysis:
    """Analysis of one uploaded file, as reported by the service.

    Values are an unvalidated starting point; staff may override any of them.
    """
    file_ref: str
    word_count: int
    page_count: int
    detected_language: Optional[str] = None
    detected_document_type: Optional[str] = None
    assessed_complexity: Optional[str] = None
    pages: list[PageAnalysis] = field(default_factory=list)

    @classmethod
    def from_api_response(cls, data: dict, file_ref: str) -> "FileAnalysis":
        """Create from analysis API response."""
        pages = [
            PageAnalysis(page_number=int(p.get("page_number", i + 1)), word_count=int(p.get("word_count") or 0))
            for i, p in enumerate(data.get("pages") or [])
        ]
        return cls(
            file_ref=file_ref,
            word_count=int(data.get("word_count") or 0),
            page_count=int(data.get("page_count") or len(pages) or 1),
            detected_language=data.get("detected_language"),
            detected_document_type=data.get("detected_document_type"),
            assessed_complexity=data.get("assessed_complexity"),
            pages=pages,
        )

    def to_dict(self) -> dict[str, Any]:
        """Input shape for AnalysisIntakeService.ingest."""
        return {
            "word_count": self.word_count,
            "page_count": self.page_count,
            "detected_language": self.detected_language,
            "detected_document_type": self.detected_document_type,
            "assessed_complexity": self.assessed_complexity,
            "pages": [{"page_number": p.page_number, "word_count": p.word_count} for p in self.pages],
        }


class AnalysisClient:
    """
    Client for the OCR/AI document analysis service.

    Features:
    - Fetch the analysis of an uploaded file
    - Submit a file for (re)analysis
    - Automatic retry with backoff
    """

    DEFAULT_TIMEOUT = 30

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
    ):
        """
        Initialize analysis client.

        Args:
            base_url: Analysis service URL (e.g., "http://localhost:8500")
            token: Bearer token for authentication
            timeout: Request timeout in seconds
            max_retries: Maximum retry attempts for transient failures
            backoff_factor: Backoff factor for retries
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

        # Configure session with retry
        self.session = requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        })

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            # POST starts a new analysis run and is not safe to repeat
            allowed_methods=["GET"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json_data: Optional[dict] = None,
    ) -> requests.Response:
        """Make an API request with error handling."""
        url = f"{self.base_url}{endpoint}"

        try:
            response = self.session.request(
                method=method,
                url=url,
                params=params,
                json=json_data,
                timeout=self.timeout,
            )
        except requests.exceptions.ConnectionError as e:
            raise AnalysisConnectionError(f"Failed to connect to analysis service at {self.base_url}: {e}")
        except requests.exceptions.Timeout as e:
            raise AnalysisConnectionError(f"Request to analysis service timed out: {e}")
        except requests.exceptions.RequestException as e:
            raise AnalysisError(f"Request failed: {e}")

        if not response.ok:
            raise AnalysisAPIError(
                status_code=response.status_code,
                message=response.reason,
                response_body=response.text,
            )

        return response

    def test_connection(self) -> bool:
        """Test connection to the analysis service."""
        try:
            self._request("GET", "/api/health")
            return True
        except AnalysisError:
            return False

    def get_analysis(self, file_ref: str) -> FileAnalysis:
        """
        Get the analysis of an uploaded file.

        Args:
            file_ref: Storage reference of the file

        Returns:
            FileAnalysis
        """
        response = self._request("GET", f"/api/files/{file_ref}/analysis")
        data = response.json()
        logger.debug(f"Fetched analysis for {file_ref}: {data.get('word_count')} words")
        return FileAnalysis.from_api_response(data, file_ref)

    def request_analysis(self, file_ref: str, filename: Optional[str] = None) -> FileAnalysis:
        """
        Submit a file for analysis and return the result.

        Args:
            file_ref: Storage reference of the file
            filename: Original file name, used as a classification hint

        Returns:
            FileAnalysis
        """
        payload: dict[str, Any] = {"file_ref": file_ref}
        if filename:
            payload["filename"] = filename
        response = self._request("POST", "/api/analyze", json_data=payload)
        logger.info(f"Analysis requested for {file_ref}")
        return FileAnalysis.from_api_response(response.json(), file_ref)
