"""
Tests for the analysis service client.

These tests use responses library to mock HTTP requests,
validating client behavior without making real API calls.
"""

import pytest
import requests
import responses

from certquote.analysis_client import (
    AnalysisAPIError,
    AnalysisClient,
    AnalysisConnectionError,
    AnalysisError,
    FileAnalysis,
)


class TestAnalysisClient:
    """Test OCR/AI analysis service client."""

    BASE_URL = "http://analysis.test:8500"
    TOKEN = "test-token-12345"

    def _client(self) -> AnalysisClient:
        return AnalysisClient(self.BASE_URL, self.TOKEN, max_retries=0)

    @responses.activate
    def test_test_connection_success(self):
        """Test connection check succeeds with valid response."""
        responses.add(responses.GET, f"{self.BASE_URL}/api/health", json={"status": "ok"}, status=200)
        assert self._client().test_connection() is True

    @responses.activate
    def test_test_connection_failure(self):
        """Test connection check fails with server error."""
        responses.add(responses.GET, f"{self.BASE_URL}/api/health", json={"error": "down"}, status=500)
        assert self._client().test_connection() is False

    @responses.activate
    def test_get_analysis(self):
        """Test fetching a file analysis with page breakdown."""
        responses.add(
            responses.GET,
            f"{self.BASE_URL}/api/files/upload-1.pdf/analysis",
            json={
                "word_count": 230,
                "page_count": 2,
                "detected_language": "es",
                "detected_document_type": "birth_certificate",
                "assessed_complexity": "medium",
                "pages": [
                    {"page_number": 1, "word_count": 100},
                    {"page_number": 2, "word_count": 130},
                ],
            },
            status=200,
        )

        analysis = self._client().get_analysis("upload-1.pdf")

        assert analysis.word_count == 230
        assert analysis.page_count == 2
        assert analysis.detected_document_type == "birth_certificate"
        assert [p.word_count for p in analysis.pages] == [100, 130]
        assert responses.calls[0].request.headers["Authorization"] == f"Bearer {self.TOKEN}"

    @responses.activate
    def test_get_analysis_not_found(self):
        """Test API errors carry the status code."""
        responses.add(
            responses.GET,
            f"{self.BASE_URL}/api/files/missing.pdf/analysis",
            json={"detail": "Not found"},
            status=404,
        )

        with pytest.raises(AnalysisAPIError) as exc_info:
            self._client().get_analysis("missing.pdf")
        assert exc_info.value.status_code == 404

    @responses.activate
    def test_get_analysis_server_error(self):
        """Test server errors surface as AnalysisError."""
        responses.add(
            responses.GET,
            f"{self.BASE_URL}/api/files/broken.pdf/analysis",
            json={"detail": "boom"},
            status=500,
        )

        with pytest.raises(AnalysisError):
            self._client().get_analysis("broken.pdf")

    @responses.activate
    def test_connection_refused(self):
        """Test unreachable service raises AnalysisConnectionError."""
        responses.add(
            responses.GET,
            f"{self.BASE_URL}/api/files/a.pdf/analysis",
            body=requests.exceptions.ConnectionError("refused"),
        )

        with pytest.raises(AnalysisConnectionError):
            self._client().get_analysis("a.pdf")

    @responses.activate
    def test_request_analysis(self):
        """Test submitting a file for analysis."""
        responses.add(
            responses.POST,
            f"{self.BASE_URL}/api/analyze",
            json={"word_count": 310, "assessed_complexity": "hard"},
            status=200,
        )

        analysis = self._client().request_analysis("upload-2.pdf", filename="contract.pdf")

        assert analysis.word_count == 310
        assert analysis.page_count == 1
        assert b'"filename": "contract.pdf"' in responses.calls[0].request.body

    @responses.activate
    def test_get_retried_on_server_error(self):
        """Test a transient 5xx on a read is retried."""
        url = f"{self.BASE_URL}/api/files/a.pdf/analysis"
        responses.add(responses.GET, url, json={"detail": "busy"}, status=503)
        responses.add(responses.GET, url, json={"word_count": 120}, status=200)
        client = AnalysisClient(self.BASE_URL, self.TOKEN, max_retries=2, backoff_factor=0)

        assert client.get_analysis("a.pdf").word_count == 120
        assert len(responses.calls) == 2

    @responses.activate
    def test_post_not_retried(self):
        """Test a failed analysis request is sent exactly once."""
        responses.add(responses.POST, f"{self.BASE_URL}/api/analyze", json={"detail": "boom"}, status=500)
        client = AnalysisClient(self.BASE_URL, self.TOKEN, max_retries=3, backoff_factor=0)

        with pytest.raises(AnalysisAPIError):
            client.request_analysis("upload-3.pdf")
        assert len(responses.calls) == 1


class TestFileAnalysis:
    """Test FileAnalysis parsing."""

    def test_from_api_response_defaults(self):
        """Missing fields fall back to safe defaults."""
        analysis = FileAnalysis.from_api_response({}, "x.pdf")
        assert analysis.word_count == 0
        assert analysis.page_count == 1
        assert analysis.pages == []

    def test_page_count_from_pages(self):
        """Page count defaults to the number of pages reported."""
        analysis = FileAnalysis.from_api_response(
            {"word_count": 50, "pages": [{"word_count": 20}, {"word_count": 30}]}, "x.pdf"
        )
        assert analysis.page_count == 2
        assert [p.page_number for p in analysis.pages] == [1, 2]

    def test_to_dict_feeds_intake(self):
        """to_dict produces the intake input shape."""
        analysis = FileAnalysis.from_api_response(
            {"word_count": 50, "assessed_complexity": "easy", "pages": [{"page_number": 1, "word_count": 50}]},
            "x.pdf",
        )
        assert analysis.to_dict() == {
            "word_count": 50,
            "page_count": 1,
            "detected_language": None,
            "detected_document_type": None,
            "assessed_complexity": "easy",
            "pages": [{"page_number": 1, "word_count": 50}],
        }
