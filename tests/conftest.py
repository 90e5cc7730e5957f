"""Test fixtures and utilities."""

from decimal import Decimal
from pathlib import Path

import pytest

from certquote.config import Config
from certquote.services import QuoteDesk
from certquote.state_store import StateStore

# Reference data shared by the service tests
REFERENCE_DATA = {
    "certification_types": [
        {"code": "standard", "name": "Standard certification", "price": "0.00", "is_default": True},
        {"code": "sworn", "name": "Sworn translation", "price": "35.00", "sort_order": 1},
        {"code": "notarized", "name": "Notarized", "price": "50.00", "sort_order": 2},
        {"code": "apostille", "name": "Apostille", "price": "90.00", "is_active": False},
    ],
    "languages": [
        {"code": "es", "name": "Spanish", "tier": 1, "multiplier": "1.00"},
        {"code": "en", "name": "English", "tier": 1, "multiplier": "1.00"},
        {"code": "ja", "name": "Japanese", "tier": 3, "multiplier": "1.20"},
    ],
    "document_types": [
        {"code": "passport", "name": "Passport", "default_certification": "standard"},
        {"code": "id_card", "name": "ID card", "default_certification": "sworn"},
        {"code": "birth_certificate", "name": "Birth certificate", "default_certification": "notarized"},
    ],
    "delivery_options": [
        {"code": "email", "name": "Email delivery", "fee": "0.00"},
        {"code": "courier", "name": "Courier", "fee": "25.00"},
    ],
    "staff": [
        {"email": "reviewer@example.com", "full_name": "Rita Reviewer", "role": "reviewer"},
        {"email": "senior@example.com", "full_name": "Sam Senior", "role": "senior_reviewer"},
        {"email": "admin@example.com", "full_name": "Ada Admin", "role": "super_admin"},
        {"email": "former@example.com", "full_name": "Fred Former", "role": "super_admin", "is_active": False},
    ],
}


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_state.db"


@pytest.fixture
def config(temp_db) -> Config:
    """Default configuration pointing at the temporary database."""
    return Config(state_db_path=temp_db)


@pytest.fixture
def store(temp_db) -> StateStore:
    """Fresh state store with reference data loaded."""
    store = StateStore(temp_db)
    store.load_reference_data(REFERENCE_DATA)
    return store


@pytest.fixture
def desk(store, config) -> QuoteDesk:
    """QuoteDesk over the fresh store."""
    return QuoteDesk(store, config)


@pytest.fixture
def staff(store) -> dict[str, int]:
    """Staff IDs by role."""
    return {
        "reviewer": store.upsert_staff("reviewer@example.com", "Rita Reviewer", "reviewer"),
        "senior_reviewer": store.upsert_staff("senior@example.com", "Sam Senior", "senior_reviewer"),
        "super_admin": store.upsert_staff("admin@example.com", "Ada Admin", "super_admin"),
        "inactive": store.upsert_staff("former@example.com", "Fred Former", "super_admin", is_active=False),
    }


@pytest.fixture
def cert_ids(store) -> dict[str, int]:
    """Certification type IDs by code."""
    return {c.code: c.id for c in store.list_certification_types(active_only=False)}


@pytest.fixture
def new_quote(store):
    """Factory creating a quote (5% tax, no source language by default)."""

    def _create(tax_rate: str = "0.05", source_language: str | None = None, **kwargs) -> int:
        source_id = store.get_language_by_code(source_language).id if source_language else None
        return store.create_quote(tax_rate=Decimal(tax_rate), source_language_id=source_id, **kwargs)

    return _create


@pytest.fixture
def ingested_file(desk):
    """Factory adding a file to a quote and ingesting its analysis."""

    def _ingest(
        quote_id: int,
        word_count: int,
        complexity: str = "easy",
        document_type: str | None = None,
        pages: list[int] | None = None,
        filename: str | None = None,
    ) -> tuple[int, int]:
        file_id = desk.store.add_file(quote_id, filename or f"upload-{word_count}.pdf")
        analysis = {
            "word_count": word_count,
            "page_count": len(pages) if pages else 1,
            "detected_language": "es",
            "detected_document_type": document_type,
            "assessed_complexity": complexity,
            "pages": [{"page_number": i + 1, "word_count": wc} for i, wc in enumerate(pages or [])],
        }
        analysis_id = desk.intake.ingest(quote_id, file_id, analysis)
        return file_id, analysis_id

    return _ingest
