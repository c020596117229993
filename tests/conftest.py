"""Shared test fixtures for the Chatgorithm test suite."""

from __future__ import annotations

import os
from unittest.mock import MagicMock

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("GEMINI_API_KEY", "test-gemini-key-123")
    os.environ.setdefault("AIRTABLE_API_KEY", "test-airtable-key-456")
    os.environ.setdefault("AIRTABLE_BASE_ID", "appTESTBASE")
    os.environ.setdefault("WHATSAPP_TOKEN", "test-wa-token")
    os.environ.setdefault("WHATSAPP_PHONE_ID", "1000000001")
    os.environ.setdefault("WHATSAPP_EXTRA_ACCOUNTS", "2000000002:second-line-token")
    os.environ.setdefault("WEBHOOK_VERIFY_TOKEN", "verify-me")


def record(record_id: str, **fields) -> dict:
    """Build an Airtable-shaped record."""
    return {"id": record_id, "createdTime": "2026-01-01T00:00:00.000Z", "fields": fields}


@pytest.fixture
def mock_response():
    """Factory fixture for creating mock httpx responses."""

    def _make(data: dict, status_code: int = 200, *, content: bytes = b"", headers: dict | None = None):
        mock = MagicMock()
        mock.status_code = status_code
        mock.json.return_value = data
        mock.text = str(data)
        mock.content = content
        mock.headers = headers or {}
        return mock

    return _make


@pytest.fixture
def broadcaster():
    return MagicMock()


@pytest.fixture
def store():
    """An AirtableStore stand-in with empty defaults."""
    mock = MagicMock()
    mock.find_contact.return_value = None
    mock.conversation.return_value = []
    mock.list_appointments.return_value = []
    mock.upsert_contact_activity.return_value = (record("recC1", phone="34600111222"), False)
    mock.get_setting.return_value = None
    return mock


@pytest.fixture
def whatsapp():
    mock = MagicMock()
    mock.default_phone_id = "1000000001"
    mock.resolve_origin.side_effect = lambda phone_id: phone_id or "1000000001"
    mock.is_known_line.side_effect = lambda phone_id: phone_id in ("1000000001", "2000000002")
    return mock


@pytest.fixture
def chat(store, whatsapp, broadcaster):
    from chatgorithm.services.chat import ChatService

    return ChatService(store, whatsapp, broadcaster)
