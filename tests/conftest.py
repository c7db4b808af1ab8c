"""
Shared Test Fixtures for the Informo Feeder

This module provides common fixtures used across all test modules.
Fixtures include HTTP response mocks, fake collaborators for the poller,
temporary ledgers and key stores, and data factories for test objects.
"""

import pytest
from unittest.mock import MagicMock
from typing import Optional, Dict, Any, List
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from data.models import FeedItem, FeedSource
from utils.exceptions import RateLimitedError


# =============================================================================
# Data Model Factories
# =============================================================================

@pytest.fixture
def feed_source():
    """A feed polled every 60 seconds."""
    return FeedSource(url="https://news.example.com/rss", identifier="example", poll_interval_seconds=60)


@pytest.fixture
def feed_item_factory():
    """
    Factory fixture for creating FeedItem test objects.

    Usage:
        def test_item(feed_item_factory):
            item = feed_item_factory(link="a", published_at=100)

    Returns:
        callable: A factory function for creating FeedItem objects.
    """
    def _create_item(
        link: str = "https://news.example.com/a",
        published_at: int = 100,
        title: Optional[str] = None,
        body_html: str = "<p>Body</p>",
        description: str = "Summary",
        author: str = "Jane Doe",
        source_identifier: str = "example"
    ) -> FeedItem:
        return FeedItem(
            title=title if title is not None else f"Title of {link}",
            body_html=body_html,
            description=description,
            published_at=published_at,
            author=author,
            link=link,
            source_identifier=source_identifier
        )

    return _create_item


# =============================================================================
# Fake Collaborators
# =============================================================================

class FakeFetcher:
    """Returns a scripted list of items, or raises a scripted error."""

    def __init__(self, items: Optional[List[FeedItem]] = None, error: Optional[Exception] = None):
        self.items = items or []
        self.error = error
        self.calls = 0

    def fetch_items(self, feed):
        self.calls += 1
        if self.error:
            raise self.error
        return list(self.items)


class FakeGateway:
    """
    Records sent messages and uploads.

    send_errors and upload_errors are consumed one per call before
    the call succeeds.
    """

    def __init__(self, send_errors: Optional[List[Exception]] = None,
                 upload_errors: Optional[List[Exception]] = None):
        self.sent: List[Dict[str, Any]] = []
        self.uploads: List[str] = []
        self.send_attempts = 0
        self.upload_attempts = 0
        self.send_errors = list(send_errors or [])
        self.upload_errors = list(upload_errors or [])

    def send_message(self, room_id, event_type, payload, txn_id=None):
        self.send_attempts += 1
        if self.send_errors:
            raise self.send_errors.pop(0)
        self.sent.append({"room_id": room_id, "event_type": event_type,
                          "payload": payload, "txn_id": txn_id})
        return f"$event{len(self.sent)}"

    def upload_blob(self, url):
        self.upload_attempts += 1
        if self.upload_errors:
            raise self.upload_errors.pop(0)
        self.uploads.append(url)
        return f"mxc://example.org/media{len(self.uploads)}"


class RecordingSleep:
    """Sleep replacement that records the requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def rate_limited():
    """Factory for rate limit errors."""
    def _create(retry_after: Optional[float] = None) -> RateLimitedError:
        return RateLimitedError("Too Many Requests", retry_after=retry_after)
    return _create


# =============================================================================
# Storage Fixtures
# =============================================================================

@pytest.fixture
def db_connection(tmp_path):
    """A SQLite connection on a temporary database file."""
    from data.database import DatabaseConnection

    db = DatabaseConnection(str(tmp_path / "feeder.db"))
    yield db
    db.close()


@pytest.fixture
def snapshot_ledger(db_connection):
    from data.database import SnapshotLedger
    return SnapshotLedger(db_connection)


@pytest.fixture
def watermark_ledger(db_connection):
    from data.database import WatermarkLedger
    return WatermarkLedger(db_connection)


@pytest.fixture
def key_store(tmp_path):
    """A key store in a temporary, owner-only directory."""
    from services.key_store import KeyStore
    return KeyStore(str(tmp_path / "keys"))


# =============================================================================
# HTTP Response Fixtures
# =============================================================================

@pytest.fixture
def mock_http_response():
    """
    Factory fixture for creating mock HTTP responses.

    Usage:
        def test_http_request(mock_http_response):
            response = mock_http_response(
                status_code=200,
                json_data={'key': 'value'},
            )

    Returns:
        callable: A factory function for creating mock responses.
    """
    def _create_response(
        status_code: int = 200,
        content: bytes = b'',
        text: str = '',
        json_data: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
        url: str = 'https://example.com'
    ) -> MagicMock:
        import json

        mock_response = MagicMock()
        mock_response.status_code = status_code
        mock_response.content = content
        mock_response.url = url
        mock_response.headers = headers or {}
        mock_response.ok = 200 <= status_code < 300

        if text:
            mock_response.text = text
        elif json_data is not None:
            mock_response.text = json.dumps(json_data)
        else:
            mock_response.text = content.decode('utf-8', errors='replace') if content else ''

        if json_data is not None:
            mock_response.json.return_value = json_data
        else:
            mock_response.json.side_effect = ValueError("No JSON data")

        return mock_response

    return _create_response


# =============================================================================
# Logging Fixtures
# =============================================================================

@pytest.fixture
def capture_logs():
    """
    Capture log messages for assertion in tests.

    Returns:
        list: A list that will contain captured log records.
    """
    import logging

    class LogCapture(logging.Handler):
        def __init__(self):
            super().__init__()
            self.records = []

        def emit(self, record):
            self.records.append(record)

    handler = LogCapture()
    handler.setLevel(logging.DEBUG)

    app_logger = logging.getLogger("feeder")
    original_level = app_logger.level
    app_logger.setLevel(logging.DEBUG)
    app_logger.addHandler(handler)

    yield handler.records

    app_logger.removeHandler(handler)
    app_logger.setLevel(original_level)
