"""
Feed Service Module

This module fetches syndication feeds over HTTP and parses them with
feedparser into FeedItem objects.
"""

import calendar
from typing import Any, List, Optional

import feedparser
import requests

from config import settings
from data.models import FeedItem, FeedSource
from utils.exceptions import TransientSourceError
from utils.logger import get_logger

logger = get_logger(__name__)


def _published_at(entry: Any) -> int:
    """Publication date of an entry as a unix timestamp, 0 if it has none."""
    for key in ("published_parsed", "updated_parsed", "created_parsed"):
        parsed = entry.get(key)
        if parsed:
            return int(calendar.timegm(parsed))
    return 0


def _body_html(entry: Any) -> str:
    """The entry's full content. Feeds only put HTML there."""
    for content in entry.get("content") or []:
        value = content.get("value")
        if value:
            return value
    return ""


def entry_to_item(entry: Any, source_identifier: str) -> FeedItem:
    """Convert a feedparser entry into a FeedItem."""
    author = entry.get("author") or ""
    if not author and entry.get("author_detail"):
        author = entry["author_detail"].get("name") or ""

    return FeedItem(
        title=entry.get("title") or "",
        body_html=_body_html(entry),
        description=entry.get("summary") or entry.get("description") or "",
        published_at=_published_at(entry),
        author=author,
        link=entry.get("link") or "",
        source_identifier=source_identifier,
    )


class FeedService:
    """Service for fetching and parsing feeds. Each feed task owns its own instance."""

    def __init__(self, session: Optional[requests.Session] = None, timeout: Optional[int] = None):
        self.session = session or requests.Session()
        self.session.headers.update(settings.REQUEST_HEADERS)
        self.timeout = timeout or settings.HTTP_TIMEOUT

    def fetch(self, feed: FeedSource) -> bytes:
        """
        Retrieve the raw feed document.

        Raises:
            TransientSourceError: On network errors and non-2xx responses
        """
        try:
            response = self.session.get(feed.url, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransientSourceError(f"Could not reach {feed.url}: {e}") from e

        if not 200 <= response.status_code < 300:
            raise TransientSourceError(
                f"{feed.url} answered with HTTP {response.status_code}",
                status_code=response.status_code
            )
        return response.content

    def parse(self, feed: FeedSource, raw: bytes) -> List[FeedItem]:
        """
        Parse a raw feed document.

        Raises:
            TransientSourceError: If the document isn't a feed at all
        """
        parsed = feedparser.parse(raw)

        # feedparser tolerates a lot; only give up when nothing usable came out
        if parsed.bozo and not parsed.entries and not parsed.get("version"):
            raise TransientSourceError(
                f"Could not parse feed {feed.url}: {parsed.get('bozo_exception')}"
            )

        items = [entry_to_item(entry, feed.identifier) for entry in parsed.entries]
        skipped = [item for item in items if not item.link]
        if skipped:
            logger.warning(f"Ignoring {len(skipped)} items without a link in {feed.identifier}")
        return [item for item in items if item.link]

    def fetch_items(self, feed: FeedSource) -> List[FeedItem]:
        """
        Fetch and parse a feed.

        Args:
            feed: The feed to poll

        Returns:
            List[FeedItem]: The items, in the feed's native order (newest first)

        Raises:
            TransientSourceError: If the feed can't be used this cycle
        """
        items = self.parse(feed, self.fetch(feed))
        logger.debug(f"Fetched feed {feed.identifier}: {len(items)} items")
        return items
