"""
Service Protocol Definitions

This module defines typing.Protocol interfaces for the services the poller
depends on. These protocols enable loose coupling, dependency injection, and
easier testing.

Protocols defined:
- FeedFetcher: Interface for fetching and parsing a feed
- ContentSigner: Interface for the signing strategies (Ed25519, PGP)
- PublisherGateway: Interface for the messaging network (Matrix)
"""

from typing import Any, Dict, List, Optional, Protocol

from data.models import FeedItem, FeedSource, PublishableContent


class FeedFetcher(Protocol):
    """Protocol defining the interface for feed retrieval."""

    def fetch_items(self, feed: FeedSource) -> List[FeedItem]:
        """Fetch a feed and parse it into items.

        Args:
            feed: The feed to fetch.

        Returns:
            The feed's items in the feed's native order (newest first).

        Raises:
            TransientSourceError: If the feed can't be fetched or parsed this time.
        """
        ...


class ContentSigner(Protocol):
    """Protocol defining the interface for content signing strategies."""

    def sign(self, content: PublishableContent, identifier: str) -> PublishableContent:
        """Sign content on behalf of a feed.

        Args:
            content: The content to sign.
            identifier: The identifier of the feed the content comes from.

        Returns:
            A copy of the content with its signature attached.

        Raises:
            SigningError: If the content can't be signed.
        """
        ...


class PublisherGateway(Protocol):
    """Protocol defining the interface for the messaging network.

    Both methods raise RateLimitedError when the network asks the caller to
    slow down; any other error is fatal to the current item.
    """

    def send_message(self, room_id: str, event_type: str, payload: Dict[str, Any],
                     txn_id: Optional[str] = None) -> str:
        """Send a message and return its ID."""
        ...

    def upload_blob(self, url: str) -> str:
        """Copy the file at url to the network and return its content reference."""
        ...
