"""
Data Models for the Informo Feeder

This module contains the data classes used throughout the application:
feed sources, parsed feed items, publishable event content, signing
identities and the two kinds of seen-item records.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, Optional


@dataclass(frozen=True)
class FeedSource:
    """A feed the feeder polls at a given frequency."""
    url: str
    identifier: str
    poll_interval_seconds: int


@dataclass(frozen=True)
class FeedItem:
    """One entry of a parsed feed."""
    title: str
    body_html: str
    description: str
    published_at: int                  # Unix timestamp in seconds, 0 if unknown
    author: str
    link: str
    source_identifier: str


@dataclass(frozen=True)
class PublishableContent:
    """
    Content of a news event as sent to the messaging network.

    The signature is never part of the signed payload; signing returns a
    copy with the signature attached.
    """
    headline: str
    content: str
    description: str
    date: int
    author: str
    link: str
    signature: Optional[str] = None

    @classmethod
    def from_item(cls, item: FeedItem, html: str) -> "PublishableContent":
        """Build the content of an event from a feed item and its (rewritten) HTML."""
        return cls(
            headline=item.title,
            content=html,
            description=item.description,
            date=item.published_at,
            author=item.author,
            link=item.link,
        )

    def with_signature(self, signature: str) -> "PublishableContent":
        return replace(self, signature=signature)

    def signable_fields(self) -> Dict[str, str]:
        return {
            "headline": self.headline,
            "description": self.description,
            "content": self.content,
        }

    def to_event_content(self) -> Dict[str, Any]:
        event = {
            "headline": self.headline,
            "content": self.content,
            "description": self.description,
            "date": self.date,
            "author": self.author,
            "link": self.link,
        }
        if self.signature:
            event["signature"] = self.signature
        return event


@dataclass(frozen=True)
class SigningIdentity:
    """An Ed25519 key pair, derived from a persisted seed."""
    identifier: str
    public_key: bytes                  # Raw 32-byte public key
    private_key: bytes = field(repr=False)  # Raw 32-byte seed


@dataclass(frozen=True)
class SnapshotRecord:
    """Links already published for a feed."""
    feed_identifier: str
    links: FrozenSet[str] = frozenset()

    def is_new(self, item: FeedItem) -> bool:
        return item.link not in self.links

    def with_link(self, link: str) -> "SnapshotRecord":
        return replace(self, links=self.links | {link})


@dataclass(frozen=True)
class WatermarkRecord:
    """
    Latest poll time and latest published item time for a feed.

    Only items strictly newer than the watermark are new, so items published
    late with an older date are missed.
    """
    feed_url: str
    last_poll_ts: int = 0
    last_item_ts: int = 0

    def is_new(self, item: FeedItem) -> bool:
        return item.published_at > self.last_item_ts

    def with_item(self, item: FeedItem) -> "WatermarkRecord":
        return replace(self, last_item_ts=max(self.last_item_ts, item.published_at))
