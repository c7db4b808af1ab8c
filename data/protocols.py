"""
Data Layer Protocol Definitions

This module defines typing.Protocol interfaces for the seen-item ledger.
The poller only depends on this interface, so either dedup model (or an
in-memory fake in tests) can be plugged in.

Protocols defined:
- SeenLedger: Interface for loading and updating a feed's SeenRecord
"""

from typing import Protocol, Sequence, Union

from data.models import FeedItem, FeedSource, SnapshotRecord, WatermarkRecord

SeenRecord = Union[SnapshotRecord, WatermarkRecord]


class SeenLedger(Protocol):
    """Protocol defining the interface for per-feed seen-item storage.

    Implementations should provide methods for:
    - Loading the record of what was already published for a feed
    - Persisting a single published item
    - Closing a poll cycle (pruning, poll timestamps)
    """

    def load(self, feed: FeedSource) -> SeenRecord:
        """Load the current record for a feed.

        Args:
            feed: The feed to load the record for.

        Returns:
            The feed's SeenRecord, empty if the feed was never polled.
        """
        ...

    def mark_published(self, feed: FeedSource, record: SeenRecord, item: FeedItem) -> SeenRecord:
        """Persist that an item was published.

        Args:
            feed: The feed the item belongs to.
            record: The record the item was checked against.
            item: The published item.

        Returns:
            The updated record.
        """
        ...

    def finish_cycle(self, feed: FeedSource, record: SeenRecord, items: Sequence[FeedItem]) -> SeenRecord:
        """Persist end-of-cycle state once a whole batch has been processed.

        Args:
            feed: The polled feed.
            record: The record after every item of the batch was handled.
            items: Every item of the batch, published or not.

        Returns:
            The record as persisted.
        """
        ...
