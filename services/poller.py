"""
Poller Module

The poller owns everything one feed needs (fetcher, ledger, signer, gateway)
and runs an endless loop that:

    - loads what was already published for the feed
    - polls and parses the feed
    - publishes, oldest first, every item that wasn't published yet
    - records each published item in the ledger
    - waits for the feed's poll interval

Feeds don't share any state, so each one runs in its own thread.
"""

import threading
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from config import settings
from data.models import FeedItem, FeedSource, PublishableContent
from data.protocols import SeenLedger, SeenRecord
from services.media_service import MediaRewriter
from services.protocols import ContentSigner, FeedFetcher, PublisherGateway
from utils.exceptions import (
    FeederError, ItemContentMissing, PublishError, RateLimitedError, TransientSourceError
)
from utils.helpers import contains_html, fixed_backoff, truncate_text, with_retry
from utils.logger import get_logger

logger = get_logger(__name__)


def extract_html(item: FeedItem) -> str:
    """
    Find the HTML to publish for an item.

    If there's a content, it's always HTML. If not, the description is used
    when it contains HTML.

    Raises:
        ItemContentMissing: If no HTML could be found
    """
    if item.body_html:
        return item.body_html
    if contains_html(item.description):
        return item.description
    raise ItemContentMissing(f"Could not find any HTML content in {item.link}")


def _format_date(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat() if ts else "unknown"


class Poller:
    """Polls one feed and publishes its new items."""

    def __init__(self, feed: FeedSource, fetcher: FeedFetcher, ledger: SeenLedger,
                 signer: ContentSigner, gateway: Optional[PublisherGateway] = None,
                 room_id: Optional[str] = None, event_type_prefix: Optional[str] = None,
                 test_mode: bool = False, backoff_seconds: Optional[float] = None,
                 stop_event: Optional[threading.Event] = None,
                 on_fatal: Optional[Callable[[FeedSource, Exception], None]] = None,
                 sleep: Optional[Callable[[float], None]] = None):
        """
        Initialize the poller of a feed.

        Args:
            feed: The feed to poll
            fetcher: Fetches and parses the feed
            ledger: Remembers what was already published
            signer: Signs each item's content
            gateway: Sends events and uploads media, unused in test mode
            room_id: Room to publish to, defaults to settings.MATRIX_ROOM_ID
            event_type_prefix: Prefix of the feed's event type
            test_mode: Log what would be published instead of publishing
            backoff_seconds: Wait after a rate limit without retry hint
            stop_event: Set to stop run_forever() at its next wait
            on_fatal: Called with the error when publishing fails for good
            sleep: Sleep function used between rate-limited retries
        """
        if gateway is None and not test_mode:
            raise ValueError("A publisher gateway is required outside of test mode")

        self.feed = feed
        self.fetcher = fetcher
        self.ledger = ledger
        self.signer = signer
        self.gateway = gateway
        self.room_id = room_id or settings.MATRIX_ROOM_ID
        self.event_type = (event_type_prefix or settings.EVENT_TYPE_PREFIX) + feed.identifier
        self.test_mode = test_mode
        self.stop_event = stop_event or threading.Event()
        self.on_fatal = on_fatal
        self.backoff = fixed_backoff(
            settings.RATE_LIMIT_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        )
        self.sleep = sleep or time.sleep
        self.media = MediaRewriter(gateway, backoff_seconds=backoff_seconds, sleep=self.sleep) \
            if gateway is not None else None

    # -------------------------------------------------------------------------
    # Main loop
    # -------------------------------------------------------------------------

    def run_forever(self) -> None:
        """
        Poll the feed until the stop event is set or a fatal error happens.

        Transient feed errors only skip the current cycle. Storage and signing
        errors end this feed's task; publishing errors also call on_fatal so
        the whole process can stop.
        """
        logger.info(f"Poller started for {self.feed.identifier} ({self.feed.url})")

        initial_delay = self._initial_delay()
        if initial_delay and self.stop_event.wait(initial_delay):
            return

        while not self.stop_event.is_set():
            try:
                self.poll_once()
            except TransientSourceError as e:
                logger.warning(f"Skipping this poll of {self.feed.identifier} ({self.feed.url}): {e}")
            except PublishError as e:
                logger.critical(f"Fatal publishing error for {self.feed.identifier} ({self.feed.url}): {e}",
                                exc_info=True)
                if self.on_fatal:
                    self.on_fatal(self.feed, e)
                return
            except FeederError as e:
                logger.error(f"Stopping poller for {self.feed.identifier} ({self.feed.url}): {e}",
                             exc_info=True)
                return
            except Exception as e:
                logger.critical(f"Unexpected error, stopping poller for {self.feed.identifier} "
                                f"({self.feed.url}): {e}", exc_info=True)
                return

            # Wait before jumping to the next iteration
            if self.stop_event.wait(self.feed.poll_interval_seconds):
                break

        logger.info(f"Poller stopped for {self.feed.identifier}")

    def _initial_delay(self) -> int:
        # Only the watermark ledger knows when the feed was last polled
        seconds_until = getattr(self.ledger, "seconds_until_next_poll", None)
        if seconds_until is None:
            return 0
        delay = seconds_until(self.feed)
        if delay:
            logger.info(f"Last poll of {self.feed.identifier} was recent, waiting {delay}s")
        return delay

    def poll_once(self) -> int:
        """
        Run one poll cycle.

        Returns:
            int: Number of items published during this cycle

        Raises:
            TransientSourceError: If the feed couldn't be fetched, nothing was changed
            StorageError, SigningError, PublishError: Fatal to this feed
        """
        # New items are always judged against the record as it was loaded;
        # record follows what gets persisted during the batch
        loaded: SeenRecord = self.ledger.load(self.feed)
        record = loaded

        logger.info(f"Polling {self.feed.url}")
        items = self.fetcher.fetch_items(self.feed)

        published = 0
        handled = set()
        # Feeds list the newest items first. Going through them backwards
        # keeps the room in chronological order as far as possible; an item
        # that shows up in the middle of the feed is still sent after the
        # ones from the previous cycle.
        for item in reversed(items):
            if not loaded.is_new(item) or item.link in handled:
                continue
            handled.add(item.link)

            try:
                self.publish_item(item)
            except ItemContentMissing:
                logger.warning(
                    f"Could not find any HTML content in {self.feed.identifier}: "
                    f"{item.title!r} published {_format_date(item.published_at)}"
                )
                continue
            except FeederError as e:
                logger.error(f"Failed to publish {item.link} from {self.feed.identifier}: {e}")
                raise

            published += 1
            if not self.test_mode:
                record = self.ledger.mark_published(self.feed, record, item)

        if not self.test_mode:
            self.ledger.finish_cycle(self.feed, record, items)

        logger.info(f"Poll of {self.feed.identifier} done: {published} new of {len(items)} items")
        return published

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    def build_content(self, item: FeedItem) -> PublishableContent:
        """Find the item's HTML, copy its media and sign the resulting content."""
        html = extract_html(item)

        logger.info(f"Got a new item: {item.title!r} published {_format_date(item.published_at)}")

        if self.media is not None and not self.test_mode:
            html = self.media.rewrite(html)

        content = PublishableContent.from_item(item, html)
        return self.signer.sign(content, self.feed.identifier)

    def publish_item(self, item: FeedItem) -> Optional[str]:
        """
        Publish a single item.

        Returns:
            Optional[str]: The event ID, None in test mode

        Raises:
            ItemContentMissing: If the item has no HTML
            SigningError, PublishError: If the item can't be signed or sent
        """
        content = self.build_content(item)

        if self.test_mode:
            logger.info(f"TEST MODE: Would publish {self.event_type} event: {truncate_text(content.headline, 80)}")
            return None

        payload = content.to_event_content()
        # Same transaction ID for every attempt so the homeserver deduplicates
        txn_id = f"{self.feed.identifier}-{time.time_ns()}"

        event_id = with_retry(
            lambda: self.gateway.send_message(self.room_id, self.event_type, payload, txn_id=txn_id),
            is_retryable=lambda e: isinstance(e, RateLimitedError),
            backoff=self.backoff,
            sleep=self.sleep
        )

        logger.info(f"Event published for {self.feed.identifier} ({self.feed.url}): {event_id}")
        return event_id


def start_poller_thread(poller: Poller) -> threading.Thread:
    """Run a poller in its own daemon thread."""
    thread = threading.Thread(
        target=poller.run_forever,
        name=f"poller-{poller.feed.identifier}",
        daemon=True
    )
    thread.start()
    return thread
