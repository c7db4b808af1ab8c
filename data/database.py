"""
Database Module for the Informo Feeder

This module handles the SQLite connection and the two seen-item ledgers:

- SnapshotLedger stores every known item link per feed identifier
- WatermarkLedger stores the latest poll and item timestamps per feed URL

A process uses one of them, chosen by settings.LEDGER_MODEL.
"""

import sqlite3
import time
from typing import List, Optional, Sequence, Tuple

from config import settings
from data.models import FeedItem, FeedSource, SnapshotRecord, WatermarkRecord
from utils.exceptions import LedgerError, StorageUnavailable
from utils.logger import get_logger

logger = get_logger(__name__)

SNAPSHOT_SCHEMA = """
-- Store the items known from the latest polls of a given feed. One row
-- equals to one item.
CREATE TABLE IF NOT EXISTS poller (
    -- The identifier of the feed the item comes from.
    feed TEXT NOT NULL,
    -- The URL of the item.
    item_url TEXT NOT NULL,
    PRIMARY KEY (feed, item_url)
);
"""

WATERMARK_SCHEMA = """
-- Store the poller status of a given feed.
CREATE TABLE IF NOT EXISTS poller_status (
    feed_url TEXT NOT NULL PRIMARY KEY,
    -- The latest poll time (as a timestamp in seconds)
    latest_poll_ts INTEGER NOT NULL DEFAULT 0,
    -- The timestamp (in seconds) of the latest item retrieved
    latest_item_ts INTEGER NOT NULL DEFAULT 0
);
"""


class DatabaseConnection:
    """SQLite connection manager. Each feed task owns its own instance."""

    def __init__(self, path: Optional[str] = None):
        """Initialize the database connection settings. Connecting is lazy."""
        self.path = path or settings.DATABASE_PATH
        self.conn: Optional[sqlite3.Connection] = None

    def connect(self) -> sqlite3.Connection:
        """
        Establish a connection to the database and create the ledger tables.

        Returns:
            sqlite3.Connection: The open connection.

        Raises:
            StorageUnavailable: If the database can't be opened.
        """
        try:
            # Created by the main thread, then only used by the owning feed thread
            self.conn = sqlite3.connect(self.path, timeout=30, check_same_thread=False)
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.executescript(SNAPSHOT_SCHEMA + WATERMARK_SCHEMA)
            self.conn.commit()
            logger.debug(f"Connected to database {self.path}")
            return self.conn
        except sqlite3.Error as e:
            self.conn = None
            raise StorageUnavailable(f"Failed to open database {self.path}: {e}") from e

    def close(self) -> None:
        """Close the database connection."""
        try:
            if self.conn:
                self.conn.close()
                self.conn = None
                logger.debug("Database connection closed")
        except sqlite3.Error as e:
            logger.error(f"Error closing database connection: {e}")

    def _connection(self) -> sqlite3.Connection:
        return self.conn if self.conn else self.connect()

    def execute_query(self, query: str, params: Optional[tuple] = None) -> List[Tuple]:
        """
        Execute a SQL statement and return the fetched rows.

        Args:
            query: The SQL query to execute.
            params: Query parameters (optional).

        Returns:
            List[Tuple]: The rows for a SELECT, an empty list otherwise.

        Raises:
            LedgerError: If the statement fails. The transaction is rolled back.
        """
        conn = self._connection()
        try:
            cursor = conn.execute(query, params or ())
            rows = cursor.fetchall()
            conn.commit()
            return rows
        except sqlite3.Error as e:
            conn.rollback()
            raise LedgerError(f"Error executing query: {e}") from e

    def execute_transaction(self, statements: Sequence[Tuple[str, tuple]]) -> None:
        """
        Execute several statements atomically.

        Args:
            statements: (query, params) pairs executed in order.

        Raises:
            LedgerError: If any statement fails. Nothing is committed.
        """
        conn = self._connection()
        try:
            with conn:
                for query, params in statements:
                    conn.execute(query, params)
        except sqlite3.Error as e:
            raise LedgerError(f"Error executing transaction: {e}") from e


class SnapshotLedger:
    """
    Ledger keeping the set of known links for each feed.

    Detects new items anywhere in a batch, whatever their dates.
    """

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def get_item_links_for_feed(self, feed_identifier: str) -> List[str]:
        rows = self.db.execute_query("SELECT item_url FROM poller WHERE feed = ?", (feed_identifier,))
        return [row[0] for row in rows]

    def save_item(self, feed_identifier: str, item_url: str) -> None:
        self.db.execute_query(
            "INSERT OR IGNORE INTO poller (feed, item_url) VALUES (?, ?)",
            (feed_identifier, item_url)
        )

    def clear_items_for_feed(self, feed_identifier: str) -> None:
        self.db.execute_query("DELETE FROM poller WHERE feed = ?", (feed_identifier,))

    def replace_items_for_feed(self, feed_identifier: str, item_urls: Sequence[str]) -> None:
        """Atomically reset the known-set of a feed to the given links."""
        statements = [("DELETE FROM poller WHERE feed = ?", (feed_identifier,))]
        statements.extend(
            ("INSERT OR IGNORE INTO poller (feed, item_url) VALUES (?, ?)", (feed_identifier, url))
            for url in item_urls
        )
        self.db.execute_transaction(statements)

    def load(self, feed: FeedSource) -> SnapshotRecord:
        links = self.get_item_links_for_feed(feed.identifier)
        logger.debug(f"Loaded last poll's results for {feed.identifier}: {len(links)} items")
        return SnapshotRecord(feed_identifier=feed.identifier, links=frozenset(links))

    def save(self, record: SnapshotRecord) -> None:
        self.replace_items_for_feed(record.feed_identifier, sorted(record.links))

    def mark_published(self, feed: FeedSource, record: SnapshotRecord, item: FeedItem) -> SnapshotRecord:
        self.save_item(feed.identifier, item.link)
        return record.with_link(item.link)

    def finish_cycle(self, feed: FeedSource, record: SnapshotRecord,
                     items: Sequence[FeedItem]) -> SnapshotRecord:
        # Forget links that left the feed, never add ones that weren't published
        current = frozenset(item.link for item in items if item.link in record.links)
        if current == record.links:
            return record

        pruned = SnapshotRecord(feed_identifier=record.feed_identifier, links=current)
        if current:
            self.save(pruned)
        else:
            self.clear_items_for_feed(feed.identifier)
        logger.debug(f"Pruned {len(record.links) - len(current)} links for {feed.identifier}")
        return pruned


class WatermarkLedger:
    """
    Ledger keeping the latest poll time and latest item time for each feed.

    Only detects items strictly newer than the latest published one.
    """

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def get_status_for_feed(self, feed_url: str) -> Tuple[int, int]:
        rows = self.db.execute_query(
            "SELECT latest_poll_ts, latest_item_ts FROM poller_status WHERE feed_url = ?",
            (feed_url,)
        )
        if not rows:
            return 0, 0
        return int(rows[0][0]), int(rows[0][1])

    def update_status_for_feed(self, feed_url: str, latest_poll_ts: int, latest_item_ts: int) -> None:
        self.db.execute_query(
            "INSERT OR REPLACE INTO poller_status (feed_url, latest_poll_ts, latest_item_ts) "
            "VALUES (?, ?, ?)",
            (feed_url, latest_poll_ts, latest_item_ts)
        )

    def load(self, feed: FeedSource) -> WatermarkRecord:
        latest_poll, latest_item = self.get_status_for_feed(feed.url)
        return WatermarkRecord(feed_url=feed.url, last_poll_ts=latest_poll, last_item_ts=latest_item)

    def save(self, record: WatermarkRecord) -> None:
        self.update_status_for_feed(record.feed_url, record.last_poll_ts, record.last_item_ts)

    def mark_published(self, feed: FeedSource, record: WatermarkRecord, item: FeedItem) -> WatermarkRecord:
        updated = record.with_item(item)
        self.save(updated)
        return updated

    def finish_cycle(self, feed: FeedSource, record: WatermarkRecord,
                     items: Sequence[FeedItem]) -> WatermarkRecord:
        updated = WatermarkRecord(
            feed_url=record.feed_url,
            last_poll_ts=int(time.time()),
            last_item_ts=record.last_item_ts,
        )
        self.save(updated)
        return updated

    def seconds_until_next_poll(self, feed: FeedSource, now: Optional[float] = None) -> int:
        """Remaining part of the poll interval since the latest recorded poll."""
        latest_poll, _ = self.get_status_for_feed(feed.url)
        now = time.time() if now is None else now
        remaining = feed.poll_interval_seconds - int(now - latest_poll)
        return max(remaining, 0)


def create_ledger(db: DatabaseConnection, model: Optional[str] = None):
    """
    Create the ledger for the configured dedup model.

    Args:
        db: The connection the ledger will use.
        model: "snapshot" or "watermark", defaults to settings.LEDGER_MODEL.

    Returns:
        SnapshotLedger or WatermarkLedger
    """
    model = (model or settings.LEDGER_MODEL).lower()
    if model == "snapshot":
        return SnapshotLedger(db)
    if model == "watermark":
        return WatermarkLedger(db)
    raise ValueError(f"Unknown ledger model: {model}")
