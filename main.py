"""
Informo Feeder

This is the main entry point for the Informo Feeder.
It polls the configured feeds, signs each new item and publishes it
as an event in the Informo Matrix room, one worker thread per feed.

Version: 1.0
"""

import sys
import argparse
import logging
import threading
from typing import Callable, Dict, List, Optional

from config import settings
from config.feeds import load_feeds
from config.validators import validate_settings, get_config_summary
from data.database import DatabaseConnection, create_ledger
from data.models import FeedSource
from services.feed_service import FeedService
from services.key_store import KeyStore
from services.matrix_service import MatrixService
from services.poller import Poller, start_poller_thread
from services.signer import Ed25519Signer, create_signer
from utils.exceptions import ConfigurationError, FeederError, SigningError, StorageError
from utils.logger import get_logger, setup_file_logging

# Set up logging
logger = get_logger(__name__)

EXIT_STOPPED = 0
EXIT_ALL_FEEDS_ENDED = 1
EXIT_FATAL = 2


class FeederApp:
    """
    Main application class for the Informo Feeder.

    Builds one Poller per feed, each with its own ledger connection, HTTP
    session, signer and gateway, and supervises their threads.
    """

    def __init__(self, feeds: List[FeedSource], test_mode: bool = False,
                 key_store: Optional[KeyStore] = None,
                 fetcher_factory: Optional[Callable[[], object]] = None,
                 ledger_factory: Optional[Callable[[], object]] = None,
                 signer_factory: Optional[Callable[[FeedSource], object]] = None,
                 gateway_factory: Optional[Callable[[], object]] = None,
                 validate: bool = True):
        """
        Initialize the Informo Feeder.

        Args:
            feeds: The feeds to poll
            test_mode: If True, nothing is sent to Matrix and the ledger isn't updated
            key_store: Key store for the ed25519 strategy
            fetcher_factory: Builds a feed fetcher for one feed
            ledger_factory: Builds a seen-item ledger for one feed
            signer_factory: Builds a content signer for one feed
            gateway_factory: Builds a publisher gateway for one feed
            validate: Whether to validate settings
        """
        if validate:
            validate_settings(test_mode=test_mode)

        self.feeds = feeds
        self.test_mode = test_mode
        self.key_store = key_store
        self.fetcher_factory = fetcher_factory or FeedService
        self.ledger_factory = ledger_factory or (lambda: create_ledger(DatabaseConnection()))
        self.signer_factory = signer_factory or self._default_signer
        self.gateway_factory = gateway_factory or MatrixService

        self.stop_event = threading.Event()
        self.fatal_event = threading.Event()
        self.fatal_error: Optional[Exception] = None
        self.pollers: Dict[str, Poller] = {}
        self.threads: Dict[str, threading.Thread] = {}

    def _default_signer(self, feed: FeedSource):
        if settings.SIGNING_STRATEGY == "ed25519":
            if self.key_store is None:
                self.key_store = KeyStore()
            signer = Ed25519Signer(self.key_store)
            # Generate the key now rather than on the first item
            signer.add_identity(self.key_store.get_or_create_identity(feed.identifier))
            return signer
        # Each feed gets its own copy of the PGP key: unlocking isn't thread safe
        return create_signer(settings.SIGNING_STRATEGY)

    def _on_fatal(self, feed: FeedSource, error: Exception) -> None:
        self.fatal_error = error
        self.fatal_event.set()

    def build_poller(self, feed: FeedSource) -> Poller:
        """Build the poller of a feed with its own set of services."""
        return Poller(
            feed=feed,
            fetcher=self.fetcher_factory(),
            ledger=self.ledger_factory(),
            signer=self.signer_factory(feed),
            gateway=None if self.test_mode else self.gateway_factory(),
            test_mode=self.test_mode,
            stop_event=self.stop_event,
            on_fatal=self._on_fatal,
        )

    def start(self) -> int:
        """
        Build and start a poller thread for each feed.

        A feed whose signing key or ledger can't be set up is logged and left out;
        the others still start.

        Returns:
            int: Number of pollers started
        """
        for feed in self.feeds:
            try:
                poller = self.build_poller(feed)
            except (StorageError, SigningError) as e:
                logger.error(f"Not starting poller for {feed.identifier} ({feed.url}): {e}")
                continue

            self.pollers[feed.identifier] = poller
            self.threads[feed.identifier] = start_poller_thread(poller)
            logger.info(f"Poller started for {feed.url}")

        return len(self.threads)

    def wait(self, check_interval: float = 1.0) -> int:
        """
        Block until a fatal error, every poller ending, or Ctrl-C.

        Returns:
            int: The process exit code
        """
        try:
            while not self.fatal_event.wait(check_interval):
                if not any(thread.is_alive() for thread in self.threads.values()):
                    logger.error("Every poller has stopped")
                    return EXIT_ALL_FEEDS_ENDED
        except KeyboardInterrupt:
            logger.info("Interrupted, stopping pollers")
            self.stop_event.set()
            return EXIT_STOPPED

        logger.critical(f"Stopping the feeder after a fatal error: {self.fatal_error}")
        self.stop_event.set()
        return EXIT_FATAL

    def run(self) -> int:
        """Start every poller and wait for them."""
        if self.start() == 0:
            logger.error("No poller could be started")
            return EXIT_FATAL
        return self.wait()


def create_feeder_app(feeds_file: Optional[str] = None, test_mode: bool = False) -> FeederApp:
    """
    Create a FeederApp from the configuration.

    Args:
        feeds_file: YAML feed list, defaults to settings.FEEDS_FILE
        test_mode: If True, nothing is published

    Returns:
        FeederApp: The configured application
    """
    validate_settings(test_mode=test_mode)
    feeds = load_feeds(feeds_file)
    return FeederApp(feeds, test_mode=test_mode, validate=False)


def parse_arguments(argv: Optional[List[str]] = None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Informo Feeder')
    parser.add_argument('--test', action='store_true', help='Run in test mode without publishing')
    parser.add_argument('--feeds', type=str, default=None, help='YAML feed list (overrides FEEDS_FILE)')
    parser.add_argument('--log-file', type=str, default='feeder.log', help='Log file path')
    parser.add_argument('--log-level', type=str, choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        default='INFO', help='Logging level')
    parser.add_argument('--debug', action='store_true', help='Print debugging messages')
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the application."""
    # Parse command line arguments
    args = parse_arguments(argv)

    # Set up logging
    log_level = logging.DEBUG if args.debug else getattr(logging, args.log_level)
    setup_file_logging(args.log_file, log_level)

    logger.info("Starting Informo Feeder")
    if args.test:
        logger.info("TEST MODE: nothing will be published")

    try:
        app = create_feeder_app(args.feeds, test_mode=args.test)
        logger.info(f"Configuration: {get_config_summary()}")
        exit_code = app.run()
    except ConfigurationError as e:
        logger.error(f"{e}")
        exit_code = EXIT_FATAL
    except FeederError as e:
        logger.error(f"Unhandled feeder error: {e}", exc_info=True)
        exit_code = EXIT_FATAL

    logger.info(f"Informo Feeder finished with exit code {exit_code}")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
