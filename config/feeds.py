"""
Feed List Loading

Reads the list of feeds to poll from a YAML file shaped like:

    feeds:
      - url: https://example.com/rss
        identifier: example
        poll_interval: 300
"""

from typing import List, Optional

import yaml

from config import settings
from data.models import FeedSource
from utils.exceptions import ConfigurationError
from utils.helpers import is_valid_url
from utils.logger import get_logger

logger = get_logger(__name__)


def parse_feeds(raw: dict, default_interval: Optional[int] = None) -> List[FeedSource]:
    """
    Build FeedSource objects from the decoded YAML document.

    Args:
        raw: The decoded YAML document
        default_interval: Poll interval used for feeds that don't set one

    Returns:
        List[FeedSource]: One source per configured feed, in file order

    Raises:
        ConfigurationError: If any entry is invalid. All problems are reported at once.
    """
    if default_interval is None:
        default_interval = settings.DEFAULT_POLL_INTERVAL

    if not isinstance(raw, dict) or not isinstance(raw.get("feeds"), list):
        raise ConfigurationError("Feed list must be a mapping with a 'feeds' list")

    errors = []
    feeds = []
    seen_identifiers = set()

    for index, entry in enumerate(raw["feeds"]):
        if not isinstance(entry, dict):
            errors.append(f"feeds[{index}] must be a mapping")
            continue

        url = str(entry.get("url") or "").strip()
        identifier = str(entry.get("identifier") or "").strip()
        interval = entry.get("poll_interval", default_interval)

        if not is_valid_url(url):
            errors.append(f"feeds[{index}] has an invalid url: {url!r}")
        if not identifier:
            errors.append(f"feeds[{index}] is missing an identifier")
        elif identifier in seen_identifiers:
            errors.append(f"feeds[{index}] reuses identifier {identifier!r}")
        elif "/" in identifier or identifier.startswith("."):
            # The identifier names the key file
            errors.append(f"feeds[{index}] identifier {identifier!r} can't be used as a file name")

        try:
            interval = int(interval)
            if interval <= 0:
                raise ValueError
        except (TypeError, ValueError):
            errors.append(f"feeds[{index}] poll_interval must be a positive integer, got {interval!r}")
            continue

        seen_identifiers.add(identifier)
        feeds.append(FeedSource(url=url, identifier=identifier, poll_interval_seconds=interval))

    if errors:
        raise ConfigurationError("Invalid feed list:\n" + "\n".join(f"  - {e}" for e in errors))
    if not feeds:
        raise ConfigurationError("Feed list is empty")

    return feeds


def load_feeds(path: Optional[str] = None) -> List[FeedSource]:
    """
    Load the feed list from a YAML file.

    Args:
        path: Path of the YAML file, defaults to settings.FEEDS_FILE

    Returns:
        List[FeedSource]: The configured feeds

    Raises:
        ConfigurationError: If the file can't be read or is invalid
    """
    path = path or settings.FEEDS_FILE
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"Could not read feed list {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Could not parse feed list {path}: {e}") from e

    feeds = parse_feeds(raw)
    logger.info(f"Loaded {len(feeds)} feeds from {path}")
    return feeds
