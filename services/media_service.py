"""
Media Service Module

Replaces links to externally hosted images in an item's HTML with links to
copies uploaded through the publisher gateway, so readers don't hit the
original host.
"""

import mimetypes
import os
import re
from typing import Callable, Dict, List, Optional
from urllib.parse import urlparse

from config import settings
from services.protocols import PublisherGateway
from utils.exceptions import RateLimitedError
from utils.helpers import fixed_backoff, with_retry
from utils.logger import get_logger

logger = get_logger(__name__)

IMG_REGEXP = re.compile(r"""<img[^>]+["']((?://|https?://)[^"'>]+)["']""", re.IGNORECASE)


def is_image(url: str) -> bool:
    """Check whether a URL's file extension maps to an image MIME type."""
    path = urlparse(url if not url.startswith("//") else "https:" + url).path
    ext = os.path.splitext(path)[1].lower()
    if not ext:
        return False
    mimetype = mimetypes.types_map.get(ext) or mimetypes.guess_type("file" + ext)[0]
    return bool(mimetype and mimetype.startswith("image/"))


def get_media_links(html: str) -> List[str]:
    """
    Extract image URLs from img tags, in order of appearance, without duplicates.

    Args:
        html: The HTML to scan

    Returns:
        List[str]: Distinct absolute or protocol-relative image URLs
    """
    links = []
    for url in IMG_REGEXP.findall(html or ""):
        if is_image(url) and url not in links:
            links.append(url)
    return links


class MediaRewriter:
    """Uploads the images of an HTML body and points the body to the copies."""

    def __init__(self, gateway: PublisherGateway, backoff_seconds: Optional[float] = None,
                 sleep: Optional[Callable[[float], None]] = None):
        """
        Initialize the rewriter.

        Args:
            gateway: Where images are uploaded
            backoff_seconds: Wait after a rate limit without retry hint
            sleep: Sleep function, injectable for tests
        """
        self.gateway = gateway
        self.backoff = fixed_backoff(
            settings.RATE_LIMIT_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        )
        self.sleep = sleep

    def _upload(self, url: str) -> str:
        kwargs = {"sleep": self.sleep} if self.sleep else {}
        return with_retry(
            lambda: self.gateway.upload_blob(url),
            is_retryable=lambda e: isinstance(e, RateLimitedError),
            backoff=self.backoff,
            **kwargs
        )

    def rewrite(self, html: str) -> str:
        """
        Replace every qualifying image URL of the HTML with its uploaded copy.

        Args:
            html: The item's HTML

        Returns:
            str: The HTML with image URLs replaced, unchanged if there are none

        Raises:
            PublishError: If an upload fails for another reason than rate limiting
        """
        urls = get_media_links(html)
        if not urls:
            return html

        # map[originalURL]contentURI
        replacements: Dict[str, str] = {}
        for url in urls:
            replacements[url] = self._upload(url)
            logger.debug(f"Replacing media link in content: {url} -> {replacements[url]}")

        # Longest first so a URL that prefixes another one doesn't clobber it
        for original in sorted(replacements, key=len, reverse=True):
            html = html.replace(original, replacements[original])

        logger.info(f"Replaced {len(replacements)} media links")
        return html
