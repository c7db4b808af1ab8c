"""
Helper Utility Module

This module provides various helper functions used throughout the Informo Feeder.
"""

import os
import re
import stat
import time
from typing import Callable, Optional, TypeVar
from urllib.parse import urlparse

from utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# A closing tag is enough to tell HTML from plain text
HTML_CLOSING_TAG = re.compile(r"</[^ ]+>")


def is_valid_url(url: str) -> bool:
    """
    Check if a URL is valid.

    Args:
        url: The URL to validate

    Returns:
        bool: True if the URL is valid, False otherwise
    """
    try:
        result = urlparse(url)
        return all([result.scheme, result.netloc])
    except Exception:
        return False


def contains_html(text: Optional[str]) -> bool:
    """
    Check whether a piece of text contains HTML markup.

    Args:
        text: The text to inspect

    Returns:
        bool: True if at least one closing tag is present
    """
    if not text:
        return False
    return bool(HTML_CLOSING_TAG.search(text))


def fixed_backoff(seconds: float) -> Callable[[Exception], float]:
    """
    Build a backoff policy that honours the server's retry hint when there is one
    and falls back to a fixed delay otherwise.

    Args:
        seconds: Delay used when the error carries no retry_after hint

    Returns:
        Callable mapping the caught error to a delay in seconds
    """
    def _policy(error: Exception) -> float:
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None and retry_after > 0:
            return float(retry_after)
        return float(seconds)

    return _policy


def with_retry(func: Callable[[], T],
               is_retryable: Callable[[Exception], bool],
               backoff: Callable[[Exception], float],
               max_attempts: Optional[int] = None,
               sleep: Callable[[float], None] = time.sleep) -> T:
    """
    Call a function until it succeeds, sleeping between retryable failures.

    Args:
        func: The function to call
        is_retryable: Predicate deciding whether an error is worth retrying
        backoff: Maps the caught error to the delay before the next attempt
        max_attempts: Maximum number of attempts, None to retry forever
        sleep: Sleep function, injectable for tests

    Returns:
        The result of the function call

    Raises:
        The first non-retryable exception, or the last one once max_attempts is reached
    """
    attempt = 0
    while True:
        try:
            return func()
        except Exception as e:
            attempt += 1
            if not is_retryable(e):
                raise
            if max_attempts is not None and attempt >= max_attempts:
                raise

            wait_time = backoff(e)
            logger.debug(f"Retryable error on attempt {attempt}, waiting {wait_time}s: {e}")
            sleep(wait_time)


def truncate_text(text: str, max_length: int = 100, add_ellipsis: bool = True) -> str:
    """
    Truncate text to a maximum length.

    Args:
        text: The text to truncate
        max_length: Maximum length
        add_ellipsis: Whether to add an ellipsis if text is truncated

    Returns:
        str: Truncated text
    """
    if not text or len(text) <= max_length:
        return text

    truncated = text[:max_length].rstrip()
    if add_ellipsis:
        truncated += "..."

    return truncated


def ensure_private_dir(directory: str, mode: int = 0o700) -> bool:
    """
    Ensure a directory exists, creating it with owner-only permissions if necessary.

    Warns (without failing) when a pre-existing directory is more permissive
    than requested.

    Args:
        directory: The directory path to check/create
        mode: Permissions to create the directory with

    Returns:
        bool: True if the directory had to be created

    Raises:
        NotADirectoryError: If the path exists but isn't a directory
        OSError: If the directory can't be created or inspected
    """
    if not os.path.exists(directory):
        logger.info(f"Attempting to create directory {directory}")
        os.makedirs(directory, mode=mode)
        # makedirs is subject to the umask
        os.chmod(directory, mode)
        logger.info(f"Directory created: {directory}")
        return True

    if not os.path.isdir(directory):
        raise NotADirectoryError(f"{directory} already exists but isn't a directory")

    current = stat.S_IMODE(os.stat(directory).st_mode)
    if current != mode:
        logger.warning(
            f"The mode of {directory} is {current:o}. In order to ensure maximum security, "
            f"it is recommended to set this to {mode:o} (using 'chmod {mode:o}' for example)."
        )
    return False
