"""
Matrix Service Module

This module is the gateway to the messaging network. It talks to a Matrix
homeserver's client-server API to send news events to the Informo room and
to upload media, and reports rate limiting as a distinct error so callers
can retry.
"""

import mimetypes
import os
import uuid
from typing import Any, Dict, Optional
from urllib.parse import quote, urlparse

import requests

from config import settings
from utils.exceptions import MediaUploadError, PublishError, RateLimitedError
from utils.logger import get_logger

logger = get_logger(__name__)


class MatrixService:
    """Service for the Matrix client-server API."""

    def __init__(self, homeserver: Optional[str] = None, access_token: Optional[str] = None,
                 user_id: Optional[str] = None, session: Optional[requests.Session] = None):
        """
        Initialize the Matrix service.

        Args:
            homeserver: Base URL of the homeserver, defaults to settings.MATRIX_HOMESERVER
            access_token: Access token of the feeder's account
            user_id: The feeder's Matrix ID, for logging
            session: HTTP session to use, a new one is created if omitted
        """
        self.homeserver = (homeserver or settings.MATRIX_HOMESERVER).rstrip("/")
        self.access_token = access_token or settings.MATRIX_ACCESS_TOKEN
        self.user_id = user_id or settings.MATRIX_USER_ID
        self.timeout = settings.HTTP_TIMEOUT
        self.media_timeout = settings.MEDIA_TIMEOUT

        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {self.access_token}",
            "User-Agent": settings.USER_AGENT,
        })

    @staticmethod
    def new_transaction_id() -> str:
        return uuid.uuid4().hex

    def _raise_for_response(self, response: requests.Response, error_cls=PublishError) -> None:
        """Turn an error response from the homeserver into the matching exception."""
        if 200 <= response.status_code < 300:
            return

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        errcode = body.get("errcode", "")
        message = body.get("error", response.text[:200] if response.text else "")

        if response.status_code == 429 or errcode == "M_LIMIT_EXCEEDED":
            retry_after_ms = body.get("retry_after_ms")
            retry_after = retry_after_ms / 1000.0 if isinstance(retry_after_ms, (int, float)) else None
            header = response.headers.get("Retry-After")
            if retry_after is None and header and header.isdigit():
                retry_after = float(header)
            logger.debug(f"Got 429 Too Many Requests, retry after {retry_after}")
            raise RateLimitedError(f"Rate limited by homeserver: {message}", retry_after=retry_after)

        logger.debug(f"HTTP error isn't 429 Too Many Requests: {response.status_code} {errcode} {message}")
        raise error_cls(f"Homeserver returned {response.status_code} {errcode}: {message}",
                        status_code=response.status_code)

    def send_message(self, room_id: str, event_type: str, payload: Dict[str, Any],
                     txn_id: Optional[str] = None) -> str:
        """
        Send a message event to a room.

        Args:
            room_id: The room to send the event to
            event_type: The event type, e.g. network.informo.news.<identifier>
            payload: The event content
            txn_id: Transaction ID. Reusing it when retrying makes the send idempotent.

        Returns:
            str: The event ID assigned by the homeserver

        Raises:
            RateLimitedError: If the homeserver asks us to slow down
            PublishError: For any other failure
        """
        txn_id = txn_id or self.new_transaction_id()
        url = (f"{self.homeserver}/_matrix/client/v3/rooms/{quote(room_id, safe='')}"
               f"/send/{quote(event_type, safe='')}/{quote(txn_id, safe='')}")

        try:
            response = self.session.put(url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise PublishError(f"Could not reach homeserver {self.homeserver}: {e}") from e

        self._raise_for_response(response)

        try:
            event_id = response.json()["event_id"]
        except (ValueError, KeyError, TypeError) as e:
            raise PublishError(f"Unexpected response to send: {response.text[:200]}") from e

        logger.debug(f"Sent {event_type} event {event_id} to {room_id}")
        return event_id

    def download(self, url: str) -> requests.Response:
        """Download an external media file."""
        if url.startswith("//"):
            url = "https:" + url
        try:
            response = requests.get(url, headers=settings.REQUEST_HEADERS, timeout=self.media_timeout)
        except requests.RequestException as e:
            raise MediaUploadError(f"Could not download {url}: {e}") from e
        if not 200 <= response.status_code < 300:
            raise MediaUploadError(f"Could not download {url}: HTTP {response.status_code}",
                                   status_code=response.status_code)
        return response

    def upload_blob(self, url: str) -> str:
        """
        Copy an external media file to the homeserver's media repository.

        Args:
            url: Absolute or protocol-relative URL of the file

        Returns:
            str: The mxc:// content URI of the uploaded copy

        Raises:
            RateLimitedError: If the homeserver asks us to slow down
            MediaUploadError: For any other failure
        """
        media = self.download(url)

        filename = os.path.basename(urlparse(url).path) or "media"
        content_type = media.headers.get("Content-Type") or mimetypes.guess_type(filename)[0] \
            or "application/octet-stream"

        try:
            response = self.session.post(
                f"{self.homeserver}/_matrix/media/v3/upload",
                params={"filename": filename},
                data=media.content,
                headers={"Content-Type": content_type},
                timeout=self.media_timeout
            )
        except requests.RequestException as e:
            raise MediaUploadError(f"Could not reach homeserver {self.homeserver}: {e}") from e

        self._raise_for_response(response, MediaUploadError)

        try:
            content_uri = response.json()["content_uri"]
        except (ValueError, KeyError, TypeError) as e:
            raise MediaUploadError(f"Unexpected response to upload: {response.text[:200]}") from e

        logger.debug(f"Uploaded {url} as {content_uri}")
        return content_uri
