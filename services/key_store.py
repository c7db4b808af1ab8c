"""
Key Store Module

This module owns the Ed25519 signing identity of each feed. A 32-byte random
seed is generated the first time a feed identifier is seen, saved as a PEM
block of type "INFORMO FEEDER PRIVATE KEY" in <directory>/<identifier>.pem,
and the key pair is derived from it on every load. The seed is never
regenerated: losing it breaks the continuity of a feed's signatures.
"""

import base64
import binascii
import os
import re
import textwrap
from typing import Optional, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from config import settings
from data.models import SigningIdentity
from utils.exceptions import CorruptKeyRecord, KeyNotFound, StorageUnavailable
from utils.helpers import ensure_private_dir
from utils.logger import get_logger

logger = get_logger(__name__)

PEM_BLOCK = re.compile(
    r"-----BEGIN (?P<type>[^-]+)-----\s*(?P<body>.*?)\s*-----END (?P=type)-----",
    re.DOTALL
)


def encode_pem(block_type: str, data: bytes) -> str:
    """Encode bytes as a PEM block with the given type label."""
    body = "\n".join(textwrap.wrap(base64.b64encode(data).decode("ascii"), 64))
    return f"-----BEGIN {block_type}-----\n{body}\n-----END {block_type}-----\n"


def decode_pem(text: str) -> Tuple[str, bytes]:
    """
    Decode the first PEM block found in a text.

    Returns:
        Tuple[str, bytes]: The block's type label and its decoded body.

    Raises:
        ValueError: If there's no PEM block or its body isn't valid base64.
    """
    match = PEM_BLOCK.search(text)
    if not match:
        raise ValueError("No PEM block found")
    try:
        data = base64.b64decode("".join(match.group("body").split()), validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid PEM body: {e}") from e
    return match.group("type"), data


def identity_from_seed(identifier: str, seed: bytes) -> SigningIdentity:
    """Derive the Ed25519 key pair of a feed from its seed."""
    private_key = Ed25519PrivateKey.from_private_bytes(seed)
    public_key = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )
    return SigningIdentity(identifier=identifier, public_key=public_key, private_key=seed)


class KeyStore:
    """File-backed store of per-feed signing identities."""

    def __init__(self, directory: Optional[str] = None):
        """
        Initialize the key store.

        Args:
            directory: Where key files live, defaults to settings.KEYS_DIRECTORY
        """
        self.directory = directory or settings.KEYS_DIRECTORY
        self.envelope_type = settings.KEY_ENVELOPE_TYPE
        self.seed_length = settings.KEY_SEED_LENGTH
        self._directory_checked = False

    def key_path(self, identifier: str) -> str:
        return os.path.join(self.directory, f"{identifier}.pem")

    def _ensure_directory(self) -> None:
        if self._directory_checked:
            return
        try:
            ensure_private_dir(self.directory)
        except OSError as e:
            raise StorageUnavailable(f"Keys directory {self.directory} is unusable: {e}") from e
        self._directory_checked = True

    def get_or_create_identity(self, identifier: str) -> SigningIdentity:
        """
        Return the signing identity of a feed, generating and persisting it
        first if there's none yet.

        Args:
            identifier: The feed's identifier

        Returns:
            SigningIdentity: The feed's key pair

        Raises:
            StorageUnavailable: If the keys directory or key file can't be used
            CorruptKeyRecord: If the key file isn't an Informo feeder private key
        """
        self._ensure_directory()
        path = self.key_path(identifier)

        if os.path.exists(path):
            identity = self._load_from_file(path, identifier)
            logger.info(f"Loaded keys for {identifier}, public key: {public_key_b64(identity)}")
            return identity

        identity = self._generate_and_save(path, identifier)
        logger.info(f"Generated keys for {identifier}, public key: {public_key_b64(identity)}")
        return identity

    def load_identity(self, identifier: str) -> SigningIdentity:
        """
        Load the signing identity of a feed without ever creating one.

        Raises:
            KeyNotFound: If no key file exists for this identifier
            StorageUnavailable: If the key file can't be read
            CorruptKeyRecord: If the key file isn't an Informo feeder private key
        """
        path = self.key_path(identifier)
        if not os.path.exists(path):
            raise KeyNotFound(f"No signing key for {identifier} in {self.directory}")
        return self._load_from_file(path, identifier)

    def _generate_and_save(self, path: str, identifier: str) -> SigningIdentity:
        seed = os.urandom(self.seed_length)

        # The seed must be on disk before the key is ever used
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "w", encoding="ascii") as key_out:
                key_out.write(encode_pem(self.envelope_type, seed))
                key_out.flush()
                os.fsync(key_out.fileno())
        except FileExistsError:
            # Another process won the race, use its key
            return self._load_from_file(path, identifier)
        except OSError as e:
            raise StorageUnavailable(f"Could not save key for {identifier} to {path}: {e}") from e

        identity = identity_from_seed(identifier, seed)

        logger.warning(
            f"A key pair has been generated for the source {identifier}. "
            f"The private key is located at {path}. "
            f"The public key is {public_key_b64(identity)}. "
            f"Please let the Informo moderation team know about your new public key "
            f"in order for your news to be verified by the users."
        )
        return identity

    def _load_from_file(self, path: str, identifier: str) -> SigningIdentity:
        try:
            with open(path, "r", encoding="ascii") as f:
                content = f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise StorageUnavailable(f"Could not read key file {path}: {e}") from e

        try:
            block_type, seed = decode_pem(content)
        except ValueError as e:
            logger.error(f"Key file for {identifier} is not a valid PEM file: {e}")
            raise CorruptKeyRecord(f"Key file {path} is not a valid PEM file: {e}") from e

        # Either the file was generated by another program or it has been tampered with
        if block_type != self.envelope_type:
            logger.error(f"Key for {identifier} isn't an informo feeder private key ({block_type})")
            raise CorruptKeyRecord(f"Key file {path} isn't an informo feeder private key: {block_type}")

        if len(seed) != self.seed_length:
            raise CorruptKeyRecord(
                f"Key file {path} holds a {len(seed)}-byte seed, expected {self.seed_length}"
            )

        return identity_from_seed(identifier, seed)


def public_key_b64(identity: SigningIdentity) -> str:
    """Public key as standard base64, the format clients read."""
    return base64.b64encode(identity.public_key).decode("ascii")
