"""
Content Signer Module

Signs the publishable part of a news event so readers can check which source
it comes from. The detached-key strategy lives here; the PGP strategy lives
in services.pgp_signer so its dependency is only imported when it's used.
"""

import base64
import binascii
import json
from typing import Dict, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from data.models import PublishableContent, SigningIdentity
from services.key_store import KeyStore
from utils.exceptions import SerializationFailed
from utils.logger import get_logger

logger = get_logger(__name__)


def canonical_json(fields: Dict[str, object]) -> bytes:
    """
    Encode a mapping as canonical JSON: sorted keys, no insignificant
    whitespace, UTF-8 without escaping non-ASCII characters.

    Raises:
        SerializationFailed: If the mapping can't be encoded
    """
    try:
        return json.dumps(
            fields,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False
        ).encode("utf-8")
    except (TypeError, ValueError, UnicodeEncodeError) as e:
        raise SerializationFailed(f"Could not canonicalize content: {e}") from e


def signing_payload(content: PublishableContent) -> bytes:
    """The exact bytes the Ed25519 signature covers."""
    return canonical_json(content.signable_fields())


class Ed25519Signer:
    """
    Detached-key signer: each feed signs with its own Ed25519 key.

    An instance is owned by one feed task; identities are cached per instance.
    """

    def __init__(self, key_store: KeyStore):
        self.key_store = key_store
        self._identities: Dict[str, SigningIdentity] = {}

    def add_identity(self, identity: SigningIdentity) -> None:
        self._identities[identity.identifier] = identity

    def _identity(self, identifier: str) -> SigningIdentity:
        identity = self._identities.get(identifier)
        if identity is None:
            identity = self.key_store.load_identity(identifier)
            self._identities[identifier] = identity
        return identity

    def sign(self, content: PublishableContent, identifier: str) -> PublishableContent:
        """
        Sign a news event's content with the feed's private key.

        Args:
            content: The content to sign. Its current signature, if any, is ignored.
            identifier: The identifier of the feed the content comes from

        Returns:
            PublishableContent: A copy of the content with a base64 signature

        Raises:
            KeyNotFound: If the feed has no signing key
            SerializationFailed: If the content can't be canonicalized
        """
        identity = self._identity(identifier)
        payload = signing_payload(content)
        private_key = Ed25519PrivateKey.from_private_bytes(identity.private_key)
        signature = base64.b64encode(private_key.sign(payload)).decode("ascii")
        logger.debug(f"Signed content for {identifier}: {content.link}")
        return content.with_signature(signature)


def verify_content(content: PublishableContent, public_key: bytes) -> bool:
    """
    Check an Ed25519 signature against the content it was attached to.

    Args:
        content: Signed content
        public_key: The raw 32-byte public key of the feed

    Returns:
        bool: True if the signature matches the content
    """
    if not content.signature:
        return False
    try:
        signature = base64.b64decode(content.signature, validate=True)
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, signing_payload(content))
        return True
    except (InvalidSignature, binascii.Error, ValueError, SerializationFailed):
        return False


def create_signer(strategy: str, key_store: Optional[KeyStore] = None, **pgp_options):
    """
    Create a signer for the configured strategy.

    Args:
        strategy: "ed25519" or "pgp"
        key_store: Key store for the ed25519 strategy
        **pgp_options: Passed to PGPSigner.from_settings for the pgp strategy

    Returns:
        A ContentSigner implementation
    """
    if strategy == "ed25519":
        return Ed25519Signer(key_store or KeyStore())
    if strategy == "pgp":
        from services.pgp_signer import PGPSigner
        return PGPSigner.from_settings(**pgp_options)
    raise ValueError(f"Unknown signing strategy: {strategy}")
