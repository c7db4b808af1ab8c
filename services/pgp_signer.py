"""
PGP Signer Module

Identity-based signing: one passphrase-protected PGP key signs the news of
every feed. The signed message is headline + description + content and the
signature is an ASCII-armored detached signature block.
"""

import subprocess
from typing import Optional

import pgpy
from pgpy.errors import PGPDecryptionError, PGPError

from config import settings
from data.models import PublishableContent
from utils.exceptions import CorruptKeyRecord, DecryptionFailed, KeyNotFound, StorageUnavailable
from utils.logger import get_logger

logger = get_logger(__name__)


def signing_message(content: PublishableContent) -> str:
    """The exact text the PGP signature covers."""
    return content.headline + content.description + content.content


def read_key_file(path: str) -> str:
    """Read an armored private key from a file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            return f.read()
    except OSError as e:
        raise StorageUnavailable(f"Could not read PGP key file {path}: {e}") from e


def export_key_from_agent(key_id: str) -> str:
    """
    Export an armored private key from the local gpg keyring.

    Raises:
        KeyNotFound: If gpg isn't available or doesn't know the key
    """
    try:
        result = subprocess.run(
            ["gpg", "--armor", "--export-secret-keys", key_id],
            capture_output=True,
            check=True,
            text=True
        )
    except FileNotFoundError as e:
        raise KeyNotFound("gpg is not installed, can't export the signing key") from e
    except subprocess.CalledProcessError as e:
        raise KeyNotFound(f"gpg could not export key {key_id}: {e.stderr.strip()}") from e

    if not result.stdout.strip():
        raise KeyNotFound(f"gpg has no secret key {key_id}")
    return result.stdout


class PGPSigner:
    """Signs content with a single PGP identity."""

    def __init__(self, armored_key: str, passphrase: str = ""):
        """
        Load the private key and check the passphrase unlocks it.

        Args:
            armored_key: The ASCII-armored private key
            passphrase: The key's passphrase, empty for an unprotected key

        Raises:
            CorruptKeyRecord: If the key can't be parsed or isn't a private key
            DecryptionFailed: If the passphrase is wrong
        """
        # pgpy raises all sorts of errors on malformed input
        try:
            key, _ = pgpy.PGPKey.from_blob(armored_key)
        except Exception as e:
            raise CorruptKeyRecord(f"Could not parse PGP key: {e}") from e

        if key.is_public:
            raise CorruptKeyRecord("Private key is in the wrong type: got a public key")

        self.key = key
        self.passphrase = passphrase
        self.fingerprint = str(key.fingerprint)

        # Fail at startup rather than on the first item
        if key.is_protected:
            try:
                with key.unlock(passphrase):
                    pass
            except PGPDecryptionError as e:
                raise DecryptionFailed(f"Wrong passphrase for PGP key {self.fingerprint}") from e

        logger.info(f"Loaded PGP signing key {self.fingerprint}, public key:\n{self.public_key}")

    @classmethod
    def from_settings(cls, key_file: Optional[str] = None, passphrase: Optional[str] = None,
                      use_agent: Optional[bool] = None, key_id: Optional[str] = None) -> "PGPSigner":
        """Build a signer from explicit options, falling back to settings."""
        use_agent = settings.PGP_USE_AGENT if use_agent is None else use_agent
        passphrase = settings.PGP_KEY_PASSPHRASE if passphrase is None else passphrase

        if use_agent:
            armored = export_key_from_agent(key_id or settings.PGP_KEY_ID)
        else:
            armored = read_key_file(key_file or settings.PGP_KEY_FILE)
        return cls(armored, passphrase)

    @property
    def public_key(self) -> str:
        return str(self.key.pubkey)

    def sign(self, content: PublishableContent, identifier: str) -> PublishableContent:
        """
        Sign a news event's content.

        pgpy only keeps the secret key material decrypted inside an unlock()
        block and wipes it on exit, so a protected key is unlocked for each
        signature. The passphrase itself was checked once at construction.

        Args:
            content: The content to sign. Its current signature, if any, is ignored.
            identifier: The identifier of the feed, for logging only

        Returns:
            PublishableContent: A copy of the content with an armored signature

        Raises:
            DecryptionFailed: If the key can't be unlocked
        """
        message = signing_message(content)
        try:
            if self.key.is_protected:
                with self.key.unlock(self.passphrase):
                    signature = self.key.sign(message)
            else:
                signature = self.key.sign(message)
        except PGPDecryptionError as e:
            raise DecryptionFailed(f"Could not unlock PGP key {self.fingerprint}: {e}") from e

        logger.debug(f"PGP-signed content for {identifier}: {content.link}")
        return content.with_signature(str(signature))


def verify_pgp_content(content: PublishableContent, public_key: pgpy.PGPKey) -> bool:
    """Check an armored detached signature against the content it was attached to."""
    if not content.signature:
        return False
    try:
        signature = pgpy.PGPSignature.from_blob(content.signature)
        return bool(public_key.verify(signing_message(content), signature))
    except (PGPError, ValueError, TypeError):
        return False
