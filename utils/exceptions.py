"""
Custom Exception Classes for the Informo Feeder

This module defines custom exceptions for better error handling and
categorization of failures across the application.
"""

from typing import Optional


class FeederError(Exception):
    """Base exception for all Informo Feeder errors."""
    pass


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(FeederError):
    """Raised when configuration validation fails or required settings are missing."""
    pass


# =============================================================================
# Feed Source Errors
# =============================================================================

class TransientSourceError(FeederError):
    """Raised when a feed cannot be fetched or parsed for this poll cycle."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ItemContentMissing(FeederError):
    """Raised when a feed item has no HTML content to publish."""
    pass


# =============================================================================
# Signing Errors
# =============================================================================

class SigningError(FeederError):
    """Base exception for content signing errors."""
    pass


class KeyNotFound(SigningError):
    """Raised when no signing identity exists for a feed identifier."""
    pass


class DecryptionFailed(SigningError):
    """Raised when a protected private key cannot be unlocked."""
    pass


class SerializationFailed(SigningError):
    """Raised when content cannot be canonicalized for signing."""
    pass


# =============================================================================
# Storage Errors
# =============================================================================

class StorageError(FeederError):
    """Base exception for ledger and key store errors."""
    pass


class StorageUnavailable(StorageError):
    """Raised when the backing directory or database cannot be used."""
    pass


class CorruptKeyRecord(StorageError):
    """Raised when a persisted key record isn't an Informo feeder private key."""
    pass


class LedgerError(StorageError):
    """Raised when a ledger query fails."""
    pass


# =============================================================================
# Publishing Errors
# =============================================================================

class PublishError(FeederError):
    """Raised when the messaging network rejects a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(PublishError):
    """Raised when the homeserver answers 429 Too Many Requests."""

    def __init__(self, message: str = "Rate limited", retry_after: Optional[float] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class MediaUploadError(PublishError):
    """Raised when a media file cannot be downloaded or uploaded."""
    pass
