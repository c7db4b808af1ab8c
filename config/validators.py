"""
Configuration Validation for the Informo Feeder

This module contains configuration validation logic.
Kept apart from settings.py for better separation of concerns.
"""

import os

from utils.exceptions import ConfigurationError
from utils.helpers import is_valid_url


def validate_settings(test_mode: bool = False):
    """
    Validate that all required settings are properly configured.

    Args:
        test_mode: When True, Matrix credentials aren't required since nothing is sent

    Raises:
        ConfigurationError: If required settings are missing or invalid.
    """
    # Import settings here to avoid circular imports
    from config import settings

    errors = []

    # Matrix credentials are only needed when events are actually sent
    if not test_mode:
        required_vars = [
            ("MATRIX_HOMESERVER", settings.MATRIX_HOMESERVER),
            ("MATRIX_ACCESS_TOKEN", settings.MATRIX_ACCESS_TOKEN),
            ("MATRIX_ROOM_ID", settings.MATRIX_ROOM_ID),
        ]

        for var_name, var_value in required_vars:
            if not var_value:
                errors.append(f"Missing required environment variable: {var_name}")

        if settings.MATRIX_HOMESERVER and not is_valid_url(settings.MATRIX_HOMESERVER):
            errors.append(f"MATRIX_HOMESERVER is not a valid URL: {settings.MATRIX_HOMESERVER}")

    if not settings.EVENT_TYPE_PREFIX:
        errors.append("EVENT_TYPE_PREFIX must not be empty")

    # Signing strategy
    if settings.SIGNING_STRATEGY not in settings.SIGNING_STRATEGIES:
        errors.append(f"SIGNING_STRATEGY must be one of {settings.SIGNING_STRATEGIES}, "
                      f"got {settings.SIGNING_STRATEGY!r}")
    elif settings.SIGNING_STRATEGY == "ed25519":
        if not settings.KEYS_DIRECTORY:
            errors.append("KEYS_DIRECTORY is required with the ed25519 signing strategy")
    elif settings.SIGNING_STRATEGY == "pgp":
        if settings.PGP_USE_AGENT:
            if not settings.PGP_KEY_ID:
                errors.append("PGP_USE_AGENT is true but PGP_KEY_ID is not configured")
        elif not settings.PGP_KEY_FILE:
            errors.append("PGP_KEY_FILE is required with the pgp signing strategy")
        elif not os.path.isfile(settings.PGP_KEY_FILE):
            errors.append(f"PGP_KEY_FILE does not exist: {settings.PGP_KEY_FILE}")

    # Storage
    if settings.LEDGER_MODEL not in settings.LEDGER_MODELS:
        errors.append(f"LEDGER_MODEL must be one of {settings.LEDGER_MODELS}, "
                      f"got {settings.LEDGER_MODEL!r}")
    if not settings.DATABASE_PATH:
        errors.append("DATABASE_PATH must not be empty")

    # Validate numeric settings are within reasonable bounds
    numeric_validations = [
        ("DEFAULT_POLL_INTERVAL", settings.DEFAULT_POLL_INTERVAL, 1, 7 * 24 * 3600),
        ("HTTP_TIMEOUT", settings.HTTP_TIMEOUT, 1, 600),
        ("MEDIA_TIMEOUT", settings.MEDIA_TIMEOUT, 1, 600),
        ("RATE_LIMIT_BACKOFF_SECONDS", settings.RATE_LIMIT_BACKOFF_SECONDS, 1, 3600),
    ]

    for name, value, min_val, max_val in numeric_validations:
        if value < min_val or value > max_val:
            errors.append(f"{name} must be between {min_val} and {max_val}, got {value}")

    # Raise all errors at once
    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ConfigurationError(error_msg)

    return True


def get_config_summary() -> dict:
    """
    Returns a summary of current configuration (without sensitive values).
    Useful for logging startup state.
    """
    # Import settings here to avoid circular imports
    from config import settings

    return {
        "matrix": {
            "homeserver": settings.MATRIX_HOMESERVER,
            "user_id": settings.MATRIX_USER_ID,
            "room_id": settings.MATRIX_ROOM_ID,
            "access_token_configured": bool(settings.MATRIX_ACCESS_TOKEN),
            "event_type_prefix": settings.EVENT_TYPE_PREFIX,
        },
        "signing": {
            "strategy": settings.SIGNING_STRATEGY,
            "keys_directory": settings.KEYS_DIRECTORY if settings.SIGNING_STRATEGY == "ed25519" else None,
            "pgp_source": ("agent" if settings.PGP_USE_AGENT else "file")
            if settings.SIGNING_STRATEGY == "pgp" else None,
        },
        "storage": {
            "database": settings.DATABASE_PATH,
            "ledger_model": settings.LEDGER_MODEL,
        },
        "network": {
            "http_timeout": settings.HTTP_TIMEOUT,
            "rate_limit_backoff": settings.RATE_LIMIT_BACKOFF_SECONDS,
        },
    }
