"""Keyring-backed storage for OAuth tokens.

Access and refresh tokens live in the system keyring (Secret Service,
KWallet, macOS Keychain, ...). When no working backend exists the caller
keeps them in settings.json, which is then chmod 600.
"""

import logging
import os
import stat

import keyring
from keyring.backends.fail import Keyring as FailKeyring
from keyring.errors import KeyringError, PasswordDeleteError

logger = logging.getLogger(__name__)

SERVICE_NAME = "livestream-events"

KEY_TWITCH_ACCESS_TOKEN = "twitch_access_token"
KEY_TWITCH_REFRESH_TOKEN = "twitch_refresh_token"
KEY_YOUTUBE_ACCESS_TOKEN = "youtube_access_token"
KEY_YOUTUBE_REFRESH_TOKEN = "youtube_refresh_token"

_keyring_available: bool | None = None


def _check_keyring() -> bool:
    """Probe the keyring once and cache the answer."""
    global _keyring_available
    if _keyring_available is not None:
        return _keyring_available

    try:
        backend = keyring.get_keyring()
        if isinstance(backend, FailKeyring):
            logger.info("No usable keyring backend, tokens stay in settings.json")
            _keyring_available = False
            return False

        keyring.set_password(SERVICE_NAME, "_probe", "ok")
        probe = keyring.get_password(SERVICE_NAME, "_probe")
        keyring.delete_password(SERVICE_NAME, "_probe")
        _keyring_available = probe == "ok"
        logger.info(f"Keyring {type(backend).__name__} available: {_keyring_available}")
    except (KeyringError, RuntimeError, OSError) as e:
        logger.info(f"Keyring unavailable: {e}")
        _keyring_available = False

    return _keyring_available


def reset_availability() -> None:
    """Forget the cached probe result (backend changed, tests)."""
    global _keyring_available
    _keyring_available = None


def store_secret(key: str, value: str) -> bool:
    """Store a secret; an empty value deletes it.

    Returns False when the caller has to persist the value itself.
    """
    if not value:
        delete_secret(key)
        return True

    if not _check_keyring():
        return False

    try:
        keyring.set_password(SERVICE_NAME, key, value)
        return True
    except KeyringError as e:
        logger.warning(f"Could not store '{key}' in keyring: {e}")
        return False


def get_secret(key: str) -> str | None:
    """Return a stored secret, or None if missing or the keyring is unusable."""
    if not _check_keyring():
        return None

    try:
        return keyring.get_password(SERVICE_NAME, key)
    except KeyringError as e:
        logger.warning(f"Could not read '{key}' from keyring: {e}")
        return None


def delete_secret(key: str) -> None:
    """Remove a secret if present."""
    if not _check_keyring():
        return

    try:
        keyring.delete_password(SERVICE_NAME, key)
    except PasswordDeleteError:
        logger.debug(f"No keyring entry '{key}' to delete")
    except KeyringError as e:
        logger.warning(f"Could not delete '{key}' from keyring: {e}")


def is_available() -> bool:
    return _check_keyring()


def secure_file_permissions(filepath: str) -> None:
    """Restrict a file to its owner (chmod 600)."""
    try:
        os.chmod(filepath, stat.S_IRUSR | stat.S_IWUSR)
    except OSError as e:
        logger.debug(f"Could not set permissions on {filepath}: {e}")
