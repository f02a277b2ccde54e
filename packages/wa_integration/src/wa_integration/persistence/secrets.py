"""
Account secret encryption.

Gateway-issued account secrets are stored as Fernet tokens keyed by
ENCRYPTION_KEY. Without a key, secrets are stored as-is (development only).
"""

import logging

from cryptography.fernet import Fernet, InvalidToken

from wacore.settings import get_settings

logger = logging.getLogger(__name__)


class SecretDecryptionError(ValueError):
    """Stored secret cannot be decrypted with the configured key."""


def _fernet(encryption_key: str | None) -> Fernet | None:
    key = encryption_key if encryption_key is not None else get_settings().ENCRYPTION_KEY
    if not key:
        return None
    return Fernet(key.encode())


def encrypt_secret(secret: str, encryption_key: str | None = None) -> str:
    """Encrypt an account secret for storage."""
    fernet = _fernet(encryption_key)
    if fernet is None:
        logger.warning("ENCRYPTION_KEY not set, storing account secret unencrypted")
        return secret
    return fernet.encrypt(secret.encode()).decode()


def decrypt_secret(token: str, encryption_key: str | None = None) -> str:
    """
    Decrypt a stored account secret.

    Raises:
        SecretDecryptionError: If the token was produced with another key
    """
    fernet = _fernet(encryption_key)
    if fernet is None:
        return token
    try:
        return fernet.decrypt(token.encode()).decode()
    except InvalidToken as e:
        raise SecretDecryptionError("stored secret cannot be decrypted") from e
