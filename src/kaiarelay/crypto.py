"""Cryptographic utilities for secure key storage.

Uses Fernet (AES-128-CBC with HMAC) for symmetric encryption of the fee
payer key at rest.
"""

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from kaiarelay.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Fernet tokens are base64 and always start with this prefix
FERNET_PREFIX = "gAAAAA"


def generate_master_key() -> str:
    """Generate a new master encryption key.

    Returns:
        Base64-encoded 32-byte key suitable for Fernet
    """
    return Fernet.generate_key().decode()


class SecretEncryptor:
    """Encrypts and decrypts secrets using Fernet.

    Usage:
        encryptor = SecretEncryptor(master_key)
        encrypted = encryptor.encrypt("0x...")
        decrypted = encryptor.decrypt(encrypted)
    """

    def __init__(self, master_key: str):
        """Initialize with master encryption key.

        Args:
            master_key: Base64-encoded Fernet key (32 bytes)
        """
        self._fernet = Fernet(master_key.encode())

    def encrypt(self, secret: str) -> str:
        """Encrypt a secret string."""
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: str) -> str:
        """Decrypt a Fernet token.

        Raises:
            InvalidToken: If decryption fails (wrong key or corrupted data)
        """
        return self._fernet.decrypt(token.encode()).decode()


def is_encrypted(value: str) -> bool:
    return value.startswith(FERNET_PREFIX)


def decrypt_secret(value: str, master_key: Optional[str]) -> str:
    """Return the plaintext of a possibly encrypted secret.

    Plain values are returned unchanged. Encrypted values require the
    master key; a missing or wrong key is a configuration error.

    Args:
        value: Plain secret or Fernet token
        master_key: Fernet master key, if configured

    Returns:
        Plaintext secret
    """
    if not is_encrypted(value):
        return value

    if not master_key:
        raise ConfigurationError("Secret is encrypted but MASTER_KEY is not set")

    try:
        return SecretEncryptor(master_key).decrypt(value)
    except (InvalidToken, ValueError) as e:
        logger.error("Failed to decrypt secret with configured MASTER_KEY")
        raise ConfigurationError("Secret could not be decrypted with MASTER_KEY") from e
