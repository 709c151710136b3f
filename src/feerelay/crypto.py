"""Encryption helpers for the fee payer key at rest.

Uses Fernet (AES-128-CBC with HMAC) for symmetric encryption.
"""

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

# Fernet tokens are base64 and always start with this version prefix
FERNET_PREFIX = "gAAAAA"


def generate_master_key() -> str:
    """Generate a new master encryption key.

    Returns:
        Base64-encoded 32-byte key suitable for Fernet
    """
    return Fernet.generate_key().decode()


class KeyEncryptor:
    """Encrypts and decrypts private keys using Fernet.

    Usage:
        encryptor = KeyEncryptor(master_key)
        encrypted = encryptor.encrypt("0x...")
        decrypted = encryptor.decrypt(encrypted)
    """

    def __init__(self, master_key: str):
        self._fernet = Fernet(master_key.encode())

    def encrypt(self, secret: str) -> str:
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, token: str) -> str:
        """Decrypt a Fernet token.

        Raises:
            InvalidToken: If decryption fails (wrong key or corrupted data)
        """
        return self._fernet.decrypt(token.encode()).decode()


def encrypt_private_key(private_key: str, master_key: Optional[str] = None) -> tuple[str, str]:
    """Encrypt a fee payer key, generating a master key when none is given.

    Returns:
        (encrypted_key, master_key)
    """
    master_key = master_key or generate_master_key()
    return KeyEncryptor(master_key).encrypt(private_key), master_key


def decrypt_private_key(value: str, master_key: Optional[str]) -> str:
    """Return the plain private key for a configured value.

    Plain hex keys are returned as-is. Encrypted values require the master
    key; a missing or wrong key raises ``ValueError``.
    """
    if not value.startswith(FERNET_PREFIX):
        return value

    if not master_key:
        raise ValueError("Fee payer key is encrypted but MASTER_KEY is not set")

    try:
        return KeyEncryptor(master_key).decrypt(value)
    except InvalidToken as e:
        logger.error("Failed to decrypt fee payer key - wrong MASTER_KEY?")
        raise ValueError("Could not decrypt fee payer key") from e
