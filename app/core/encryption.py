"""Encryption of session credential material at rest.

Uses Fernet symmetric encryption. Values written while a key is configured
carry an ``enc:`` prefix; values without it are read back as plaintext so a
store created before a key was configured keeps working.
"""

import json
import logging
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

ENCRYPTED_PREFIX = "enc:"


class EncryptionError(Exception):
    """Raised when encryption/decryption fails."""
    pass


class CredentialCipher:
    """Serialize and (optionally) encrypt credential payloads."""

    def __init__(self, key: str | None = None) -> None:
        self._fernet: Fernet | None = None
        if key:
            try:
                self._fernet = Fernet(key.encode())
            except Exception as e:
                raise EncryptionError(f"Invalid field encryption key: {e}") from e
        else:
            logger.warning("No field encryption key configured - credentials stored as plaintext")

    @property
    def is_enabled(self) -> bool:
        return self._fernet is not None

    def encrypt_json(self, value: Any) -> str:
        """Serialize a JSON-compatible value, encrypting it when enabled."""
        plaintext = json.dumps(value, sort_keys=True)
        if not self._fernet:
            return plaintext
        try:
            return ENCRYPTED_PREFIX + self._fernet.encrypt(plaintext.encode()).decode()
        except Exception as e:
            raise EncryptionError(f"Failed to encrypt value: {e}") from e

    def decrypt_json(self, stored: str) -> Any:
        """Inverse of ``encrypt_json``.

        Raises:
            EncryptionError: If the value is encrypted and cannot be decrypted
        """
        if stored.startswith(ENCRYPTED_PREFIX):
            if not self._fernet:
                raise EncryptionError("Cannot decrypt: encryption key not configured")
            try:
                stored = self._fernet.decrypt(stored[len(ENCRYPTED_PREFIX):].encode()).decode()
            except InvalidToken:
                raise EncryptionError("Failed to decrypt: invalid token or wrong key")
        return json.loads(stored)


def generate_encryption_key() -> str:
    """Generate a new Fernet key suitable for FIELD_ENCRYPTION_KEY."""
    return Fernet.generate_key().decode()
