"""Fernet encryption for free-text notes at rest.

Numeric readings stay in the clear so the engine can aggregate and index
them. Notes a user attaches to a log or lab result may contain anything, so
they are encrypted before they reach SQLite.
"""

from __future__ import annotations

import logging

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class EncryptionError(Exception):
    """Raised when a note cannot be encrypted or decrypted."""


class FieldEncryptor:
    """Encrypts note text to Fernet tokens and back.

    Usage::

        encryptor = FieldEncryptor(key="...")
        token = encryptor.encrypt("felt dizzy after the run")
        encryptor.decrypt(token)  # "felt dizzy after the run"
    """

    def __init__(self, key: str) -> None:
        """
        Raises:
            EncryptionError: If the key is empty or not a Fernet key.
        """
        if not key or not key.strip():
            raise EncryptionError("Encryption key must not be empty")
        try:
            self._fernet = Fernet(key.strip().encode())
        except ValueError as exc:
            raise EncryptionError(f"Invalid encryption key: {exc}") from exc

    def encrypt(self, text: str | None) -> str | None:
        """Encrypt a note. ``None`` and empty notes are stored as NULL."""
        if not text:
            return None
        return self._fernet.encrypt(text.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str | None) -> str | None:
        """Decrypt a stored token back to the note text.

        Raises:
            EncryptionError: If the token is corrupt or was made with another key.
        """
        if not token:
            return None
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            raise EncryptionError("Decryption failed: invalid token or wrong key") from exc

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("ascii")
