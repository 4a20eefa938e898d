"""
Encryption of stored target credentials.

Uses Fernet symmetric encryption for secure at-rest storage.
"""

from __future__ import annotations

import os

import structlog
from cryptography.fernet import Fernet, InvalidToken

from panelrunner.errors import StorageError

logger = structlog.get_logger(__name__)


class CredentialCipher:
    """Encrypts and decrypts usernames and passwords for the credentials table."""

    def __init__(self, encryption_key: bytes | str | None = None) -> None:
        """
        Initialize the cipher.

        Args:
            encryption_key: Fernet key. If None, reads PANELRUNNER_CREDENTIAL_KEY
                           or generates a temporary key (lost on restart).
        """
        if not encryption_key:
            encryption_key = os.environ.get("PANELRUNNER_CREDENTIAL_KEY")
        if not encryption_key:
            logger.warning(
                "No credential key provided, generating temporary key. "
                "Stored credentials will be unreadable after restart!"
            )
            encryption_key = Fernet.generate_key()
        if isinstance(encryption_key, str):
            encryption_key = encryption_key.encode()

        self._fernet = Fernet(encryption_key)
        self._log = logger.bind(component="credential_cipher")

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, encrypted_text: str) -> str:
        """
        Decrypt a value written by ``encrypt``.

        Raises:
            StorageError: If the value was written with a different key
        """
        try:
            return self._fernet.decrypt(encrypted_text.encode()).decode()
        except InvalidToken as e:
            self._log.error("Decryption failed")
            raise StorageError("Stored credential cannot be decrypted with the current key") from e

    def encrypt_optional(self, value: str | None) -> str | None:
        return self.encrypt(value) if value else None

    def decrypt_optional(self, value: str | None) -> str:
        return self.decrypt(value) if value else ""
