"""
Install secret for data encrypted at rest.

The CryptoManager holds a Fernet key derived from ENCRYPTION_PASSWORD. It
encrypts export passphrases stored in the job store and source files kept
encrypted on disk (*.enc). Export jobs refuse to run until it is initialized.
"""

import os
import base64
from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


class CryptoManager:
    """Handles encryption and decryption with the install secret."""

    def __init__(self):
        self._fernet = None
        self._salt = None

    def initialize(self, password: str, salt: bytes = None) -> bytes:
        """
        Initialize the encryption manager with a password.

        Args:
            password: Password to derive the install key from
            salt: Optional salt (if None, generates new one)

        Returns:
            The salt used (persist it so the key can be derived again)
        """
        if salt is None:
            salt = os.urandom(16)

        self._salt = salt

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=480000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(password.encode()))

        self._fernet = Fernet(key)
        return salt

    def reset(self):
        """Forget the derived key."""
        self._fernet = None
        self._salt = None

    def _require_fernet(self) -> Fernet:
        if not self._fernet:
            raise RuntimeError("CryptoManager not initialized. Call initialize() first.")
        return self._fernet

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string for storage in a text column.

        Raises:
            RuntimeError: If crypto manager not initialized
        """
        encrypted_bytes = self._require_fernet().encrypt(plaintext.encode())
        return base64.urlsafe_b64encode(encrypted_bytes).decode()

    def decrypt(self, encrypted: str) -> str:
        """
        Decrypt a string produced by encrypt().

        Raises:
            RuntimeError: If crypto manager not initialized
            cryptography.fernet.InvalidToken: If decryption fails
        """
        encrypted_bytes = base64.urlsafe_b64decode(encrypted.encode())
        return self._require_fernet().decrypt(encrypted_bytes).decode()

    def encrypt_bytes(self, data: bytes) -> bytes:
        """Encrypt raw bytes (Fernet token)."""
        return self._require_fernet().encrypt(data)

    def decrypt_bytes(self, token: bytes) -> bytes:
        """
        Decrypt a Fernet token produced by encrypt_bytes().

        Raises:
            RuntimeError: If crypto manager not initialized
            cryptography.fernet.InvalidToken: If decryption fails
        """
        return self._require_fernet().decrypt(token)

    @property
    def is_initialized(self) -> bool:
        """Check if the crypto manager has been initialized."""
        return self._fernet is not None


# Global instance, initialized by create_app() from ENCRYPTION_PASSWORD
crypto_manager = CryptoManager()
