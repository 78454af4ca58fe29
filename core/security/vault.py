"""Symmetric encryption of broker secrets at rest."""

from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from core.utils.exceptions import ConfigurationError, DecryptionError


class CredentialVault:
    """Fernet-backed encrypt/decrypt of secrets.

    Stateless beyond the key; one instance is shared by every caller.
    """

    def __init__(self, key: str):
        try:
            self._fernet = Fernet(key.encode("ascii") if isinstance(key, str) else key)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid vault encryption key: {e}") from e

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("ascii")

    def encrypt(self, plaintext: str) -> str:
        if plaintext is None:
            raise ValueError("Cannot encrypt None")
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext:
            raise DecryptionError("Ciphertext is empty")
        try:
            token = ciphertext.encode("ascii")
        except (UnicodeEncodeError, AttributeError) as e:
            raise DecryptionError("Ciphertext is malformed") from e
        try:
            return self._fernet.decrypt(token).decode("utf-8")
        except InvalidToken as e:
            raise DecryptionError("Ciphertext was tampered with or encrypted under another key") from e

    def encrypt_optional(self, plaintext: Optional[str]) -> Optional[str]:
        return self.encrypt(plaintext) if plaintext else None

    def decrypt_optional(self, ciphertext: Optional[str]) -> Optional[str]:
        return self.decrypt(ciphertext) if ciphertext else None
