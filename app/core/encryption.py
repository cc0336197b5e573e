"""AES-256-GCM encryption for payment identifiers stored in state data."""

import base64
import os
from functools import lru_cache
from typing import Any

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.config import settings

ENCRYPTED_PREFIX = "enc:v1:"


class EncryptionService:
    """AES-256-GCM encryption service for provider identifiers."""

    def __init__(self, key: bytes) -> None:
        """Initialize with 32-byte key for AES-256."""
        if len(key) != 32:
            raise ValueError("Encryption key must be 32 bytes for AES-256")
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> bytes:
        """Encrypt a string and return bytes (nonce + ciphertext)."""
        nonce = os.urandom(12)  # 96-bit nonce for GCM
        ciphertext = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return nonce + ciphertext

    def decrypt(self, ciphertext: bytes) -> str:
        """Decrypt bytes and return the original string."""
        if len(ciphertext) < 12:
            raise ValueError("Ciphertext too short")
        nonce = ciphertext[:12]
        plaintext = self._aesgcm.decrypt(nonce, ciphertext[12:], None)
        return plaintext.decode("utf-8")

    def encrypt_to_text(self, plaintext: str) -> str:
        """Encrypt to a prefixed base64 string for JSON storage."""
        encrypted = self.encrypt(plaintext)
        return ENCRYPTED_PREFIX + base64.b64encode(encrypted).decode("ascii")

    def decrypt_from_text(self, value: str) -> str:
        """Decrypt a value produced by ``encrypt_to_text``."""
        if not is_encrypted(value):
            return value
        ciphertext = base64.b64decode(value[len(ENCRYPTED_PREFIX):].encode("ascii"))
        return self.decrypt(ciphertext)

    def encrypt_fields(self, data: dict[str, Any], fields: tuple[str, ...]) -> dict[str, Any]:
        """Copy of ``data`` with the named string fields encrypted."""
        secured = dict(data)
        for field in fields:
            value = secured.get(field)
            if isinstance(value, str) and value and not is_encrypted(value):
                secured[field] = self.encrypt_to_text(value)
        return secured

    def decrypt_fields(self, data: dict[str, Any], fields: tuple[str, ...]) -> dict[str, Any]:
        """Copy of ``data`` with the named fields decrypted."""
        plain = dict(data)
        for field in fields:
            value = plain.get(field)
            if isinstance(value, str) and is_encrypted(value):
                plain[field] = self.decrypt_from_text(value)
        return plain


def is_encrypted(value: str) -> bool:
    return value.startswith(ENCRYPTED_PREFIX)


@lru_cache
def get_encryption_service() -> EncryptionService:
    """Get cached encryption service instance."""
    # Derive 32-byte key from settings
    key = settings.encryption_key.encode("utf-8")
    if len(key) < 32:
        key = key.ljust(32, b"\0")
    elif len(key) > 32:
        key = key[:32]
    return EncryptionService(key)
