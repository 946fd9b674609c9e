"""
Passphrase encryption for message bodies.

Each message gets its own random salt and nonce; the key is re-derived from
the passphrase on every call and never kept. The cipher is AES-256-GCM, so a
wrong passphrase and tampered ciphertext fail the same way.
"""

import asyncio
from typing import Any
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from errors import DecodeError, DecryptionFailed, ValidationError
from .codec import base64_to_bytes, bytes_to_base64, random_bytes, text_to_bytes
from .passphrase import PassphraseDeriver

DECRYPTION_PLACEHOLDER = "[Decryption Failed]"

NONCE_LEN = 12  # 96 bits for AES-GCM
TAG_LEN = 16


@dataclass(frozen=True)
class EncryptedEnvelope:
    """Ciphertext plus the public parameters needed to decrypt it."""
    content: str
    salt: str
    iv: str

    def __post_init__(self):
        for name in ("content", "salt", "iv"):
            if not isinstance(getattr(self, name), str):
                raise ValidationError(f"Envelope field '{name}' must be a base64 string")

        if len(base64_to_bytes(self.salt)) != PassphraseDeriver.SALT_LEN:
            raise ValidationError(f"Envelope salt must be {PassphraseDeriver.SALT_LEN} bytes")
        if len(base64_to_bytes(self.iv)) != NONCE_LEN:
            raise ValidationError(f"Envelope iv must be {NONCE_LEN} bytes")
        if len(base64_to_bytes(self.content)) < TAG_LEN:
            raise ValidationError("Envelope content is shorter than the authentication tag")

    def to_dict(self) -> dict[str, str]:
        """Convert to JSON-serializable dictionary."""
        return {"content": self.content, "salt": self.salt, "iv": self.iv}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EncryptedEnvelope":
        """
        Rebuild an envelope from stored or received data.

        Raises:
            ValidationError: If a field is missing or malformed
        """
        if not isinstance(data, dict):
            raise ValidationError("Envelope must be an object")
        missing = [k for k in ("content", "salt", "iv") if k not in data]
        if missing:
            raise ValidationError(f"Envelope missing fields: {', '.join(missing)}")
        return cls(content=data["content"], salt=data["salt"], iv=data["iv"])


class MessageCipher:
    """Encrypts and decrypts text under a passphrase."""

    @classmethod
    def derive_key(cls, passphrase: str, salt: bytes) -> AESGCM:
        """
        Derive an AES-GCM key from a passphrase and salt.

        The returned object only exposes authenticated encrypt/decrypt.
        """
        return AESGCM(PassphraseDeriver.derive_key(passphrase, salt))

    @classmethod
    def encrypt_bytes(cls, plaintext: bytes, passphrase: str) -> EncryptedEnvelope:
        if not isinstance(passphrase, str) or not passphrase:
            raise ValidationError("Passphrase required")

        salt = random_bytes(PassphraseDeriver.SALT_LEN)
        nonce = random_bytes(NONCE_LEN)
        aesgcm = cls.derive_key(passphrase, salt)
        ciphertext = aesgcm.encrypt(nonce, plaintext, None)

        return EncryptedEnvelope(
            content=bytes_to_base64(ciphertext),
            salt=bytes_to_base64(salt),
            iv=bytes_to_base64(nonce),
        )

    @classmethod
    def decrypt_bytes(cls, envelope: EncryptedEnvelope | dict[str, Any], passphrase: str) -> bytes:
        """
        Decrypt an envelope to raw bytes.

        Raises:
            DecryptionFailed: For any failure, whatever the cause
        """
        try:
            if not isinstance(envelope, EncryptedEnvelope):
                envelope = EncryptedEnvelope.from_dict(envelope)
            salt = base64_to_bytes(envelope.salt)
            nonce = base64_to_bytes(envelope.iv)
            ciphertext = base64_to_bytes(envelope.content)

            aesgcm = cls.derive_key(passphrase, salt)
            return aesgcm.decrypt(nonce, ciphertext, None)
        except (InvalidTag, ValidationError, DecodeError, ValueError, TypeError, AttributeError):
            raise DecryptionFailed() from None

    @classmethod
    def encrypt(cls, plaintext: str, passphrase: str) -> EncryptedEnvelope:
        """
        Encrypt message text.

        Args:
            plaintext: Message text
            passphrase: Shared passphrase

        Returns:
            A fresh envelope; two calls never produce the same one
        """
        if not isinstance(plaintext, str):
            raise ValidationError("Plaintext must be a string")
        return cls.encrypt_bytes(text_to_bytes(plaintext), passphrase)

    @classmethod
    def decrypt(cls, envelope: EncryptedEnvelope | dict[str, Any], passphrase: str) -> str:
        """Decrypt message text. Raises DecryptionFailed on any failure."""
        plaintext = cls.decrypt_bytes(envelope, passphrase)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionFailed() from None

    @classmethod
    async def encrypt_async(cls, plaintext: str, passphrase: str) -> EncryptedEnvelope:
        return await asyncio.to_thread(cls.encrypt, plaintext, passphrase)

    @classmethod
    async def decrypt_async(cls, envelope: EncryptedEnvelope | dict[str, Any], passphrase: str) -> str:
        return await asyncio.to_thread(cls.decrypt, envelope, passphrase)
