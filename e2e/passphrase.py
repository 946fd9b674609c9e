"""
Passphrase stretching.

Two separate derivations come out of a passphrase:
- PBKDF2-HMAC-SHA256 keys for AES-256-GCM message encryption
- an Argon2id verifier, stored on the device to check the passphrase at login
"""

import hashlib
import hmac
from typing import Any

from argon2.exceptions import Argon2Error
from argon2.low_level import hash_secret_raw, Type

from errors import ValidationError
from .codec import base64_to_bytes, bytes_to_base64, random_bytes, text_to_bytes


class PassphraseDeriver:
    """Derives message keys and passphrase verifiers."""

    # Changing the iteration count breaks decryption of existing messages
    PBKDF2_ITERATIONS = 100_000
    PBKDF2_HASH = "sha256"
    KEY_LEN = 32  # 256 bits for AES-256
    SALT_LEN = 16  # 128 bits

    # Argon2id parameters (OWASP recommended)
    TIME_COST = 3
    MEMORY_COST = 65536  # 64 MB
    PARALLELISM = 4
    VERIFIER_LEN = 32

    @classmethod
    def derive_key(cls, passphrase: str, salt: bytes) -> bytes:
        """
        Derive a 256-bit AES key from a passphrase.

        Args:
            passphrase: The passphrase
            salt: Per-message salt, SALT_LEN bytes

        Returns:
            Raw key bytes
        """
        if len(salt) != cls.SALT_LEN:
            raise ValidationError(f"Salt must be {cls.SALT_LEN} bytes")
        return hashlib.pbkdf2_hmac(
            cls.PBKDF2_HASH,
            text_to_bytes(passphrase),
            salt,
            cls.PBKDF2_ITERATIONS,
            dklen=cls.KEY_LEN,
        )

    @classmethod
    def _argon2(cls, passphrase: str, salt: bytes, params: dict[str, int]) -> bytes:
        return hash_secret_raw(
            secret=text_to_bytes(passphrase),
            salt=salt,
            time_cost=params["time_cost"],
            memory_cost=params["memory_cost"],
            parallelism=params["parallelism"],
            hash_len=params["hash_len"],
            type=Type.ID,
        )

    @classmethod
    def make_verifier(cls, passphrase: str) -> dict[str, Any]:
        """
        Build a passphrase verifier for local storage.

        The verifier is a salted Argon2id hash. It cannot be used to decrypt
        messages and is never sent anywhere.
        """
        if not passphrase:
            raise ValidationError("Passphrase required")

        salt = random_bytes(cls.SALT_LEN)
        params = {
            "time_cost": cls.TIME_COST,
            "memory_cost": cls.MEMORY_COST,
            "parallelism": cls.PARALLELISM,
            "hash_len": cls.VERIFIER_LEN,
        }
        digest = cls._argon2(passphrase, salt, params)

        return {
            "algorithm": "argon2id",
            "salt": bytes_to_base64(salt),
            "hash": bytes_to_base64(digest),
            "params": params,
        }

    @classmethod
    def check_verifier(cls, passphrase: str, verifier: dict[str, Any]) -> bool:
        """Return True if the passphrase matches a stored verifier."""
        try:
            salt = base64_to_bytes(verifier["salt"])
            expected = base64_to_bytes(verifier["hash"])
            digest = cls._argon2(passphrase, salt, verifier["params"])
        except (KeyError, TypeError, ValidationError, Argon2Error):
            return False

        return hmac.compare_digest(digest, expected)
