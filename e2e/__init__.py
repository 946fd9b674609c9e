"""
End-to-end encryption core for Gist Chat.

Handles:
- Base64 / random byte codec
- Passphrase derivation (PBKDF2 message keys, Argon2id verifier)
- Message encryption (AES-256-GCM envelopes)
- Identity keys (RSA-OAEP encryption, RSA-PSS signing)
- Device-local key storage
"""

from .cipher import DECRYPTION_PLACEHOLDER, EncryptedEnvelope, MessageCipher
from .key_store import LocalKeyStore, StoredIdentity
from .passphrase import PassphraseDeriver

__all__ = [
    "DECRYPTION_PLACEHOLDER",
    "EncryptedEnvelope",
    "MessageCipher",
    "LocalKeyStore",
    "StoredIdentity",
    "PassphraseDeriver",
]
