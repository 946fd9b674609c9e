"""
Identity key material.

A user owns two RSA keypairs:
- an encryption keypair, used only with OAEP
- a signing keypair, used only with PSS

Keys are exported as base64 DER: SubjectPublicKeyInfo for public halves,
PKCS8 for private halves.
"""

import asyncio
from dataclasses import dataclass

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from errors import DecodeError, DecryptionFailed, KeyImportError, ValidationError
from .codec import base64_to_bytes, bytes_to_base64, random_bytes


KEY_SIZE = 2048
PUBLIC_EXPONENT = 65537
CHALLENGE_LEN = 32


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def _pss() -> padding.PSS:
    return padding.PSS(
        mgf=padding.MGF1(hashes.SHA256()),
        salt_length=padding.PSS.MAX_LENGTH,
    )


@dataclass(frozen=True)
class IdentityKeyPair:
    """RSA-OAEP keypair bound to a user identity."""
    public_key: rsa.RSAPublicKey
    private_key: rsa.RSAPrivateKey


@dataclass(frozen=True)
class SigningKeyPair:
    """RSA-PSS keypair used for challenge-response."""
    public_key: rsa.RSAPublicKey
    private_key: rsa.RSAPrivateKey


def _generate_rsa() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=KEY_SIZE)


def generate_key_pair() -> IdentityKeyPair:
    """Generate a new 2048-bit RSA encryption keypair."""
    private_key = _generate_rsa()
    return IdentityKeyPair(public_key=private_key.public_key(), private_key=private_key)


def generate_signing_key_pair() -> SigningKeyPair:
    """Generate a new 2048-bit RSA signing keypair, separate from the encryption pair."""
    private_key = _generate_rsa()
    return SigningKeyPair(public_key=private_key.public_key(), private_key=private_key)


async def generate_key_pair_async() -> IdentityKeyPair:
    return await asyncio.to_thread(generate_key_pair)


async def generate_signing_key_pair_async() -> SigningKeyPair:
    return await asyncio.to_thread(generate_signing_key_pair)


# ---------------------------------------------------------------------------
# Export / import
# ---------------------------------------------------------------------------

def export_public_key(key: rsa.RSAPublicKey) -> str:
    """Serialize a public key as base64 DER SubjectPublicKeyInfo."""
    der = key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return bytes_to_base64(der)


def export_private_key(key: rsa.RSAPrivateKey) -> str:
    """
    Serialize a private key as base64 DER PKCS8, unencrypted.

    Only for user-initiated backups and sealing at rest.
    """
    der = key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return bytes_to_base64(der)


def _check_rsa(key, expected_type) -> None:
    if not isinstance(key, expected_type):
        raise KeyImportError("Key is not an RSA key")
    if key.key_size < KEY_SIZE:
        raise KeyImportError(f"RSA key must be at least {KEY_SIZE} bits")


def import_public_key(exported: str) -> rsa.RSAPublicKey:
    """
    Load a public key exported by export_public_key.

    Raises:
        KeyImportError: On malformed or incompatible data
    """
    try:
        key = serialization.load_der_public_key(base64_to_bytes(exported))
    except (DecodeError, ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise KeyImportError(f"Invalid public key: {e}") from None
    _check_rsa(key, rsa.RSAPublicKey)
    return key


def import_private_key(exported: str) -> rsa.RSAPrivateKey:
    """
    Load a private key exported by export_private_key.

    Raises:
        KeyImportError: On malformed or incompatible data
    """
    try:
        key = serialization.load_der_private_key(base64_to_bytes(exported), password=None)
    except (DecodeError, ValueError, TypeError, UnsupportedAlgorithm):
        # Parser messages may echo key bytes
        raise KeyImportError("Invalid private key") from None
    _check_rsa(key, rsa.RSAPrivateKey)
    return key


def public_keys_match(private_key: rsa.RSAPrivateKey, public_key: rsa.RSAPublicKey) -> bool:
    return export_public_key(private_key.public_key()) == export_public_key(public_key)


# ---------------------------------------------------------------------------
# Direct-to-identity encryption
# ---------------------------------------------------------------------------

def encrypt_for(public_key: rsa.RSAPublicKey, data: bytes) -> str:
    """Encrypt a short payload (a key, a token) to an identity with RSA-OAEP."""
    try:
        return bytes_to_base64(public_key.encrypt(data, _oaep()))
    except ValueError as e:
        raise ValidationError(f"Payload too large for RSA-OAEP: {e}") from None


def decrypt_with(private_key: rsa.RSAPrivateKey, ciphertext_b64: str) -> bytes:
    """Decrypt a payload produced by encrypt_for."""
    try:
        return private_key.decrypt(base64_to_bytes(ciphertext_b64), _oaep())
    except (DecodeError, ValueError):
        raise DecryptionFailed() from None


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------

def sign(message: bytes, private_key: rsa.RSAPrivateKey) -> bytes:
    """Sign bytes with RSA-PSS (randomized salt, SHA-256)."""
    return private_key.sign(message, _pss(), hashes.SHA256())


def verify(message: bytes, signature: bytes, public_key: rsa.RSAPublicKey) -> bool:
    """Verify an RSA-PSS signature."""
    try:
        public_key.verify(signature, message, _pss(), hashes.SHA256())
        return True
    except (InvalidSignature, ValueError, TypeError):
        return False


def new_challenge() -> str:
    """Random challenge for proving possession of a signing key."""
    return bytes_to_base64(random_bytes(CHALLENGE_LEN))


def answer_challenge(challenge: str, private_key: rsa.RSAPrivateKey) -> str:
    """Sign a challenge; the answer is base64 text."""
    return bytes_to_base64(sign(base64_to_bytes(challenge), private_key))


def verify_challenge(challenge: str, answer: str, public_key: rsa.RSAPublicKey) -> bool:
    """Check an answer produced by answer_challenge."""
    try:
        message = base64_to_bytes(challenge)
        signature = base64_to_bytes(answer)
    except DecodeError:
        return False
    if len(message) != CHALLENGE_LEN:
        return False
    return verify(message, signature, public_key)
