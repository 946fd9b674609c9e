"""
Binary <-> text transcoding for key material and ciphertext.

Standard base64 alphabet with padding, never the URL-safe variant.
"""

import base64
import binascii
import secrets

from errors import DecodeError, ValidationError


def bytes_to_base64(data: bytes) -> str:
    """Encode bytes as standard base64 text."""
    return base64.b64encode(bytes(data)).decode("ascii")


def base64_to_bytes(text: str) -> bytes:
    """
    Decode standard base64 text.

    Raises:
        DecodeError: On non-alphabet characters, bad padding or non-text input
    """
    if not isinstance(text, str):
        raise DecodeError("Base64 input must be a string")
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise DecodeError(f"Invalid base64 encoding: {e}") from None


def text_to_bytes(text: str) -> bytes:
    """
    UTF-8 encode message text or a passphrase.

    Raises:
        ValidationError: On lone surrogates, which have no UTF-8 form
    """
    try:
        return text.encode("utf-8")
    except UnicodeEncodeError:
        raise ValidationError("Text must be valid Unicode") from None


def random_bytes(n: int) -> bytes:
    """Return n bytes from the OS CSPRNG."""
    if n < 0:
        raise ValidationError("Byte count must not be negative")
    return secrets.token_bytes(n)


def new_message_id() -> str:
    """Random identifier for a chat message."""
    return "msg_" + secrets.token_urlsafe(12)
