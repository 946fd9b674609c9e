"""
Error types for Gist Chat.

Every failure inside the crypto core is re-raised as one of these, so
callers never see raw `cryptography` or `argon2` exceptions.
"""

from typing import Any, Optional


class GistChatError(Exception):
    """Base class for all domain errors."""

    code = "gist_chat_error"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(GistChatError):
    code = "validation_error"


class DecodeError(ValidationError):
    code = "decode_error"


class DecryptionFailed(GistChatError):
    code = "decryption_failed"

    def __init__(self):
        super().__init__("Decryption failed")


class KeyImportError(GistChatError):
    code = "key_import_error"


class IdentityTaken(GistChatError):
    code = "identity_taken"

    def __init__(self, user_id: str):
        super().__init__(f"ID already taken: {user_id}", {"user_id": user_id})


class IdentityNotFound(GistChatError):
    code = "identity_not_found"

    def __init__(self, user_id: str):
        super().__init__(f"ID not found: {user_id}", {"user_id": user_id})


class KeyNotOnDevice(GistChatError):
    code = "key_not_on_device"

    def __init__(self, user_id: str):
        super().__init__(
            f"Private key for {user_id} not found on this device. Import a key backup first.",
            {"user_id": user_id},
        )


class KeyMismatch(GistChatError):
    code = "key_mismatch"


class InvalidPassphrase(GistChatError):
    code = "invalid_passphrase"

    def __init__(self):
        super().__init__("Invalid passphrase")


class PublishError(GistChatError):
    code = "publish_error"


class BackendError(GistChatError):
    code = "backend_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, {"status_code": status_code} if status_code else None)
        self.status_code = status_code


class SessionStateError(GistChatError):
    code = "session_state_error"


class CooldownActive(GistChatError):
    code = "cooldown_active"

    def __init__(self, remaining_seconds: int):
        super().__init__(f"Wait {remaining_seconds}s", {"remaining_seconds": remaining_seconds})
        self.remaining_seconds = remaining_seconds


class NotMessageOwner(GistChatError):
    """Only the sender of a message may delete it."""

    code = "not_message_owner"

    def __init__(self, message_id: str):
        super().__init__(f"Message {message_id} was sent by another user", {"message_id": message_id})
