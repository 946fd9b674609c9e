"""
Records exchanged with remote stores, and the store interfaces.

Only public keys, profiles and encrypted envelopes pass through here.
"""

from typing import Any, Optional, Protocol
from datetime import datetime, timezone
from dataclasses import dataclass, field

from e2e.cipher import EncryptedEnvelope

ROOM_TYPES = ("dm", "group")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Accept ISO 8601 text or epoch milliseconds, return an aware datetime."""
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, (int, float)):
        ts = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass
class Profile:
    """Public directory entry for a user."""
    user_id: str
    public_key: str
    signing_key: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "public_key": self.public_key,
            "signing_key": self.signing_key,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Profile":
        return cls(
            user_id=data["user_id"],
            public_key=data["public_key"],
            signing_key=data.get("signing_key"),
            created_at=parse_timestamp(data["created_at"]) if data.get("created_at") else utcnow(),
        )


@dataclass
class Room:
    """A DM or group conversation."""
    room_id: str
    type: str
    participants: list[str]
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "room_id": self.room_id,
            "type": self.type,
            "participants": list(self.participants),
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class ChatMessage:
    """A stored message. The body is only ever an envelope."""
    message_id: str
    room_id: str
    sender_id: str
    envelope: EncryptedEnvelope
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "room_id": self.room_id,
            "sender_id": self.sender_id,
            **self.envelope.to_dict(),
            "timestamp": self.timestamp.isoformat(),
        }


class DirectoryStore(Protocol):
    """Public profile directory. Uniqueness of user_id is enforced by the store."""

    async def get_profile(self, user_id: str) -> Optional[Profile]: ...

    async def put_profile(self, profile: Profile) -> None: ...

    async def delete_profile(self, user_id: str) -> None: ...


class MessageStore(Protocol):
    """Opaque persistence of encrypted messages, grouped by room."""

    async def create_room(self, room_type: str, participants: list[str]) -> Room: ...

    async def list_rooms(self, user_id: str) -> list[Room]: ...

    async def insert_message(self, message: ChatMessage) -> ChatMessage: ...

    async def list_messages(self, room_id: str, since: Optional[datetime] = None) -> list[ChatMessage]: ...

    async def delete_message(self, room_id: str, message_id: str) -> None: ...
