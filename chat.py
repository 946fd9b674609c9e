"""
Chat operations on top of the message store.

Message bodies are encrypted here, before anything reaches a store, and
decrypted here on the way out. A message that cannot be decrypted is shown
as a fixed placeholder.
"""

import time
import logging
from typing import Any, Callable, Optional
from datetime import datetime
from dataclasses import dataclass

from backends.base import ROOM_TYPES, ChatMessage, DirectoryStore, MessageStore, Room
from custody import Session, validate_user_id
from e2e.cipher import DECRYPTION_PLACEHOLDER, MessageCipher
from e2e.codec import new_message_id
from errors import (
    CooldownActive,
    DecryptionFailed,
    IdentityNotFound,
    NotMessageOwner,
    SessionStateError,
    ValidationError,
)

logger = logging.getLogger(__name__)


@dataclass
class MessageView:
    """A message as shown to the user."""
    message_id: str
    sender_id: str
    text: str
    timestamp: datetime
    is_own: bool
    decrypted: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "sender_id": self.sender_id,
            "text": self.text,
            "timestamp": self.timestamp.isoformat(),
            "is_own": self.is_own,
            "decrypted": self.decrypted,
        }


class ChatService:
    """Rooms and encrypted messages for the active session."""

    def __init__(
        self,
        directory: DirectoryStore,
        messages: MessageStore,
        cooldown_seconds: int = 120,
        max_dm_slots: int = 5,
        max_gc_slots: int = 2,
        max_gc_participants: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.directory = directory
        self.messages = messages
        self.cooldown_seconds = cooldown_seconds
        self.max_dm_slots = max_dm_slots
        self.max_gc_slots = max_gc_slots
        self.max_gc_participants = max_gc_participants
        self._clock = clock
        self._last_sent: dict[tuple[str, str], float] = {}

    @staticmethod
    def _require_active(session: Session) -> None:
        if not session.is_active:
            raise SessionStateError("Log in first")

    @staticmethod
    def _passphrase(session: Session, passphrase: Optional[str]) -> str:
        return passphrase if passphrase else session.passphrase

    def cooldown_remaining(self, session: Session, room_id: str) -> int:
        """Seconds until the user may send to this room again."""
        last = self._last_sent.get((session.user_id, room_id))
        if last is None:
            return 0
        remaining = self.cooldown_seconds - (self._clock() - last)
        return max(0, int(remaining + 0.999))

    async def create_room(self, session: Session, room_type: str, participants: list[str]) -> Room:
        """
        Create a DM or group room with the session user plus participants.

        Raises:
            ValidationError: Bad room type, participant count or slot limit
            IdentityNotFound: A participant is not in the directory
        """
        self._require_active(session)
        if room_type not in ROOM_TYPES:
            raise ValidationError(f"Room type must be one of {', '.join(ROOM_TYPES)}")

        others = []
        for user_id in participants:
            validate_user_id(user_id)
            if user_id != session.user_id and user_id not in others:
                others.append(user_id)

        if room_type == "dm" and len(others) != 1:
            raise ValidationError("A DM needs exactly one other participant")
        if room_type == "group" and not 1 <= len(others) <= self.max_gc_participants - 1:
            raise ValidationError(f"A group holds at most {self.max_gc_participants} participants")

        existing = [r for r in await self.messages.list_rooms(session.user_id) if r.type == room_type]
        limit = self.max_dm_slots if room_type == "dm" else self.max_gc_slots
        if len(existing) >= limit:
            raise ValidationError(f"All {limit} {room_type} slots are in use")

        for user_id in others:
            if await self.directory.get_profile(user_id) is None:
                raise IdentityNotFound(user_id)

        room = await self.messages.create_room(room_type, [session.user_id, *others])
        logger.info("Created %s room %s", room_type, room.room_id)
        return room

    async def list_rooms(self, session: Session) -> list[Room]:
        self._require_active(session)
        return await self.messages.list_rooms(session.user_id)

    async def send_message(
        self,
        session: Session,
        room_id: str,
        text: str,
        passphrase: Optional[str] = None,
    ) -> ChatMessage:
        """
        Encrypt and store a message.

        Args:
            session: Active session
            room_id: Target room
            text: Plaintext message
            passphrase: Room passphrase; defaults to the session passphrase

        Raises:
            CooldownActive: If the last message to this room was too recent
        """
        self._require_active(session)
        if text is None:
            text = ""
        if not isinstance(text, str):
            raise ValidationError("Message must be text")
        text = text.strip()
        if not text:
            raise ValidationError("Message is empty")

        remaining = self.cooldown_remaining(session, room_id)
        if remaining > 0:
            raise CooldownActive(remaining)

        # Claimed before the first await so concurrent sends see it
        key = (session.user_id, room_id)
        previous = self._last_sent.get(key)
        self._last_sent[key] = self._clock()
        try:
            envelope = await MessageCipher.encrypt_async(text, self._passphrase(session, passphrase))
            message = ChatMessage(
                message_id=new_message_id(),
                room_id=room_id,
                sender_id=session.user_id,
                envelope=envelope,
            )
            return await self.messages.insert_message(message)
        except BaseException:
            if previous is None:
                self._last_sent.pop(key, None)
            else:
                self._last_sent[key] = previous
            raise

    async def fetch_messages(
        self,
        session: Session,
        room_id: str,
        since: Optional[datetime] = None,
        passphrase: Optional[str] = None,
    ) -> list[MessageView]:
        """Fetch messages newer than `since` and decrypt them for display."""
        self._require_active(session)
        key = self._passphrase(session, passphrase)

        views = []
        for message in await self.messages.list_messages(room_id, since=since):
            try:
                text = await MessageCipher.decrypt_async(message.envelope, key)
                decrypted = True
            except DecryptionFailed:
                text = DECRYPTION_PLACEHOLDER
                decrypted = False
            views.append(MessageView(
                message_id=message.message_id,
                sender_id=message.sender_id,
                text=text,
                timestamp=message.timestamp,
                is_own=message.sender_id == session.user_id,
                decrypted=decrypted,
            ))
        return views

    async def delete_message(self, session: Session, room_id: str, message_id: str) -> None:
        """
        Soft-delete one of the session user's own messages.

        Raises:
            ValidationError: No such message in the room
            NotMessageOwner: The message was sent by someone else
        """
        self._require_active(session)
        stored = next(
            (m for m in await self.messages.list_messages(room_id) if m.message_id == message_id),
            None,
        )
        if stored is None:
            raise ValidationError(f"Message {message_id} not found", {"message_id": message_id})
        if stored.sender_id != session.user_id:
            raise NotMessageOwner(message_id)
        await self.messages.delete_message(room_id, message_id)
        logger.info("Deleted message %s in room %s", message_id, room_id)
