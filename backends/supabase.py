"""
Supabase (PostgREST) stores.

Tables:
    profiles(user_id pk, public_key, signing_key, created_at)
    rooms(id pk, type, created_at)
    participants(room_id, user_id)
    messages(id pk, room_id, sender_id, content, iv, salt, is_deleted, created_at)

Only the anon key is used; there is no Supabase Auth sign-up, so the
passphrase never reaches the server.
"""

import logging
from typing import Any, Optional
from datetime import datetime

import httpx

from errors import BackendError, IdentityTaken, ValidationError
from e2e.cipher import EncryptedEnvelope
from .base import ChatMessage, Profile, Room, parse_timestamp
from .http import RestClient

logger = logging.getLogger(__name__)


class SupabaseClient(RestClient):
    """REST client for a Supabase project."""

    def __init__(
        self,
        supabase_url: str,
        anon_key: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(f"{supabase_url.rstrip('/')}/rest/v1", timeout=timeout, transport=transport)
        self.anon_key = anon_key

    def _get_headers(self) -> dict[str, str]:
        return {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {self.anon_key}",
            "Content-Type": "application/json",
        }

    async def select(self, table: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        response = await self.request("GET", f"/{table}", params=params)
        return response.json()

    async def insert(self, table: str, rows: Any) -> list[dict[str, Any]]:
        response = await self.request(
            "POST",
            f"/{table}",
            json=rows,
            headers={"Prefer": "return=representation"},
        )
        return response.json()


class SupabaseDirectory:
    """Profile directory backed by the profiles table."""

    def __init__(self, client: SupabaseClient):
        self.client = client

    async def get_profile(self, user_id: str) -> Optional[Profile]:
        rows = await self.client.select("profiles", {
            "user_id": f"eq.{user_id}",
            "select": "user_id,public_key,signing_key,created_at",
        })
        if not rows:
            return None
        return Profile.from_dict(rows[0])

    async def put_profile(self, profile: Profile) -> None:
        try:
            await self.client.insert("profiles", profile.to_dict())
        except BackendError as e:
            # Unique violation on user_id
            if e.status_code == 409:
                raise IdentityTaken(profile.user_id) from None
            raise
        logger.info("Published profile %s", profile.user_id)

    async def delete_profile(self, user_id: str) -> None:
        await self.client.request("DELETE", "/profiles", params={"user_id": f"eq.{user_id}"})
        logger.info("Deleted profile %s", user_id)


class SupabaseMessageStore:
    """Rooms and messages backed by PostgREST tables."""

    def __init__(self, client: SupabaseClient):
        self.client = client

    async def create_room(self, room_type: str, participants: list[str]) -> Room:
        rows = await self.client.insert("rooms", {"type": room_type})
        room = rows[0]
        await self.client.insert("participants", [
            {"room_id": room["id"], "user_id": user_id} for user_id in participants
        ])
        return Room(
            room_id=str(room["id"]),
            type=room["type"],
            participants=list(participants),
            created_at=parse_timestamp(room["created_at"]),
        )

    async def list_rooms(self, user_id: str) -> list[Room]:
        rows = await self.client.select("participants", {
            "user_id": f"eq.{user_id}",
            "select": "room_id,rooms(id,type,created_at,participants(user_id))",
        })
        rooms = []
        for row in rows:
            room = row.get("rooms")
            if not room:
                continue
            rooms.append(Room(
                room_id=str(room["id"]),
                type=room["type"],
                participants=[p["user_id"] for p in room.get("participants", [])],
                created_at=parse_timestamp(room["created_at"]),
            ))
        return rooms

    @staticmethod
    def _to_message(row: dict[str, Any]) -> ChatMessage:
        return ChatMessage(
            message_id=str(row["id"]),
            room_id=str(row["room_id"]),
            sender_id=row["sender_id"],
            envelope=EncryptedEnvelope.from_dict(row),
            timestamp=parse_timestamp(row["created_at"]),
        )

    async def insert_message(self, message: ChatMessage) -> ChatMessage:
        rows = await self.client.insert("messages", {
            "id": message.message_id,
            "room_id": message.room_id,
            "sender_id": message.sender_id,
            **message.envelope.to_dict(),
            "is_deleted": False,
            "created_at": message.timestamp.isoformat(),
        })
        return self._to_message(rows[0])

    async def list_messages(self, room_id: str, since: Optional[datetime] = None) -> list[ChatMessage]:
        params = {
            "room_id": f"eq.{room_id}",
            "is_deleted": "eq.false",
            "order": "created_at.asc",
            "select": "*",
        }
        if since is not None:
            params["created_at"] = f"gt.{since.isoformat()}"

        messages = []
        for row in await self.client.select("messages", params):
            try:
                messages.append(self._to_message(row))
            except (KeyError, ValueError, ValidationError) as e:
                logger.warning("Skipping malformed message row %s: %s", row.get("id"), e)
        return messages

    async def delete_message(self, room_id: str, message_id: str) -> None:
        await self.client.request(
            "PATCH",
            "/messages",
            params={"id": f"eq.{message_id}", "room_id": f"eq.{room_id}"},
            json={"is_deleted": True},
        )
