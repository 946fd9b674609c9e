"""
GitHub Gist stores.

Layout:
- a directory gist (DIRECTORY_GIST_ID) holding directory.json, mapping each
  user_id to its profile gist, and rooms.json, indexing room gists
- one profile gist per user holding profile.json
- one gist per room holding messages.json

api_base_url may point at a credential-shielding proxy instead of
api.github.com, in which case no token is configured locally.
"""

import time
import json
import logging
from typing import Any, Optional
from datetime import datetime

import httpx

from errors import BackendError, IdentityTaken, ValidationError
from e2e.cipher import EncryptedEnvelope
from .base import ChatMessage, Profile, Room, parse_timestamp, utcnow
from .http import RestClient

logger = logging.getLogger(__name__)

DIRECTORY_FILE = "directory.json"
ROOMS_FILE = "rooms.json"
PROFILE_FILE = "profile.json"
MESSAGES_FILE = "messages.json"

ROOM_MAX_PARTICIPANTS = {"dm": 2, "group": 5}


class GitHubGistClient(RestClient):
    """REST client for the GitHub Gist API."""

    def __init__(
        self,
        api_base_url: str = "https://api.github.com",
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(api_base_url, timeout=timeout, transport=transport)
        self.token = token

    def _get_headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github.v3+json",
            "Content-Type": "application/json",
            "User-Agent": "Gist-Chat-App",
        }
        if self.token:
            headers["Authorization"] = f"token {self.token}"
        return headers

    async def get_gist(self, gist_id: str) -> Optional[dict[str, Any]]:
        response = await self.request("GET", f"/gists/{gist_id}", allow_404=True)
        return response.json() if response is not None else None

    async def create_gist(self, filename: str, content: Any, description: str = "Gist Chat Data") -> dict[str, Any]:
        response = await self.request("POST", "/gists", json={
            "description": description,
            "public": True,
            "files": {filename: {"content": json.dumps(content)}},
        })
        return response.json()

    async def update_gist(self, gist_id: str, files: dict[str, Any]) -> dict[str, Any]:
        response = await self.request("PATCH", f"/gists/{gist_id}", json={
            "files": {name: {"content": json.dumps(content)} for name, content in files.items()},
        })
        return response.json()

    async def delete_gist(self, gist_id: str) -> None:
        await self.request("DELETE", f"/gists/{gist_id}", allow_404=True)

    @staticmethod
    def parse_file(gist: Optional[dict[str, Any]], filename: str) -> Optional[Any]:
        """Read and JSON-decode one file of a gist; None if absent or unparseable."""
        if not gist or filename not in gist.get("files", {}):
            return None
        try:
            return json.loads(gist["files"][filename]["content"])
        except (TypeError, ValueError):
            logger.warning("Could not parse %s in gist %s", filename, gist.get("id"))
            return None


class GistDirectory:
    """Profile directory kept in a shared directory gist."""

    CACHE_SECONDS = 30

    def __init__(self, client: GitHubGistClient, directory_gist_id: str):
        self.client = client
        self.directory_gist_id = directory_gist_id
        self._cache: Optional[dict[str, Any]] = None
        self._cache_time = 0.0

    async def get_directory(self, refresh: bool = False) -> dict[str, Any]:
        """Return directory.json, cached for CACHE_SECONDS."""
        now = time.monotonic()
        if not refresh and self._cache is not None and now - self._cache_time < self.CACHE_SECONDS:
            return self._cache

        gist = await self.client.get_gist(self.directory_gist_id)
        if gist is None:
            raise BackendError(f"Directory gist {self.directory_gist_id} not found", status_code=404)
        self._cache = self.client.parse_file(gist, DIRECTORY_FILE) or {}
        self._cache_time = now
        return self._cache

    async def get_profile(self, user_id: str) -> Optional[Profile]:
        entry = (await self.get_directory()).get(user_id)
        if not entry:
            return None

        gist = await self.client.get_gist(entry["profileGistId"])
        data = self.client.parse_file(gist, PROFILE_FILE)
        if not data:
            logger.warning("Profile gist for %s is missing", user_id)
            return None
        return Profile(
            user_id=data["userId"],
            public_key=data["publicKey"],
            signing_key=data.get("signingKey"),
            created_at=parse_timestamp(data["createdAt"]),
        )

    async def put_profile(self, profile: Profile) -> None:
        directory = await self.get_directory(refresh=True)
        if profile.user_id in directory:
            raise IdentityTaken(profile.user_id)

        gist = await self.client.create_gist(PROFILE_FILE, {
            "userId": profile.user_id,
            "publicKey": profile.public_key,
            "signingKey": profile.signing_key,
            "createdAt": int(profile.created_at.timestamp() * 1000),
        }, description=f"Profile: {profile.user_id}")

        new_directory = {
            **directory,
            profile.user_id: {
                "profileGistId": gist["id"],
                "registeredAt": int(time.time() * 1000),
                "status": "active",
            },
        }
        try:
            await self.client.update_gist(self.directory_gist_id, {DIRECTORY_FILE: new_directory})
        except BackendError:
            await self.client.delete_gist(gist["id"])
            raise

        self._cache = new_directory
        self._cache_time = time.monotonic()
        logger.info("Published profile %s in gist %s", profile.user_id, gist["id"])

    async def delete_profile(self, user_id: str) -> None:
        directory = dict(await self.get_directory(refresh=True))
        entry = directory.pop(user_id, None)
        if entry is None:
            return
        await self.client.update_gist(self.directory_gist_id, {DIRECTORY_FILE: directory})
        await self.client.delete_gist(entry["profileGistId"])
        self._cache = directory
        self._cache_time = time.monotonic()
        logger.info("Deleted profile %s", user_id)


class GistMessageStore:
    """Rooms as gists, each holding its whole message list."""

    def __init__(self, client: GitHubGistClient, directory_gist_id: str):
        self.client = client
        self.directory_gist_id = directory_gist_id

    async def _room_index(self) -> dict[str, Any]:
        gist = await self.client.get_gist(self.directory_gist_id)
        return self.client.parse_file(gist, ROOMS_FILE) or {}

    async def _load_room(self, room_id: str) -> dict[str, Any]:
        gist = await self.client.get_gist(room_id)
        data = self.client.parse_file(gist, MESSAGES_FILE)
        if data is None:
            raise BackendError(f"Room {room_id} not found", status_code=404)
        return data

    async def create_room(self, room_type: str, participants: list[str]) -> Room:
        created_at = utcnow()
        gist = await self.client.create_gist(MESSAGES_FILE, {
            "type": room_type,
            "participants": list(participants),
            "maxParticipants": ROOM_MAX_PARTICIPANTS.get(room_type, 2),
            "messages": [],
        }, description=f"Room: {', '.join(participants)}")

        index = await self._room_index()
        index[gist["id"]] = {
            "type": room_type,
            "participants": list(participants),
            "createdAt": int(created_at.timestamp() * 1000),
        }
        await self.client.update_gist(self.directory_gist_id, {ROOMS_FILE: index})

        return Room(room_id=gist["id"], type=room_type, participants=list(participants), created_at=created_at)

    async def list_rooms(self, user_id: str) -> list[Room]:
        return [
            Room(
                room_id=room_id,
                type=entry["type"],
                participants=entry["participants"],
                created_at=parse_timestamp(entry["createdAt"]),
            )
            for room_id, entry in (await self._room_index()).items()
            if user_id in entry.get("participants", [])
        ]

    @staticmethod
    def _to_message(room_id: str, raw: dict[str, Any]) -> ChatMessage:
        return ChatMessage(
            message_id=raw["messageId"],
            room_id=room_id,
            sender_id=raw["senderId"],
            envelope=EncryptedEnvelope.from_dict(raw),
            timestamp=parse_timestamp(raw["timestamp"]),
        )

    async def insert_message(self, message: ChatMessage) -> ChatMessage:
        data = await self._load_room(message.room_id)
        data.setdefault("messages", []).append({
            "messageId": message.message_id,
            "senderId": message.sender_id,
            **message.envelope.to_dict(),
            "timestamp": int(message.timestamp.timestamp() * 1000),
            "type": "text",
        })
        await self.client.update_gist(message.room_id, {MESSAGES_FILE: data})
        return message

    async def list_messages(self, room_id: str, since: Optional[datetime] = None) -> list[ChatMessage]:
        data = await self._load_room(room_id)
        messages = []
        for raw in data.get("messages", []):
            if raw.get("deleted"):
                continue
            try:
                message = self._to_message(room_id, raw)
            except (KeyError, ValueError, ValidationError) as e:
                logger.warning("Skipping malformed message %s: %s", raw.get("messageId"), e)
                continue
            if since is None or message.timestamp > since:
                messages.append(message)
        messages.sort(key=lambda m: m.timestamp)
        return messages

    async def delete_message(self, room_id: str, message_id: str) -> None:
        data = await self._load_room(room_id)
        for raw in data.get("messages", []):
            if raw.get("messageId") == message_id:
                raw["deleted"] = True
        await self.client.update_gist(room_id, {MESSAGES_FILE: data})
