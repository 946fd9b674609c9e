# tests/conftest.py
from __future__ import annotations

import itertools
from datetime import datetime
from typing import Optional

import pytest

from backends.base import ChatMessage, Profile, Room
from chat import ChatService
from custody import KeyCustody
from e2e import identity
from e2e.key_store import LocalKeyStore
from e2e.passphrase import PassphraseDeriver
from errors import BackendError, IdentityTaken


class InMemoryDirectory:
    """Directory store kept in a dict."""

    def __init__(self) -> None:
        self.profiles: dict[str, Profile] = {}
        self.fail_put = False
        self.fail_get = False

    async def get_profile(self, user_id: str) -> Optional[Profile]:
        if self.fail_get:
            raise BackendError("directory down", status_code=503)
        return self.profiles.get(user_id)

    async def put_profile(self, profile: Profile) -> None:
        if self.fail_put:
            raise BackendError("write rejected", status_code=500)
        if profile.user_id in self.profiles:
            raise IdentityTaken(profile.user_id)
        self.profiles[profile.user_id] = profile

    async def delete_profile(self, user_id: str) -> None:
        self.profiles.pop(user_id, None)


class InMemoryMessageStore:
    """Message store kept in lists."""

    def __init__(self) -> None:
        self.rooms: dict[str, Room] = {}
        self.messages: dict[str, list[ChatMessage]] = {}
        self.deleted: set[str] = set()
        self._ids = itertools.count(1)

    async def create_room(self, room_type: str, participants: list[str]) -> Room:
        room = Room(room_id=f"room-{next(self._ids)}", type=room_type, participants=list(participants))
        self.rooms[room.room_id] = room
        self.messages[room.room_id] = []
        return room

    async def list_rooms(self, user_id: str) -> list[Room]:
        return [room for room in self.rooms.values() if user_id in room.participants]

    async def insert_message(self, message: ChatMessage) -> ChatMessage:
        self.messages.setdefault(message.room_id, []).append(message)
        return message

    async def list_messages(self, room_id: str, since: Optional[datetime] = None) -> list[ChatMessage]:
        return [
            m for m in self.messages.get(room_id, [])
            if m.message_id not in self.deleted and (since is None or m.timestamp > since)
        ]

    async def delete_message(self, room_id: str, message_id: str) -> None:
        self.deleted.add(message_id)


@pytest.fixture(autouse=True)
def fast_argon2(monkeypatch: pytest.MonkeyPatch) -> None:
    """Cheap Argon2 parameters; verifiers store their own params so checks still work."""
    monkeypatch.setattr(PassphraseDeriver, "TIME_COST", 1)
    monkeypatch.setattr(PassphraseDeriver, "MEMORY_COST", 1024)
    monkeypatch.setattr(PassphraseDeriver, "PARALLELISM", 1)


@pytest.fixture(scope="session")
def key_pair() -> identity.IdentityKeyPair:
    return identity.generate_key_pair()


@pytest.fixture(scope="session")
def signing_pair() -> identity.SigningKeyPair:
    return identity.generate_signing_key_pair()


@pytest.fixture()
def directory() -> InMemoryDirectory:
    return InMemoryDirectory()


@pytest.fixture()
def message_store() -> InMemoryMessageStore:
    return InMemoryMessageStore()


@pytest.fixture()
def key_store(tmp_path) -> LocalKeyStore:
    return LocalKeyStore(tmp_path / "device-a")


@pytest.fixture()
def custody(directory: InMemoryDirectory, key_store: LocalKeyStore) -> KeyCustody:
    return KeyCustody(directory, key_store)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def chat(directory: InMemoryDirectory, message_store: InMemoryMessageStore, clock: FakeClock) -> ChatService:
    return ChatService(directory, message_store, cooldown_seconds=120, clock=clock)
