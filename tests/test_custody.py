"""Tests for the register / login / logout lifecycle."""

from __future__ import annotations

import json

import pytest

from custody import ANONYMOUS, KeyCustody, SessionState, validate_user_id
from e2e import identity
from e2e.key_store import LocalKeyStore
from errors import (
    IdentityNotFound,
    IdentityTaken,
    InvalidPassphrase,
    KeyImportError,
    KeyMismatch,
    KeyNotOnDevice,
    PublishError,
    SessionStateError,
    ValidationError,
)


@pytest.mark.parametrize("user_id", ["A1", "B42", "Z0", "Q123456"])
def test_handle_validator_accepts(user_id: str) -> None:
    assert validate_user_id(user_id) == user_id


@pytest.mark.parametrize("user_id", ["1A", "ab1", "A", "", "AB1", "a1", "A1 ", None])
def test_handle_validator_rejects(user_id) -> None:
    with pytest.raises(ValidationError):
        validate_user_id(user_id)


@pytest.mark.asyncio
async def test_register_creates_active_session(custody: KeyCustody, directory, key_store: LocalKeyStore) -> None:
    session = await custody.register(ANONYMOUS, "A1", "correcthorse")

    assert session.state == SessionState.ACTIVE
    assert session.user_id == "A1"
    assert session.private_key is not None
    assert session.signing_key is not None
    assert directory.profiles["A1"].public_key == session.public_key
    assert directory.profiles["A1"].signing_key
    assert key_store.has_keys
    assert key_store.stored_user_id == "A1"


@pytest.mark.asyncio
async def test_published_key_matches_private_key(custody: KeyCustody, directory) -> None:
    session = await custody.register(ANONYMOUS, "A1", "correcthorse")
    published = identity.import_public_key(directory.profiles["A1"].public_key)
    assert identity.public_keys_match(session.private_key, published)


@pytest.mark.asyncio
async def test_register_twice_is_taken(custody: KeyCustody, tmp_path, directory) -> None:
    await custody.register(ANONYMOUS, "A1", "correcthorse")
    other_device = KeyCustody(directory, LocalKeyStore(tmp_path / "device-b"))
    with pytest.raises(IdentityTaken):
        await other_device.register(ANONYMOUS, "A1", "another")


@pytest.mark.asyncio
async def test_register_requires_anonymous_session(custody: KeyCustody) -> None:
    session = await custody.register(ANONYMOUS, "A1", "correcthorse")
    with pytest.raises(SessionStateError):
        await custody.register(session, "B2", "pw")


@pytest.mark.asyncio
async def test_register_rejects_bad_input(custody: KeyCustody, directory) -> None:
    with pytest.raises(ValidationError):
        await custody.register(ANONYMOUS, "ab1", "pw")
    with pytest.raises(ValidationError):
        await custody.register(ANONYMOUS, "A1", "")
    assert directory.profiles == {}


@pytest.mark.asyncio
async def test_publish_failure_leaves_no_local_state(custody: KeyCustody, directory, key_store: LocalKeyStore) -> None:
    directory.fail_put = True
    with pytest.raises(PublishError):
        await custody.register(ANONYMOUS, "A1", "correcthorse")
    assert not key_store.has_keys
    assert list(key_store.storage_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_directory_unavailable_on_register(custody: KeyCustody, directory) -> None:
    directory.fail_get = True
    with pytest.raises(PublishError):
        await custody.register(ANONYMOUS, "A1", "correcthorse")


@pytest.mark.asyncio
async def test_local_save_failure_rolls_back_profile(custody: KeyCustody, directory, key_store, monkeypatch) -> None:
    def broken_save(stored):
        raise OSError("disk full")

    monkeypatch.setattr(key_store, "save", broken_save)
    with pytest.raises(OSError):
        await custody.register(ANONYMOUS, "A1", "correcthorse")
    assert "A1" not in directory.profiles


@pytest.mark.asyncio
async def test_sealed_key_on_disk_is_not_plaintext(custody: KeyCustody, key_store: LocalKeyStore) -> None:
    session = await custody.register(ANONYMOUS, "A1", "correcthorse")
    exported = identity.export_private_key(session.private_key)

    on_disk = "".join(p.read_text() for p in key_store.storage_dir.iterdir())
    assert exported not in on_disk
    assert "correcthorse" not in on_disk
    assert set(json.loads(key_store.private_key_path.read_text())) == {"content", "salt", "iv"}


@pytest.mark.asyncio
async def test_login_after_logout(custody: KeyCustody, key_store: LocalKeyStore) -> None:
    registered = await custody.register(ANONYMOUS, "A1", "correcthorse")
    session = custody.logout(registered)

    assert session == ANONYMOUS
    assert key_store.has_keys

    session = await custody.login(session, "A1", "correcthorse")
    assert session.is_active
    assert session.public_key == registered.public_key
    assert identity.public_keys_match(session.private_key, registered.private_key.public_key())
    assert session.signing_key is not None


@pytest.mark.asyncio
async def test_login_wrong_passphrase(custody: KeyCustody) -> None:
    custody.logout(await custody.register(ANONYMOUS, "A1", "correcthorse"))
    with pytest.raises(InvalidPassphrase):
        await custody.login(ANONYMOUS, "A1", "wronghorse")


@pytest.mark.asyncio
async def test_login_unknown_identity(custody: KeyCustody) -> None:
    with pytest.raises(IdentityNotFound):
        await custody.login(ANONYMOUS, "B42", "pw")


@pytest.mark.asyncio
async def test_login_on_fresh_device(custody: KeyCustody, directory, tmp_path) -> None:
    await custody.register(ANONYMOUS, "A1", "correcthorse")
    fresh = KeyCustody(directory, LocalKeyStore(tmp_path / "device-b"))
    with pytest.raises(KeyNotOnDevice):
        await fresh.login(ANONYMOUS, "A1", "correcthorse")


@pytest.mark.asyncio
async def test_login_as_other_identity_on_device(custody: KeyCustody, directory, tmp_path) -> None:
    await custody.register(ANONYMOUS, "A1", "correcthorse")
    other = KeyCustody(directory, LocalKeyStore(tmp_path / "device-b"))
    await other.register(ANONYMOUS, "B2", "pw")

    with pytest.raises(KeyNotOnDevice):
        await custody.login(ANONYMOUS, "B2", "pw")


@pytest.mark.asyncio
async def test_login_detects_replaced_directory_key(custody: KeyCustody, directory, key_pair) -> None:
    await custody.register(ANONYMOUS, "A1", "correcthorse")
    profile = directory.profiles["A1"]
    directory.profiles["A1"] = type(profile)(
        user_id="A1",
        public_key=identity.export_public_key(key_pair.public_key),
        signing_key=profile.signing_key,
        created_at=profile.created_at,
    )
    with pytest.raises(KeyMismatch):
        await custody.login(ANONYMOUS, "A1", "correcthorse")


@pytest.mark.asyncio
async def test_login_requires_logged_out(custody: KeyCustody) -> None:
    session = await custody.register(ANONYMOUS, "A1", "correcthorse")
    with pytest.raises(SessionStateError):
        await custody.login(session, "A1", "correcthorse")


@pytest.mark.asyncio
async def test_lock_and_unlock(custody: KeyCustody) -> None:
    session = await custody.register(ANONYMOUS, "A1", "correcthorse")
    locked = custody.lock(session)

    assert locked.state == SessionState.LOCKED
    assert locked.user_id == "A1"
    assert locked.private_key is None
    assert locked.passphrase is None

    with pytest.raises(InvalidPassphrase):
        await custody.unlock(locked, "wrong")

    unlocked = await custody.unlock(locked, "correcthorse")
    assert unlocked.is_active
    assert unlocked.public_key == session.public_key


@pytest.mark.asyncio
async def test_lock_requires_active(custody: KeyCustody) -> None:
    with pytest.raises(SessionStateError):
        custody.lock(ANONYMOUS)
    with pytest.raises(SessionStateError):
        await custody.unlock(ANONYMOUS, "pw")


@pytest.mark.asyncio
async def test_resume(custody: KeyCustody, directory, key_store: LocalKeyStore) -> None:
    assert custody.resume() == ANONYMOUS

    registered = await custody.register(ANONYMOUS, "A1", "correcthorse")
    restarted = KeyCustody(directory, LocalKeyStore(key_store.storage_dir))
    session = restarted.resume()

    assert session.state == SessionState.LOCKED
    assert session.user_id == "A1"
    assert session.public_key == registered.public_key
    assert (await restarted.unlock(session, "correcthorse")).is_active


@pytest.mark.asyncio
async def test_session_status_hides_secrets(custody: KeyCustody) -> None:
    session = await custody.register(ANONYMOUS, "A1", "correcthorse")
    status = session.to_status()

    assert status == {"state": "active", "user_id": "A1", "public_key": session.public_key, "can_sign": True}
    assert "correcthorse" not in repr(session)


@pytest.mark.asyncio
async def test_export_requires_active_session(custody: KeyCustody) -> None:
    with pytest.raises(SessionStateError):
        custody.export_backup(ANONYMOUS)


@pytest.mark.asyncio
async def test_backup_restores_on_new_device(custody: KeyCustody, directory, tmp_path) -> None:
    session = await custody.register(ANONYMOUS, "A1", "correcthorse")
    backup = custody.export_backup(session)

    new_device = KeyCustody(directory, LocalKeyStore(tmp_path / "device-b"))
    imported = await new_device.import_backup(
        ANONYMOUS, "A1", backup["private_key"], "new passphrase", signing_key=backup["signing_key"]
    )
    assert imported.is_active
    assert imported.public_key == session.public_key

    new_device.logout(imported)
    again = await new_device.login(ANONYMOUS, "A1", "new passphrase")
    assert again.is_active
    assert again.signing_key is not None


@pytest.mark.asyncio
async def test_import_rejects_foreign_key(custody: KeyCustody, key_pair, tmp_path, directory) -> None:
    await custody.register(ANONYMOUS, "A1", "correcthorse")
    new_device = KeyCustody(directory, LocalKeyStore(tmp_path / "device-b"))

    with pytest.raises(KeyMismatch):
        await new_device.import_backup(
            ANONYMOUS, "A1", identity.export_private_key(key_pair.private_key), "pw"
        )
    assert not new_device.key_store.has_keys


@pytest.mark.asyncio
async def test_import_rejects_malformed_key(custody: KeyCustody) -> None:
    with pytest.raises(KeyImportError):
        await custody.import_backup(ANONYMOUS, "A1", "not a key", "pw")


@pytest.mark.asyncio
async def test_import_unknown_identity(custody: KeyCustody, key_pair) -> None:
    with pytest.raises(IdentityNotFound):
        await custody.import_backup(
            ANONYMOUS, "A1", identity.export_private_key(key_pair.private_key), "pw"
        )


@pytest.mark.asyncio
@pytest.mark.parametrize("filename", ["verifier.json", "private_key.enc"])
async def test_resume_with_corrupt_key_file(custody: KeyCustody, key_store: LocalKeyStore, filename: str) -> None:
    await custody.register(ANONYMOUS, "A1", "correcthorse")
    (key_store.storage_dir / filename).write_text("{not json")

    assert custody.resume() == ANONYMOUS
    with pytest.raises(ValidationError):
        await custody.login(ANONYMOUS, "A1", "correcthorse")


@pytest.mark.asyncio
async def test_register_with_unencodable_passphrase(custody: KeyCustody, directory, key_store: LocalKeyStore) -> None:
    with pytest.raises(ValidationError):
        await custody.register(ANONYMOUS, "A1", "pass\ud800")
    assert directory.profiles == {}
    assert not key_store.has_keys
