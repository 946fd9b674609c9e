"""
Key custody for Gist Chat.

Manages:
- Registration: key generation, publishing the public half, sealing the
  private half on this device
- Login / unlock against the local passphrase verifier
- Logout / lock (device key material is kept)
- Key backup export and import

Session state is an immutable value passed in and returned; KeyCustody
itself only holds its collaborators.
"""

import re
import time
import asyncio
import logging
from enum import Enum
from typing import Optional
from dataclasses import dataclass, field

from cryptography.hazmat.primitives.asymmetric import rsa

from backends.base import DirectoryStore, Profile
from e2e import identity
from e2e.cipher import MessageCipher
from e2e.key_store import LocalKeyStore, StoredIdentity
from e2e.passphrase import PassphraseDeriver
from errors import (
    BackendError,
    DecryptionFailed,
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

logger = logging.getLogger(__name__)

USER_ID_PATTERN = re.compile(r"^[A-Z][0-9]+$")


class SessionState(str, Enum):
    ANONYMOUS = "anonymous"
    ACTIVE = "active"
    LOCKED = "locked"


@dataclass(frozen=True)
class Session:
    """What this device currently has unlocked."""
    state: SessionState = SessionState.ANONYMOUS
    user_id: Optional[str] = None
    public_key: Optional[str] = None
    private_key: Optional[rsa.RSAPrivateKey] = field(default=None, repr=False)
    signing_key: Optional[rsa.RSAPrivateKey] = field(default=None, repr=False)
    passphrase: Optional[str] = field(default=None, repr=False)
    started_at: Optional[float] = None

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE

    def to_status(self) -> dict:
        """Public view of the session, safe to return to the UI."""
        return {
            "state": self.state.value,
            "user_id": self.user_id,
            "public_key": self.public_key,
            "can_sign": self.signing_key is not None,
        }


ANONYMOUS = Session()


def validate_user_id(user_id: str) -> str:
    """
    Check the identity handle format: one uppercase letter, then digits.

    Raises:
        ValidationError: If the handle does not match
    """
    if not isinstance(user_id, str) or not USER_ID_PATTERN.match(user_id):
        raise ValidationError("ID must be Letter+Number (e.g. A1)", {"user_id": user_id})
    return user_id


def _require_passphrase(passphrase: str) -> None:
    if not isinstance(passphrase, str) or not passphrase:
        raise ValidationError("Passphrase required")


class KeyCustody:
    """Register / login / logout lifecycle over a directory and a device key store."""

    def __init__(self, directory: DirectoryStore, key_store: LocalKeyStore):
        """
        Initialize key custody.

        Args:
            directory: Remote public profile directory
            key_store: Device-local key storage
        """
        self.directory = directory
        self.key_store = key_store

    def _require_state(self, session: Session, *allowed: SessionState) -> None:
        if session.state not in allowed:
            names = ", ".join(s.value for s in allowed)
            raise SessionStateError(f"Session is {session.state.value}; expected {names}")

    async def _get_profile(self, user_id: str) -> Optional[Profile]:
        try:
            return await self.directory.get_profile(user_id)
        except BackendError as e:
            logger.warning("Directory lookup for %s failed: %s", user_id, e)
            raise

    @staticmethod
    def _seal(private_key: rsa.RSAPrivateKey, passphrase: str):
        return MessageCipher.encrypt(identity.export_private_key(private_key), passphrase)

    @staticmethod
    def _unseal(sealed, passphrase: str) -> rsa.RSAPrivateKey:
        return identity.import_private_key(MessageCipher.decrypt(sealed, passphrase))

    def _build_stored_identity(
        self,
        user_id: str,
        passphrase: str,
        private_key: rsa.RSAPrivateKey,
        signing_key: Optional[rsa.RSAPrivateKey],
        created_at: float,
    ) -> StoredIdentity:
        return StoredIdentity(
            user_id=user_id,
            public_key=identity.export_public_key(private_key.public_key()),
            signing_public_key=(
                identity.export_public_key(signing_key.public_key()) if signing_key else None
            ),
            sealed_private_key=self._seal(private_key, passphrase),
            sealed_signing_key=self._seal(signing_key, passphrase) if signing_key else None,
            verifier=PassphraseDeriver.make_verifier(passphrase),
            created_at=created_at,
        )

    def _active_session(
        self,
        user_id: str,
        public_key: str,
        private_key: rsa.RSAPrivateKey,
        signing_key: Optional[rsa.RSAPrivateKey],
        passphrase: str,
    ) -> Session:
        return Session(
            state=SessionState.ACTIVE,
            user_id=user_id,
            public_key=public_key,
            private_key=private_key,
            signing_key=signing_key,
            passphrase=passphrase,
            started_at=time.time(),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def resume(self) -> Session:
        """
        Session to start with: locked if this device holds an identity,
        anonymous otherwise.
        """
        user_id = self.key_store.stored_user_id if self.key_store.has_keys else None
        if user_id is None:
            return ANONYMOUS
        try:
            stored = self.key_store.load()
        except ValidationError as e:
            # Reported again by the next login or unlock
            logger.warning("Stored identity %s is unreadable: %s", user_id, e.message)
            return ANONYMOUS
        return Session(state=SessionState.LOCKED, user_id=user_id, public_key=stored.public_key)

    async def register(self, session: Session, user_id: str, passphrase: str) -> Session:
        """
        Register a new identity and make it the active session.

        Raises:
            ValidationError: Bad handle or empty passphrase
            IdentityTaken: Handle already in the directory
            PublishError: Directory write failed; nothing was stored locally
        """
        self._require_state(session, SessionState.ANONYMOUS)
        validate_user_id(user_id)
        _require_passphrase(passphrase)

        try:
            existing = await self._get_profile(user_id)
        except BackendError as e:
            raise PublishError(f"Directory unavailable: {e.message}") from e
        if existing is not None:
            raise IdentityTaken(user_id)

        key_pair = await identity.generate_key_pair_async()
        signing_pair = await identity.generate_signing_key_pair_async()
        public_key = identity.export_public_key(key_pair.public_key)
        created_at = time.time()

        # Local state is fully prepared before publishing; only the file
        # writes remain after the directory accepts the profile.
        stored = await asyncio.to_thread(
            self._build_stored_identity,
            user_id,
            passphrase,
            key_pair.private_key,
            signing_pair.private_key,
            created_at,
        )

        profile = Profile(
            user_id=user_id,
            public_key=public_key,
            signing_key=stored.signing_public_key,
        )
        try:
            await self.directory.put_profile(profile)
        except IdentityTaken:
            raise
        except BackendError as e:
            logger.warning("Publishing profile %s failed: %s", user_id, e)
            raise PublishError(f"Failed to create profile: {e.message}") from e

        try:
            self.key_store.save(stored)
        except OSError:
            logger.error("Saving keys for %s failed, removing published profile", user_id)
            try:
                await self.directory.delete_profile(user_id)
            except BackendError as e:
                logger.error("Rollback of profile %s failed: %s", user_id, e)
            raise

        logger.info("Registered %s", user_id)
        return self._active_session(
            user_id, public_key, key_pair.private_key, signing_pair.private_key, passphrase
        )

    async def _unlock_stored(self, user_id: str, passphrase: str) -> tuple[StoredIdentity, rsa.RSAPrivateKey, Optional[rsa.RSAPrivateKey]]:
        stored = self.key_store.load()
        if stored is None or stored.user_id != user_id:
            raise KeyNotOnDevice(user_id)

        matches = await asyncio.to_thread(PassphraseDeriver.check_verifier, passphrase, stored.verifier)
        if not matches:
            raise InvalidPassphrase()

        try:
            private_key = await asyncio.to_thread(self._unseal, stored.sealed_private_key, passphrase)
            signing_key = None
            if stored.sealed_signing_key is not None:
                signing_key = await asyncio.to_thread(self._unseal, stored.sealed_signing_key, passphrase)
        except (DecryptionFailed, KeyImportError):
            # Verifier matched but the sealed key would not open
            logger.error("Sealed key for %s is unreadable", user_id)
            raise InvalidPassphrase() from None

        return stored, private_key, signing_key

    async def login(self, session: Session, user_id: str, passphrase: str) -> Session:
        """
        Log in with an identity whose private key is on this device.

        Raises:
            IdentityNotFound: No directory entry
            KeyNotOnDevice: This device never registered or imported the key
            InvalidPassphrase: Local verifier mismatch
            KeyMismatch: Local key does not match the published one
        """
        self._require_state(session, SessionState.ANONYMOUS, SessionState.LOCKED)
        validate_user_id(user_id)
        _require_passphrase(passphrase)

        profile = await self._get_profile(user_id)
        if profile is None:
            raise IdentityNotFound(user_id)

        stored, private_key, signing_key = await self._unlock_stored(user_id, passphrase)

        if stored.public_key != profile.public_key:
            logger.warning("Local key for %s does not match the directory", user_id)
            raise KeyMismatch(f"Key on this device does not match the published key for {user_id}")

        logger.info("Logged in as %s", user_id)
        return self._active_session(user_id, profile.public_key, private_key, signing_key, passphrase)

    def logout(self, session: Session) -> Session:
        """
        End the session. Device key material stays on disk so the user can
        log in again without re-importing.
        """
        if session.user_id:
            logger.info("Logged out %s", session.user_id)
        return ANONYMOUS

    def lock(self, session: Session) -> Session:
        """Drop unlocked keys and passphrase from the session, keep the handle."""
        self._require_state(session, SessionState.ACTIVE)
        return Session(state=SessionState.LOCKED, user_id=session.user_id, public_key=session.public_key)

    async def unlock(self, session: Session, passphrase: str) -> Session:
        """Re-open a locked session with the passphrase (no directory round trip)."""
        self._require_state(session, SessionState.LOCKED)
        _require_passphrase(passphrase)

        stored, private_key, signing_key = await self._unlock_stored(session.user_id, passphrase)
        return self._active_session(stored.user_id, stored.public_key, private_key, signing_key, passphrase)

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------

    def export_backup(self, session: Session) -> dict[str, Optional[str]]:
        """
        Export the session's private keys for a user-initiated backup.

        The result holds plaintext PKCS8 keys.
        """
        self._require_state(session, SessionState.ACTIVE)
        logger.warning("Private key export requested for %s", session.user_id)
        return {
            "user_id": session.user_id,
            "public_key": session.public_key,
            "private_key": identity.export_private_key(session.private_key),
            "signing_key": (
                identity.export_private_key(session.signing_key) if session.signing_key else None
            ),
        }

    async def import_backup(
        self,
        session: Session,
        user_id: str,
        private_key: str,
        passphrase: str,
        signing_key: Optional[str] = None,
    ) -> Session:
        """
        Install a key backup on this device and log in.

        Replaces any identity already stored on the device.

        Raises:
            KeyImportError: Malformed key data
            IdentityNotFound: No directory entry for the handle
            KeyMismatch: The key is not the one published for the handle
        """
        self._require_state(session, SessionState.ANONYMOUS, SessionState.LOCKED)
        validate_user_id(user_id)
        _require_passphrase(passphrase)

        key = identity.import_private_key(private_key)
        sign_key = identity.import_private_key(signing_key) if signing_key else None

        profile = await self._get_profile(user_id)
        if profile is None:
            raise IdentityNotFound(user_id)
        if identity.export_public_key(key.public_key()) != profile.public_key:
            raise KeyMismatch(f"Backup key does not match the published key for {user_id}")
        if sign_key is not None and profile.signing_key and (
            identity.export_public_key(sign_key.public_key()) != profile.signing_key
        ):
            raise KeyMismatch(f"Backup signing key does not match the published key for {user_id}")

        stored = await asyncio.to_thread(
            self._build_stored_identity,
            user_id,
            passphrase,
            key,
            sign_key,
            profile.created_at.timestamp(),
        )
        self.key_store.save(stored)
        logger.warning("Private key imported for %s", user_id)

        return self._active_session(user_id, profile.public_key, key, sign_key, passphrase)
