"""
Device-local key storage.

Holds, for the one identity registered on this device:
- the identity handle and public keys (identity.json)
- the private keys, sealed under the passphrase (private_key.enc, signing_key.enc)
- the passphrase verifier (verifier.json)

Nothing here is synced anywhere. Files survive logout.
"""

import os
import json
import logging
import tempfile
from pathlib import Path
from typing import Any, Optional
from dataclasses import dataclass

from .cipher import EncryptedEnvelope
from errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredIdentity:
    """Everything the device knows about its registered identity."""
    user_id: str
    public_key: str
    signing_public_key: Optional[str]
    sealed_private_key: EncryptedEnvelope
    sealed_signing_key: Optional[EncryptedEnvelope]
    verifier: dict[str, Any]
    created_at: float


class LocalKeyStore:
    """File-backed key store scoped to one device profile."""

    def __init__(self, storage_dir: Path):
        """
        Initialize the key store.

        Args:
            storage_dir: Directory for storing key files
        """
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

        self.identity_path = self.storage_dir / "identity.json"
        self.private_key_path = self.storage_dir / "private_key.enc"
        self.signing_key_path = self.storage_dir / "signing_key.enc"
        self.verifier_path = self.storage_dir / "verifier.json"

    @property
    def has_keys(self) -> bool:
        """Check if an identity and its private key are stored."""
        return (
            self.identity_path.exists()
            and self.private_key_path.exists()
            and self.verifier_path.exists()
        )

    @property
    def stored_user_id(self) -> Optional[str]:
        """Identity handle registered on this device, if any."""
        if not self.identity_path.exists():
            return None
        try:
            return self._read_json(self.identity_path)["user_id"]
        except (KeyError, TypeError, ValidationError):
            return None

    def _write_atomic(self, path: Path, data: dict[str, Any]) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=self.storage_dir, prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _read_json(self, path: Path) -> dict[str, Any]:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise ValidationError(f"Corrupt key file {path.name}: {e}") from None

    def save(self, identity: StoredIdentity) -> None:
        """
        Persist an identity, replacing whatever was stored.

        The identity file is written last, so a partial save never looks
        like a complete identity.
        """
        if self.identity_path.exists():
            self.identity_path.unlink()

        self._write_atomic(self.private_key_path, identity.sealed_private_key.to_dict())
        if identity.sealed_signing_key is not None:
            self._write_atomic(self.signing_key_path, identity.sealed_signing_key.to_dict())
        elif self.signing_key_path.exists():
            self.signing_key_path.unlink()
        self._write_atomic(self.verifier_path, identity.verifier)
        self._write_atomic(self.identity_path, {
            "user_id": identity.user_id,
            "public_key": identity.public_key,
            "signing_public_key": identity.signing_public_key,
            "created_at": identity.created_at,
        })

        logger.info("Stored identity %s on device", identity.user_id)

    def load(self) -> Optional[StoredIdentity]:
        """
        Load the stored identity.

        Returns:
            The identity, or None if the device holds no complete identity
        """
        if not self.has_keys:
            return None

        meta = self._read_json(self.identity_path)
        signing_key = None
        if self.signing_key_path.exists():
            signing_key = EncryptedEnvelope.from_dict(self._read_json(self.signing_key_path))

        try:
            return StoredIdentity(
                user_id=meta["user_id"],
                public_key=meta["public_key"],
                signing_public_key=meta.get("signing_public_key"),
                sealed_private_key=EncryptedEnvelope.from_dict(self._read_json(self.private_key_path)),
                sealed_signing_key=signing_key,
                verifier=self._read_json(self.verifier_path),
                created_at=meta.get("created_at", 0.0),
            )
        except (KeyError, TypeError) as e:
            raise ValidationError(f"Corrupt identity file: {e}") from None

    def clear(self) -> None:
        """Remove all key material from the device."""
        for path in (self.identity_path, self.private_key_path, self.signing_key_path, self.verifier_path):
            if path.exists():
                path.unlink()
        logger.info("Cleared device key store")
