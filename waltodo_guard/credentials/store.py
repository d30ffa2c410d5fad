"""Credential layer — encrypted at-rest persistence.

One JSON document per deployment maps provider id to an encrypted payload
and its clear-text metadata::

    {
      "openai": {
        "encrypted": "<base64 nonce + AES-256-GCM ciphertext + tag>",
        "metadata": {"provider": "openai", "usage_count": 3, ...}
      }
    }

Only ``secret`` and ``previous_key`` are encrypted, so listing providers and
reading metadata never decrypts anything.  Every write goes to a temp file in
the same directory followed by ``os.replace``, so readers see either the old
or the new document, never a partial one.  The directory is 0700 and both the
document and the master key are 0600.

File I/O runs in a worker thread (``asyncio.to_thread``) while the store
lock is held, so the event loop never blocks on disk.

Master key lifecycle
--------------------
``rotate_master_key()`` backs up the current key and document, generates a
new key, re-encrypts every entry and writes both back atomically.  If the
document write fails the old key is put back.  Backups live in
``<key dir>/key_backups/<backup id>/`` (directory 0700, files 0400) and only
the newest ``max_key_backups`` are kept.  ``restore_master_key()`` brings back
the key and document of one backup (the newest by default).

Usage::

    store = CredentialStore(Path("~/.waltodo/credentials.json"))
    await store.init()
    await store.save(CredentialRecord(provider="openai", secret="sk-..."))
    record = await store.load("openai")
    backup = await store.rotate_master_key()
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import os
import secrets
import shutil
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidTag
from pydantic import ValidationError as PydanticValidationError

from waltodo_guard.credentials import crypto
from waltodo_guard.credentials.models import CredentialRecord, normalize_provider
from waltodo_guard.exceptions import (
    CredentialNotFoundError,
    DecryptionError,
    KeyBackupNotFoundError,
    StorageError,
)
from waltodo_guard.logging import get_logger

log = get_logger(__name__)

_BACKUP_KEY_FILE = "master.key"
_BACKUP_DOCUMENT_FILE = "credentials.json"
_BACKUP_ID_FORMAT = "%Y%m%dT%H%M%S%fZ"
_INTEGRITY_AAD = b"waltodo-guard:key-integrity"


@dataclass(frozen=True)
class KeyBackup:
    """One snapshot of the master key (and the document it encrypted)."""

    backup_id: str
    path: Path
    created_at: datetime
    has_document: bool


@dataclass(frozen=True)
class KeyRotationStatus:
    last_rotated_at: datetime
    next_rotation_at: datetime
    needs_rotation: bool


class CredentialStore:
    """AES-256-GCM encrypted credential document on local disk."""

    def __init__(
        self,
        path: Path | str,
        master_key_path: Path | str | None = None,
        *,
        backup_dir: Path | str | None = None,
        max_key_backups: int = 5,
    ) -> None:
        self._path = Path(path).expanduser()
        self._key_path = (
            Path(master_key_path).expanduser()
            if master_key_path is not None
            else self._path.parent / "master.key"
        )
        self._backup_dir = (
            Path(backup_dir).expanduser()
            if backup_dir is not None
            else self._key_path.parent / "key_backups"
        )
        self._max_key_backups = max(1, max_key_backups)
        self._key: bytes | None = None
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def backup_dir(self) -> Path:
        return self._backup_dir

    async def init(self) -> None:
        """Create the private directory and load (or generate) the master key."""
        async with self._lock:
            await asyncio.to_thread(self._init_sync)
        log.debug("credential_store_init", path=str(self._path))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def save(self, record: CredentialRecord) -> None:
        """Encrypt and persist *record*, replacing any existing entry."""
        provider = normalize_provider(record.provider)
        payload = json.dumps(record.secret_fields())
        async with self._lock:
            blob = crypto.encrypt(payload, self._master_key(), provider.encode())
            document = await asyncio.to_thread(self._read_document)
            document[provider] = {
                "encrypted": base64.b64encode(blob).decode("ascii"),
                "metadata": record.public_fields(),
            }
            await asyncio.to_thread(self._write_document, document)
        log.debug("credential_store_saved", provider=provider)

    async def load(self, provider: str) -> CredentialRecord:
        """Return the decrypted record for *provider*.

        Raises :class:`CredentialNotFoundError` when absent and
        :class:`DecryptionError` when the payload cannot be decrypted.
        """
        provider = normalize_provider(provider)
        async with self._lock:
            entry = (await asyncio.to_thread(self._read_document)).get(provider)
            # Captured under the lock so a concurrent key rotation cannot
            # pair this entry with the wrong key.
            key = self._master_key()
        if entry is None:
            raise CredentialNotFoundError(provider)
        return self._decode_entry(provider, entry, key)

    async def delete(self, provider: str) -> bool:
        """Remove *provider*'s record.  Returns ``True`` if one existed."""
        provider = normalize_provider(provider)
        async with self._lock:
            document = await asyncio.to_thread(self._read_document)
            if provider not in document:
                return False
            del document[provider]
            await asyncio.to_thread(self._write_document, document)
        log.debug("credential_store_deleted", provider=provider)
        return True

    async def list(self) -> list[str]:
        """Known provider ids, without decrypting anything.

        A missing document yields ``[]``; an unreadable one raises
        :class:`StorageError`.
        """
        async with self._lock:
            return sorted(await asyncio.to_thread(self._read_document))

    # ------------------------------------------------------------------
    # Master key lifecycle
    # ------------------------------------------------------------------

    async def rotate_master_key(self) -> KeyBackup:
        """Re-encrypt every entry under a freshly generated master key.

        Returns the backup taken before rotating.  Nothing is written if any
        entry fails to decrypt under the current key (:class:`DecryptionError`).
        """
        async with self._lock:
            backup = await asyncio.to_thread(self._rotate_sync)
        log.info("master_key_rotated", backup_id=backup.backup_id)
        return backup

    async def backup_master_key(self) -> KeyBackup:
        async with self._lock:
            return await asyncio.to_thread(self._backup_sync)

    async def list_key_backups(self) -> list[KeyBackup]:
        """Backups, newest first."""
        return await asyncio.to_thread(self._scan_backups)

    async def restore_master_key(self, backup_id: str | None = None) -> KeyBackup:
        """Put back the key and document saved in *backup_id* (default: newest).

        Entries saved after that backup are lost, since they were encrypted
        under a key the restored document does not use.
        """
        async with self._lock:
            backup = await asyncio.to_thread(self._restore_sync, backup_id)
        log.warning("master_key_restored", backup_id=backup.backup_id)
        return backup

    async def validate_key_integrity(self) -> bool:
        """``True`` when the key round-trips and every stored entry decrypts."""
        async with self._lock:
            return await asyncio.to_thread(self._check_integrity)

    async def key_rotation_status(self, rotation_days: int = 90) -> KeyRotationStatus:
        """Rotation schedule derived from the key file's last write."""
        try:
            mtime = (await asyncio.to_thread(self._key_path.stat)).st_mtime
        except OSError as exc:
            raise StorageError("Cannot read master key", str(self._key_path)) from exc
        last = datetime.fromtimestamp(mtime, tz=timezone.utc)
        due = last + timedelta(days=rotation_days)
        return KeyRotationStatus(
            last_rotated_at=last,
            next_rotation_at=due,
            needs_rotation=datetime.now(timezone.utc) >= due,
        )

    # ------------------------------------------------------------------
    # Internals (run in a worker thread, store lock held)
    # ------------------------------------------------------------------

    def _init_sync(self) -> None:
        try:
            crypto.ensure_private_dir(self._path.parent)
        except OSError as exc:
            raise StorageError("Cannot initialise credential store", str(self._path)) from exc
        self._master_key()

    def _rotate_sync(self) -> KeyBackup:
        old_key = self._master_key()
        document = self._read_document()
        new_key = crypto.generate_master_key()
        rotated: dict[str, Any] = {}
        for provider, entry in document.items():
            plaintext = self._decrypt_payload(provider, entry, old_key)
            blob = crypto.encrypt(plaintext, new_key, provider.encode())
            rotated[provider] = {**entry, "encrypted": base64.b64encode(blob).decode("ascii")}

        backup = self._backup_sync()
        self._write_key(new_key)
        try:
            self._write_document(rotated)
        except StorageError:
            log.error("master_key_rotation_rolled_back", backup_id=backup.backup_id)
            self._write_key(old_key)
            raise
        self._key = new_key
        return backup

    def _backup_sync(self) -> KeyBackup:
        key = self._master_key()
        created_at = datetime.now(timezone.utc)
        backup_id = created_at.strftime(_BACKUP_ID_FORMAT)
        target = self._backup_dir / backup_id
        has_document = self._path.exists()
        try:
            crypto.ensure_private_dir(self._backup_dir)
            target.mkdir(mode=crypto.OWNER_ONLY_DIR)
            crypto.write_read_only(target / _BACKUP_KEY_FILE, key)
            if has_document:
                crypto.write_read_only(target / _BACKUP_DOCUMENT_FILE, self._path.read_bytes())
        except OSError as exc:
            raise StorageError("Cannot back up master key", str(target)) from exc

        for stale in self._scan_backups()[self._max_key_backups :]:
            try:
                shutil.rmtree(stale.path)
            except OSError as exc:
                log.warning("key_backup_prune_failed", backup_id=stale.backup_id, error=str(exc))
        log.info("master_key_backed_up", backup_id=backup_id)
        return KeyBackup(backup_id, target, created_at, has_document)

    def _scan_backups(self) -> list[KeyBackup]:
        if not self._backup_dir.is_dir():
            return []
        backups = []
        for child in self._backup_dir.iterdir():
            if not (child / _BACKUP_KEY_FILE).is_file():
                continue
            try:
                created_at = datetime.strptime(child.name, _BACKUP_ID_FORMAT)
            except ValueError:
                continue
            backups.append(
                KeyBackup(
                    child.name,
                    child,
                    created_at.replace(tzinfo=timezone.utc),
                    (child / _BACKUP_DOCUMENT_FILE).is_file(),
                )
            )
        return sorted(backups, key=lambda b: b.backup_id, reverse=True)

    def _restore_sync(self, backup_id: str | None) -> KeyBackup:
        backups = self._scan_backups()
        if not backups:
            raise KeyBackupNotFoundError(None, str(self._backup_dir))
        if backup_id is None:
            backup = backups[0]
        else:
            matches = [b for b in backups if b.backup_id == backup_id]
            if not matches:
                raise KeyBackupNotFoundError(backup_id, str(self._backup_dir))
            backup = matches[0]

        try:
            key = (backup.path / _BACKUP_KEY_FILE).read_bytes()
            raw_document = (
                (backup.path / _BACKUP_DOCUMENT_FILE).read_text(encoding="utf-8")
                if backup.has_document
                else "{}"
            )
        except OSError as exc:
            raise StorageError("Cannot read master key backup", str(backup.path)) from exc
        if len(key) != crypto.KEY_SIZE:
            raise StorageError("Master key backup is corrupt", str(backup.path))
        try:
            document = json.loads(raw_document)
        except json.JSONDecodeError as exc:
            raise StorageError("Credential backup is not valid JSON", str(backup.path)) from exc

        self._write_key(key)
        self._write_document(document)
        self._key = key
        return backup

    def _check_integrity(self) -> bool:
        key = self._master_key()
        sample = secrets.token_hex(16)
        blob = crypto.encrypt(sample, key, _INTEGRITY_AAD)
        if crypto.decrypt(blob, key, _INTEGRITY_AAD) != sample:
            return False
        try:
            for provider, entry in self._read_document().items():
                self._decrypt_payload(provider, entry, key)
        except DecryptionError:
            return False
        return True

    def _master_key(self) -> bytes:
        if self._key is None:
            try:
                self._key = crypto.load_or_create_master_key(self._key_path)
            except OSError as exc:
                raise StorageError("Cannot read master key", str(self._key_path)) from exc
            except ValueError as exc:
                raise StorageError(str(exc), str(self._key_path)) from exc
        return self._key

    def _write_key(self, key: bytes) -> None:
        try:
            crypto.write_master_key(self._key_path, key)
        except OSError as exc:
            raise StorageError("Cannot write master key", str(self._key_path)) from exc

    def _decrypt_payload(self, provider: str, entry: Any, key: bytes) -> str:
        try:
            blob = base64.b64decode(entry["encrypted"], validate=True)
            return crypto.decrypt(blob, key, provider.encode())
        except (InvalidTag, ValueError, binascii.Error, KeyError, TypeError) as exc:
            log.warning("credential_decrypt_failed", provider=provider, error=type(exc).__name__)
            raise DecryptionError(provider, str(self._path)) from exc

    def _decode_entry(self, provider: str, entry: Any, key: bytes) -> CredentialRecord:
        try:
            secret_fields = json.loads(self._decrypt_payload(provider, entry, key))
        except ValueError as exc:
            raise DecryptionError(provider, str(self._path)) from exc

        try:
            return CredentialRecord.model_validate({**entry.get("metadata", {}), **secret_fields})
        except PydanticValidationError as exc:
            raise StorageError(
                f"Stored record for provider '{provider}' is malformed", str(self._path)
            ) from exc

    def _read_document(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            document = json.loads(self._path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise StorageError("Cannot read credential store", str(self._path)) from exc
        except json.JSONDecodeError as exc:
            raise StorageError("Credential store is not valid JSON", str(self._path)) from exc
        if not isinstance(document, dict):
            raise StorageError("Credential store must be a JSON object", str(self._path))
        return document

    def _write_document(self, document: dict[str, Any]) -> None:
        tmp_name: str | None = None
        try:
            crypto.ensure_private_dir(self._path.parent)
            fd, tmp_name = tempfile.mkstemp(
                dir=self._path.parent, prefix=".credentials-", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, crypto.OWNER_ONLY_FILE)
            os.replace(tmp_name, self._path)
            tmp_name = None
        except OSError as exc:
            raise StorageError("Cannot write credential store", str(self._path)) from exc
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
