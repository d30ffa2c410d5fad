"""Unit tests — CredentialStore (AES-256-GCM encrypted JSON document)."""

from __future__ import annotations

import asyncio
import base64
import json
import os
import stat
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest
from cryptography.exceptions import InvalidTag
from pydantic import SecretStr

from waltodo_guard.credentials import CredentialRecord, CredentialStore, PermissionLevel
from waltodo_guard.credentials import crypto
from waltodo_guard.exceptions import (
    CredentialNotFoundError,
    DecryptionError,
    InvalidProviderError,
    KeyBackupNotFoundError,
    StorageError,
)


def _record(provider: str = "openai", secret: str = "sk-test-1234567890", **kw) -> CredentialRecord:
    return CredentialRecord(provider=provider, secret=SecretStr(secret), **kw)


@pytest.mark.unit
class TestCredentialStore:
    # 1. init creates a private directory and the master key
    async def test_init_creates_private_dir_and_key(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "credentials.json"
        s = CredentialStore(path)
        await s.init()
        key_path = path.parent / "master.key"
        assert key_path.exists()
        assert len(key_path.read_bytes()) == crypto.KEY_SIZE
        assert stat.S_IMODE(os.stat(key_path).st_mode) == 0o600
        assert stat.S_IMODE(os.stat(path.parent).st_mode) == 0o700

    # 2. save + load round-trips the secret
    async def test_save_then_load(self, store: CredentialStore) -> None:
        await store.save(_record(permission_level=PermissionLevel.FULL, usage_count=4))
        loaded = await store.load("openai")
        assert loaded.secret.get_secret_value() == "sk-test-1234567890"
        assert loaded.permission_level is PermissionLevel.FULL
        assert loaded.usage_count == 4

    # 3. the secret never appears in the document in clear text
    async def test_secret_is_not_stored_in_clear(self, store: CredentialStore) -> None:
        await store.save(_record(previous_key=SecretStr("sk-old-9999999999")))
        raw = store.path.read_text()
        assert "sk-test-1234567890" not in raw
        assert "sk-old-9999999999" not in raw
        entry = json.loads(raw)["openai"]
        assert "secret" not in entry["metadata"]
        assert entry["metadata"]["provider"] == "openai"

    # 4. the document is written with owner-only permissions
    async def test_document_mode_is_0600(self, store: CredentialStore) -> None:
        await store.save(_record())
        assert stat.S_IMODE(os.stat(store.path).st_mode) == 0o600

    # 5. no temp files are left behind after a write
    async def test_no_temp_files_left(self, store: CredentialStore) -> None:
        await store.save(_record("openai"))
        await store.save(_record("anthropic"))
        leftovers = [p.name for p in store.path.parent.iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []

    # 6. load of a missing provider raises CredentialNotFoundError
    async def test_load_missing(self, store: CredentialStore) -> None:
        with pytest.raises(CredentialNotFoundError):
            await store.load("nobody")

    # 7. delete returns True once, then False
    async def test_delete(self, store: CredentialStore) -> None:
        await store.save(_record())
        assert await store.delete("openai") is True
        assert await store.delete("openai") is False
        with pytest.raises(CredentialNotFoundError):
            await store.load("openai")

    # 8. list returns sorted provider ids without decrypting
    async def test_list_sorted(self, store: CredentialStore) -> None:
        await store.save(_record("xai"))
        await store.save(_record("anthropic"))
        assert await store.list() == ["anthropic", "xai"]

    # 9. list of a store that was never written is empty
    async def test_list_empty_store(self, store: CredentialStore) -> None:
        assert await store.list() == []

    # 10. corrupt JSON raises StorageError
    async def test_corrupt_document(self, store: CredentialStore) -> None:
        store.path.write_text("{not json")
        with pytest.raises(StorageError):
            await store.list()

    # 11. flipped ciphertext byte raises DecryptionError
    async def test_tampered_ciphertext(self, store: CredentialStore) -> None:
        await store.save(_record())
        doc = json.loads(store.path.read_text())
        blob = bytearray(base64.b64decode(doc["openai"]["encrypted"]))
        blob[-1] ^= 0x01
        doc["openai"]["encrypted"] = base64.b64encode(bytes(blob)).decode()
        store.path.write_text(json.dumps(doc))
        with pytest.raises(DecryptionError):
            await store.load("openai")

    # 12. an entry copied under another provider id does not decrypt
    async def test_entry_bound_to_provider(self, store: CredentialStore) -> None:
        await store.save(_record("openai"))
        doc = json.loads(store.path.read_text())
        doc["xai"] = {**doc["openai"], "metadata": {**doc["openai"]["metadata"], "provider": "xai"}}
        store.path.write_text(json.dumps(doc))
        with pytest.raises(DecryptionError):
            await store.load("xai")

    # 13. a different master key cannot read the document
    async def test_wrong_master_key(self, store: CredentialStore, tmp_path: Path) -> None:
        await store.save(_record())
        other = CredentialStore(store.path, tmp_path / "other" / "master.key")
        await other.init()
        with pytest.raises(DecryptionError):
            await other.load("openai")

    # 14. path traversal ids are refused before any I/O
    @pytest.mark.parametrize("provider", ["../etc/passwd", "a/b", "a\\b", "", "   "])
    async def test_rejects_path_components(self, store: CredentialStore, provider: str) -> None:
        with pytest.raises(InvalidProviderError):
            await store.load(provider)

    # 15. truncated master key is reported as a storage failure
    async def test_short_master_key(self, tmp_path: Path) -> None:
        key_path = tmp_path / "master.key"
        key_path.write_bytes(b"short")
        s = CredentialStore(tmp_path / "credentials.json", key_path)
        with pytest.raises(StorageError):
            await s.init()


@pytest.mark.unit
class TestCrypto:
    def test_encrypt_decrypt_round_trip(self) -> None:
        key = os.urandom(crypto.KEY_SIZE)
        blob = crypto.encrypt("hello", key, b"openai")
        assert crypto.decrypt(blob, key, b"openai") == "hello"

    def test_nonce_is_unique(self) -> None:
        key = os.urandom(crypto.KEY_SIZE)
        assert crypto.encrypt("same", key) != crypto.encrypt("same", key)

    def test_too_short(self) -> None:
        with pytest.raises(ValueError, match="too short"):
            crypto.decrypt(b"\x00" * 10, os.urandom(crypto.KEY_SIZE))

    def test_existing_key_is_reused(self, tmp_path: Path) -> None:
        key_path = tmp_path / "keys" / "master.key"
        first = crypto.load_or_create_master_key(key_path)
        second = crypto.load_or_create_master_key(key_path)
        assert first == second


@pytest.mark.unit
class TestMasterKeyLifecycle:
    @staticmethod
    def _key_path(store: CredentialStore) -> Path:
        return store.path.parent / "master.key"

    # 1. rotation re-encrypts every entry under a new key
    async def test_rotate_reencrypts_entries(self, store: CredentialStore) -> None:
        await store.save(_record("openai"))
        await store.save(_record("xai", "sk-xai-0000000000"))
        old_key = self._key_path(store).read_bytes()
        old_doc = json.loads(store.path.read_text())

        await store.rotate_master_key()

        new_key = self._key_path(store).read_bytes()
        new_doc = json.loads(store.path.read_text())
        assert new_key != old_key
        assert len(new_key) == crypto.KEY_SIZE
        assert stat.S_IMODE(os.stat(self._key_path(store)).st_mode) == 0o600
        for provider in ("openai", "xai"):
            assert new_doc[provider]["encrypted"] != old_doc[provider]["encrypted"]
            assert new_doc[provider]["metadata"] == old_doc[provider]["metadata"]
        assert (await store.load("openai")).secret.get_secret_value() == "sk-test-1234567890"
        assert (await store.load("xai")).secret.get_secret_value() == "sk-xai-0000000000"

    # 2. the old key no longer opens the rotated document
    async def test_old_key_rejected_after_rotation(self, store: CredentialStore) -> None:
        await store.save(_record())
        old_key = self._key_path(store).read_bytes()
        await store.rotate_master_key()
        blob = base64.b64decode(json.loads(store.path.read_text())["openai"]["encrypted"])
        with pytest.raises(InvalidTag):
            crypto.decrypt(blob, old_key, b"openai")

    # 3. rotation snapshots the previous key and document, read-only
    async def test_rotate_takes_backup(self, store: CredentialStore) -> None:
        await store.save(_record())
        old_key = self._key_path(store).read_bytes()
        old_doc = store.path.read_bytes()

        backup = await store.rotate_master_key()

        assert backup.has_document is True
        assert (backup.path / "master.key").read_bytes() == old_key
        assert (backup.path / "credentials.json").read_bytes() == old_doc
        assert stat.S_IMODE(os.stat(backup.path / "master.key").st_mode) == 0o400
        assert stat.S_IMODE(os.stat(backup.path).st_mode) == 0o700
        assert [b.backup_id for b in await store.list_key_backups()] == [backup.backup_id]

    # 4. only the newest backups are kept
    async def test_backups_pruned(self, tmp_path: Path) -> None:
        s = CredentialStore(tmp_path / "credentials.json", max_key_backups=2)
        await s.init()
        ids = [(await s.backup_master_key()).backup_id for _ in range(4)]
        listed = await s.list_key_backups()
        assert [b.backup_id for b in listed] == sorted(ids, reverse=True)[:2]
        assert len(list(s.backup_dir.iterdir())) == 2

    # 5. restore brings back the pre-rotation key and document
    async def test_restore_after_rotation(self, store: CredentialStore) -> None:
        await store.save(_record())
        old_key = self._key_path(store).read_bytes()
        backup = await store.rotate_master_key()

        restored = await store.restore_master_key()

        assert restored.backup_id == backup.backup_id
        assert self._key_path(store).read_bytes() == old_key
        assert (await store.load("openai")).secret.get_secret_value() == "sk-test-1234567890"
        assert await store.validate_key_integrity() is True

    # 6. restore by id picks that snapshot, not the newest
    async def test_restore_specific_backup(self, store: CredentialStore) -> None:
        await store.save(_record("openai"))
        first = await store.rotate_master_key()
        await store.save(_record("xai", "sk-xai-0000000000"))
        await store.rotate_master_key()

        await store.restore_master_key(first.backup_id)

        assert await store.list() == ["openai"]
        assert (await store.load("openai")).secret.get_secret_value() == "sk-test-1234567890"

    # 7. the restored key and document survive reopening the store
    async def test_restore_survives_reopen(self, store: CredentialStore) -> None:
        await store.save(_record())
        await store.rotate_master_key()
        await store.restore_master_key()
        reopened = CredentialStore(store.path)
        await reopened.init()
        assert (await reopened.load("openai")).secret.get_secret_value() == "sk-test-1234567890"

    # 8. unknown or absent backups raise KeyBackupNotFoundError
    async def test_restore_without_backups(self, store: CredentialStore) -> None:
        with pytest.raises(KeyBackupNotFoundError) as exc_info:
            await store.restore_master_key()
        assert exc_info.value.backup_id is None
        await store.backup_master_key()
        with pytest.raises(KeyBackupNotFoundError) as exc_info:
            await store.restore_master_key("19700101T000000000000Z")
        assert exc_info.value.backup_id == "19700101T000000000000Z"
        assert isinstance(exc_info.value, StorageError)

    # 9. an undecryptable entry aborts rotation before anything is written
    async def test_rotate_aborts_on_undecryptable_entry(self, store: CredentialStore) -> None:
        await store.save(_record())
        doc = json.loads(store.path.read_text())
        blob = bytearray(base64.b64decode(doc["openai"]["encrypted"]))
        blob[-1] ^= 0x01
        doc["openai"]["encrypted"] = base64.b64encode(bytes(blob)).decode()
        store.path.write_text(json.dumps(doc))
        old_key = self._key_path(store).read_bytes()

        with pytest.raises(DecryptionError):
            await store.rotate_master_key()

        assert self._key_path(store).read_bytes() == old_key
        assert await store.list_key_backups() == []

    # 10. a failed document write puts the old key back
    async def test_rotate_rolls_back_key(
        self, store: CredentialStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        await store.save(_record())
        old_key = self._key_path(store).read_bytes()
        old_doc = store.path.read_bytes()

        def _fail(document: dict) -> None:
            raise StorageError("disk full", str(store.path))

        monkeypatch.setattr(store, "_write_document", _fail)
        with pytest.raises(StorageError, match="disk full"):
            await store.rotate_master_key()
        monkeypatch.undo()

        assert self._key_path(store).read_bytes() == old_key
        assert store.path.read_bytes() == old_doc
        assert (await store.load("openai")).secret.get_secret_value() == "sk-test-1234567890"

    # 11. integrity check fails once an entry stops decrypting
    async def test_validate_key_integrity(self, store: CredentialStore) -> None:
        assert await store.validate_key_integrity() is True
        await store.save(_record())
        assert await store.validate_key_integrity() is True
        doc = json.loads(store.path.read_text())
        doc["openai"]["encrypted"] = base64.b64encode(b"\x00" * 40).decode()
        store.path.write_text(json.dumps(doc))
        assert await store.validate_key_integrity() is False

    # 12. rotation status follows the key file's age
    async def test_key_rotation_status(self, store: CredentialStore) -> None:
        status = await store.key_rotation_status(rotation_days=90)
        assert status.needs_rotation is False
        stale = time.time() - 91 * 86_400
        os.utime(self._key_path(store), (stale, stale))
        status = await store.key_rotation_status(rotation_days=90)
        assert status.needs_rotation is True
        assert status.next_rotation_at < datetime.now(timezone.utc)
        await store.rotate_master_key()
        assert (await store.key_rotation_status(rotation_days=90)).needs_rotation is False


@pytest.mark.unit
class TestOffThreadIO:
    # 1. document reads and writes never run on the event loop thread
    async def test_document_io_runs_in_worker_thread(
        self, store: CredentialStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        real_to_thread = asyncio.to_thread
        offloaded: list[str] = []

        async def _recording_to_thread(func, /, *args, **kwargs):
            offloaded.append(func.__name__)
            return await real_to_thread(func, *args, **kwargs)

        monkeypatch.setattr(asyncio, "to_thread", _recording_to_thread)
        await store.save(_record())
        await store.load("openai")
        await store.list()
        await store.delete("openai")

        assert offloaded.count("_write_document") == 2
        assert offloaded.count("_read_document") == 4

    # 2. concurrent saves are serialised and none is lost
    async def test_concurrent_saves(self, store: CredentialStore) -> None:
        providers = [f"provider{i}" for i in range(10)]
        await asyncio.gather(*(store.save(_record(p)) for p in providers))
        assert await store.list() == sorted(providers)


@pytest.mark.unit
class TestKeyFileHelpers:
    def test_write_master_key_replaces_atomically(self, tmp_path: Path) -> None:
        key_path = tmp_path / "keys" / "master.key"
        crypto.load_or_create_master_key(key_path)
        new_key = crypto.generate_master_key()
        crypto.write_master_key(key_path, new_key)
        assert key_path.read_bytes() == new_key
        assert stat.S_IMODE(os.stat(key_path).st_mode) == 0o600
        assert [p.name for p in key_path.parent.iterdir()] == ["master.key"]

    def test_write_master_key_rejects_wrong_length(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="32 bytes"):
            crypto.write_master_key(tmp_path / "master.key", b"short")
        assert not (tmp_path / "master.key").exists()

    def test_write_read_only_is_exclusive(self, tmp_path: Path) -> None:
        target = tmp_path / "snapshot"
        crypto.write_read_only(target, b"data")
        assert stat.S_IMODE(os.stat(target).st_mode) == 0o400
        with pytest.raises(FileExistsError):
            crypto.write_read_only(target, b"again")
