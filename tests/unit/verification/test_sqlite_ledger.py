"""Unit tests — SQLiteLedgerAdapter (append-only hash chain)."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

import aiosqlite
import pytest

from waltodo_guard.exceptions import GuardError, LedgerError, OperationTimeoutError
from waltodo_guard.verification import (
    AIActionType,
    CredentialClaim,
    SQLiteLedgerAdapter,
    VerificationRecord,
    VerificationService,
)
from waltodo_guard.verification.ledger import GENESIS_HASH, call_ledger, decode_proof
from waltodo_guard.verification.models import sha256_hex


def _record(record_id: str = "ver-1", user: str = "local") -> VerificationRecord:
    return VerificationRecord(
        id=record_id,
        request_hash=sha256_hex("req"),
        response_hash=sha256_hex("resp"),
        user=user,
        provider="openai",
        timestamp=time.time(),
        verification_type=AIActionType.SUMMARIZE,
        metadata={"privacy_level": "hash_only"},
    )


def _claim(expires_at: float | None = None) -> CredentialClaim:
    return CredentialClaim(
        provider="openai",
        credential_type="api_key",
        permission_level=2,
        issued_at=time.time(),
        expires_at=expires_at,
    )


@pytest.mark.unit
class TestSQLiteLedgerAdapter:
    @pytest.fixture
    async def sqlite_ledger(self, tmp_path: Path):
        adapter = SQLiteLedgerAdapter(tmp_path / "ledger" / "ledger.db")
        await adapter.init()
        yield adapter
        await adapter.close()

    # 1. init creates the database file
    async def test_init_creates_file(self, tmp_path: Path) -> None:
        db_path = tmp_path / "sub" / "ledger.db"
        adapter = SQLiteLedgerAdapter(db_path)
        await adapter.init()
        try:
            assert db_path.exists()
        finally:
            await adapter.close()

    # 2. record + get round-trips the record unchanged
    async def test_record_and_get(self, sqlite_ledger: SQLiteLedgerAdapter) -> None:
        record = _record()
        entry_hash = await sqlite_ledger.record_verification(record)
        assert len(entry_hash) == 64
        assert await sqlite_ledger.get_verification("ver-1") == record
        assert await sqlite_ledger.check_verification_status("ver-1") is True

    # 3. a record id is accepted only once
    async def test_duplicate_rejected(self, sqlite_ledger: SQLiteLedgerAdapter) -> None:
        await sqlite_ledger.record_verification(_record())
        with pytest.raises(LedgerError):
            await sqlite_ledger.record_verification(_record())

    # 4. unknown ids are not valid
    async def test_unknown(self, sqlite_ledger: SQLiteLedgerAdapter) -> None:
        assert await sqlite_ledger.get_verification("nope") is None
        assert await sqlite_ledger.check_verification_status("nope") is False
        assert await sqlite_ledger.revoke_verification("nope") is False
        with pytest.raises(LedgerError):
            await sqlite_ledger.generate_credential_proof("nope")

    # 5. credential claims can be attested, proven and revoked once
    async def test_credential_lifecycle(self, sqlite_ledger: SQLiteLedgerAdapter) -> None:
        attestation = await sqlite_ledger.verify_credential(_claim())
        vid = attestation.verification_id
        assert await sqlite_ledger.check_verification_status(vid) is True

        proof = decode_proof(await sqlite_ledger.generate_credential_proof(vid))
        assert proof["verification_id"] == vid
        assert proof["entry_hash"] == attestation.entry_hash
        assert proof["payload"]["provider"] == "openai"

        assert await sqlite_ledger.revoke_verification(vid) is True
        assert await sqlite_ledger.revoke_verification(vid) is False
        assert await sqlite_ledger.check_verification_status(vid) is False
        assert await sqlite_ledger.check_verification_status(f"revoke-{vid}") is False

    # 6. expired claims report invalid
    async def test_expired_claim(self, sqlite_ledger: SQLiteLedgerAdapter) -> None:
        attestation = await sqlite_ledger.verify_credential(_claim(expires_at=time.time() - 1))
        assert await sqlite_ledger.check_verification_status(attestation.verification_id) is False

    # 7. credential entries are not returned as AI verifications
    async def test_get_ignores_credential_entries(self, sqlite_ledger: SQLiteLedgerAdapter) -> None:
        attestation = await sqlite_ledger.verify_credential(_claim())
        assert await sqlite_ledger.get_verification(attestation.verification_id) is None
        assert await sqlite_ledger.list_verifications() == []

    # 8. list filters by user in insertion order
    async def test_list_by_user(self, sqlite_ledger: SQLiteLedgerAdapter) -> None:
        await sqlite_ledger.record_verification(_record("ver-a", "alice"))
        await sqlite_ledger.record_verification(_record("ver-b", "bob"))
        await sqlite_ledger.record_verification(_record("ver-c", "alice"))
        assert [r.id for r in await sqlite_ledger.list_verifications("alice")] == ["ver-a", "ver-c"]
        assert len(await sqlite_ledger.list_verifications()) == 3

    # 9. the chain links every entry to its predecessor
    async def test_chain_intact(self, sqlite_ledger: SQLiteLedgerAdapter) -> None:
        await sqlite_ledger.record_verification(_record("ver-a"))
        await sqlite_ledger.verify_credential(_claim())
        await sqlite_ledger.record_verification(_record("ver-b"))
        assert await sqlite_ledger.verify_chain() is True

    # 10. editing a stored payload breaks the chain and the entry's status
    async def test_tampered_row_detected(
        self, sqlite_ledger: SQLiteLedgerAdapter, tmp_path: Path
    ) -> None:
        await sqlite_ledger.record_verification(_record("ver-a"))
        await sqlite_ledger.record_verification(_record("ver-b"))
        forged = _record("ver-a").model_copy(update={"user": "mallory"})
        async with aiosqlite.connect(str(tmp_path / "ledger" / "ledger.db")) as db:
            await db.execute(
                "UPDATE ledger_entries SET payload=? WHERE entry_id=?",
                (forged.canonical_json(), "ver-a"),
            )
            await db.commit()
        assert await sqlite_ledger.verify_chain() is False
        assert await sqlite_ledger.check_verification_status("ver-a") is False

    # 11. the first entry chains from the genesis hash
    async def test_genesis(self, sqlite_ledger: SQLiteLedgerAdapter) -> None:
        payload_record = _record()
        entry_hash = await sqlite_ledger.record_verification(payload_record)
        assert entry_hash == sha256_hex(GENESIS_HASH + payload_record.canonical_json())

    # 12. entries survive a reopen
    async def test_persistence(self, tmp_path: Path) -> None:
        db_path = tmp_path / "ledger.db"
        first = SQLiteLedgerAdapter(db_path)
        await first.init()
        await first.record_verification(_record())
        await first.close()

        second = SQLiteLedgerAdapter(db_path)
        await second.init()
        try:
            assert await second.check_verification_status("ver-1") is True
            assert await second.verify_chain() is True
        finally:
            await second.close()

    # 13. end to end through the service
    async def test_service_round_trip(self, sqlite_ledger: SQLiteLedgerAdapter, audit) -> None:
        service = VerificationService(sqlite_ledger, audit)
        outcome = await service.create_verification(
            AIActionType.ANALYZE, {"todos": 3}, "ok", {"timestamp": str(time.time())}
        )
        assert await service.verify_proof(outcome.proof, {"todos": 3}, "ok") is True
        assert await sqlite_ledger.revoke_verification(outcome.record.id) is True
        assert await service.verify_proof(outcome.proof) is False


@pytest.mark.unit
class TestCallLedger:
    async def test_returns_value(self) -> None:
        async def ok() -> int:
            return 7

        assert await call_ledger(ok(), "op", 1.0) == 7

    async def test_timeout(self) -> None:
        with pytest.raises(OperationTimeoutError) as exc_info:
            await call_ledger(asyncio.sleep(1.0), "slow_op", 0.01)
        assert exc_info.value.timeout_seconds == 0.01

    async def test_guard_errors_pass_through(self) -> None:
        async def boom() -> None:
            raise LedgerError("already recorded")

        with pytest.raises(LedgerError, match="already recorded"):
            await call_ledger(boom(), "op", 1.0)

    async def test_other_errors_wrapped(self) -> None:
        async def boom() -> None:
            raise OSError("disk gone")

        with pytest.raises(LedgerError) as exc_info:
            await call_ledger(boom(), "op", 1.0)
        assert isinstance(exc_info.value, GuardError)
        assert isinstance(exc_info.value.__cause__, OSError)
