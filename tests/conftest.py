"""Shared pytest fixtures for the waltodo-guard test suite.

The collaborator interfaces (``CredentialValidator``, ``LedgerAdapter``,
``EventBus``) get in-memory doubles here so no test touches the network.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import asdict
from pathlib import Path
from typing import Any, AsyncGenerator

import pytest
from pydantic import SecretStr

from waltodo_guard.config import Settings
from waltodo_guard.credentials import CredentialManager, CredentialStore
from waltodo_guard.credentials.endpoint import CredentialValidator
from waltodo_guard.events.bus import EventBus
from waltodo_guard.exceptions import LedgerError
from waltodo_guard.security import AuditLogger, ContentGuard, PermissionManager, ThreatDetector
from waltodo_guard.verification import (
    CredentialAttestation,
    CredentialClaim,
    LedgerAdapter,
    VerificationRecord,
    VerificationService,
)
from waltodo_guard.verification.ledger import encode_proof


# ---------------------------------------------------------------------------
# Collaborator doubles
# ---------------------------------------------------------------------------


class RecordingEventBus(EventBus):
    """Keeps every emitted event in memory."""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    async def emit(self, topic: str, event: dict[str, Any]) -> None:
        self.events.append(self._stamp(topic, event))

    def types(self) -> list[str]:
        return [e["event_type"] for e in self.events]

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [e for e in self.events if e["event_type"] == event_type]


class StubCredentialValidator(CredentialValidator):
    """Accepts exactly the secrets in ``accepted``.

    ``delay`` makes every call sleep first; ``error`` makes it raise.
    """

    def __init__(self, accepted: set[str] | None = None) -> None:
        self.accepted: set[str] = accepted or set()
        self.delay = 0.0
        self.error: Exception | None = None
        self.calls: list[str] = []
        self.closed = False

    async def validate(self, provider: str, secret: SecretStr) -> bool:
        self.calls.append(provider)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return secret.get_secret_value() in self.accepted

    async def close(self) -> None:
        self.closed = True


class InMemoryLedgerAdapter(LedgerAdapter):
    """Dictionary-backed ledger.  ``delay`` slows every call down."""

    def __init__(self) -> None:
        self.records: dict[str, VerificationRecord] = {}
        self.claims: dict[str, CredentialClaim] = {}
        self.revoked: set[str] = set()
        self.delay = 0.0
        self.closed = False

    async def _pause(self) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)

    async def verify_credential(self, claim: CredentialClaim) -> CredentialAttestation:
        await self._pause()
        entry_id = f"cred-{uuid.uuid4().hex}"
        self.claims[entry_id] = claim
        return CredentialAttestation(
            verification_id=entry_id,
            provider=claim.provider,
            issued_at=claim.issued_at,
            expires_at=claim.expires_at,
            entry_hash="0" * 64,
        )

    async def check_verification_status(self, verification_id: str) -> bool:
        await self._pause()
        known = verification_id in self.records or verification_id in self.claims
        return known and verification_id not in self.revoked

    async def generate_credential_proof(self, verification_id: str) -> str:
        await self._pause()
        claim = self.claims.get(verification_id)
        if claim is None:
            raise LedgerError(f"Unknown verification '{verification_id}'")
        return encode_proof({"verification_id": verification_id, "payload": asdict(claim)})

    async def revoke_verification(self, verification_id: str) -> bool:
        await self._pause()
        if verification_id in self.revoked:
            return False
        if verification_id not in self.records and verification_id not in self.claims:
            return False
        self.revoked.add(verification_id)
        return True

    async def record_verification(self, record: VerificationRecord) -> str:
        await self._pause()
        if record.id in self.records:
            raise LedgerError(f"Verification '{record.id}' already recorded")
        self.records[record.id] = record
        return record.digest()

    async def get_verification(self, verification_id: str) -> VerificationRecord | None:
        await self._pause()
        return self.records.get(verification_id)

    async def list_verifications(self, user: str | None = None) -> list[VerificationRecord]:
        await self._pause()
        return [r for r in self.records.values() if user is None or r.user == user]

    async def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    return Settings(
        credentials={
            "store_path": str(tmp_path / "guard" / "credentials.json"),
            "master_key_path": str(tmp_path / "guard" / "master.key"),
        },
        verification={"ledger_db_path": str(tmp_path / "guard" / "ledger.db")},
        logging={"level": "debug", "format": "console", "audit_file": None},
    )


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


@pytest.fixture
def bus() -> RecordingEventBus:
    return RecordingEventBus()


@pytest.fixture
def audit(bus: RecordingEventBus) -> AuditLogger:
    return AuditLogger(bus=bus)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


@pytest.fixture
async def store(tmp_path: Path) -> AsyncGenerator[CredentialStore, None]:
    s = CredentialStore(tmp_path / "guard" / "credentials.json")
    await s.init()
    yield s


@pytest.fixture
def validator() -> StubCredentialValidator:
    return StubCredentialValidator(accepted={"sk-valid-key"})


@pytest.fixture
def manager(
    store: CredentialStore, audit: AuditLogger, validator: StubCredentialValidator
) -> CredentialManager:
    return CredentialManager(store, audit, validator=validator, max_failed_auth=3, environ={})


# ---------------------------------------------------------------------------
# Security
# ---------------------------------------------------------------------------


@pytest.fixture
def ledger() -> InMemoryLedgerAdapter:
    return InMemoryLedgerAdapter()


@pytest.fixture
def permissions(
    manager: CredentialManager, audit: AuditLogger, ledger: InMemoryLedgerAdapter
) -> PermissionManager:
    return PermissionManager(manager, audit, ledger=ledger, ledger_timeout=1.0)


@pytest.fixture
def detector() -> ThreatDetector:
    return ThreatDetector()


@pytest.fixture
def content_guard(detector: ThreatDetector, audit: AuditLogger) -> ContentGuard:
    return ContentGuard(detector, audit)


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


@pytest.fixture
def verification(
    ledger: InMemoryLedgerAdapter, audit: AuditLogger, manager: CredentialManager
) -> VerificationService:
    return VerificationService(
        ledger, audit, credentials=manager, freshness_window=300.0, default_timeout=1.0
    )


@pytest.fixture
def fresh_metadata() -> dict[str, str]:
    return {"timestamp": str(time.time()), "source": "cli"}


@pytest.fixture
def sample_todos() -> list[dict[str, Any]]:
    return [
        {"id": "1", "title": "Buy milk", "priority": "low", "tags": ["home"]},
        {"id": "2", "title": "File taxes", "priority": "high", "due_date": "2026-04-15"},
    ]
