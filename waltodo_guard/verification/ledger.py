"""Verification layer — ledger adapter collaborator.

``LedgerAdapter`` is the interface through which proofs are anchored to a
tamper-evident log.  The on-chain ledger lives outside this package; the
production implementation shipped here, ``SQLiteLedgerAdapter``, is a local
append-only hash chain:

    entry_hash = sha256(prev_hash + payload)

Nothing is ever updated or deleted.  A revocation is itself a new entry that
points at its target, so the full history can be re-verified with
:meth:`SQLiteLedgerAdapter.verify_chain`.

Schema::

    CREATE TABLE ledger_entries (
        seq         INTEGER PRIMARY KEY AUTOINCREMENT,
        entry_id    TEXT NOT NULL UNIQUE,
        kind        TEXT NOT NULL,      -- ai_verification | credential | revocation
        user_id     TEXT NOT NULL DEFAULT '',
        provider    TEXT NOT NULL DEFAULT '',
        payload     TEXT NOT NULL,      -- canonical JSON
        prev_hash   TEXT NOT NULL,
        entry_hash  TEXT NOT NULL,
        created_at  REAL NOT NULL
    );
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hmac
import json
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import aiosqlite

from waltodo_guard.exceptions import GuardError, LedgerError, OperationTimeoutError
from waltodo_guard.logging import get_logger
from waltodo_guard.verification.models import VerificationRecord, sha256_hex

if TYPE_CHECKING:
    from waltodo_guard.credentials.models import CredentialRecord

log = get_logger(__name__)

T = TypeVar("T")

GENESIS_HASH = "0" * 64

_KIND_AI = "ai_verification"
_KIND_CREDENTIAL = "credential"
_KIND_REVOCATION = "revocation"

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS ledger_entries (
    seq         INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id    TEXT NOT NULL UNIQUE,
    kind        TEXT NOT NULL,
    user_id     TEXT NOT NULL DEFAULT '',
    provider    TEXT NOT NULL DEFAULT '',
    payload     TEXT NOT NULL,
    prev_hash   TEXT NOT NULL,
    entry_hash  TEXT NOT NULL,
    created_at  REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_ledger_kind_user ON ledger_entries (kind, user_id);
"""


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CredentialClaim:
    """The non-secret facts about a credential that get anchored."""

    provider: str
    credential_type: str
    permission_level: int
    issued_at: float
    expires_at: float | None = None

    @classmethod
    def from_record(cls, record: CredentialRecord) -> CredentialClaim:
        return cls(
            provider=record.provider,
            credential_type=record.credential_type.value,
            permission_level=int(record.permission_level),
            issued_at=time.time(),
            expires_at=record.expires_at,
        )


@dataclass(frozen=True)
class CredentialAttestation:
    verification_id: str
    provider: str
    issued_at: float
    expires_at: float | None
    entry_hash: str


def encode_proof(data: dict[str, Any]) -> str:
    raw = json.dumps(data, sort_keys=True, separators=(",", ":"))
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_proof(proof: str) -> dict[str, Any]:
    """Accept a base64-encoded or plain JSON proof."""
    text = proof.strip()
    if not text.startswith("{"):
        try:
            text = base64.b64decode(text, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise LedgerError("Proof is neither JSON nor base64-encoded JSON") from exc
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise LedgerError("Proof is not valid JSON") from exc
    if not isinstance(data, dict):
        raise LedgerError("Proof must be a JSON object")
    return data


async def call_ledger(awaitable: Awaitable[T], operation: str, timeout: float) -> T:
    """Await a ledger call bounded by *timeout*.

    Expiry raises :class:`OperationTimeoutError`; any non-GuardError failure
    becomes :class:`LedgerError` with the cause chained.  Nothing is retried.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        raise OperationTimeoutError(operation, timeout) from None
    except GuardError:
        raise
    except Exception as exc:
        log.warning("ledger_call_failed", operation=operation, error=type(exc).__name__)
        raise LedgerError(
            f"Ledger call '{operation}' failed: {type(exc).__name__}",
            context={"operation": operation},
        ) from exc


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------


class LedgerAdapter(ABC):
    """Anchors credential claims and AI verification records."""

    @abstractmethod
    async def verify_credential(self, claim: CredentialClaim) -> CredentialAttestation:
        """Anchor *claim* and return the attestation identifying it."""
        ...

    @abstractmethod
    async def check_verification_status(self, verification_id: str) -> bool:
        """``True`` if the entry exists, is intact, unrevoked and unexpired."""
        ...

    @abstractmethod
    async def generate_credential_proof(self, verification_id: str) -> str:
        """Return a portable proof string for the entry."""
        ...

    @abstractmethod
    async def revoke_verification(self, verification_id: str) -> bool:
        """Revoke the entry.  Returns ``False`` if it was unknown or already revoked."""
        ...

    @abstractmethod
    async def record_verification(self, record: VerificationRecord) -> str:
        """Persist an AI verification record; returns its ledger entry hash."""
        ...

    @abstractmethod
    async def get_verification(self, verification_id: str) -> VerificationRecord | None:
        ...

    @abstractmethod
    async def list_verifications(self, user: str | None = None) -> list[VerificationRecord]:
        ...

    async def close(self) -> None:
        """Release resources (no-op by default)."""


# ---------------------------------------------------------------------------
# SQLiteLedgerAdapter: local hash chain
# ---------------------------------------------------------------------------


class SQLiteLedgerAdapter(LedgerAdapter):
    """Append-only, hash-chained ledger in a local SQLite database."""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path).expanduser()
        self._conn: aiosqlite.Connection | None = None
        self._append_lock = asyncio.Lock()

    async def init(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(str(self._db_path))
        self._conn.row_factory = aiosqlite.Row
        await self._conn.executescript(_SCHEMA_SQL)
        await self._conn.commit()
        log.debug("ledger_init", path=str(self._db_path))

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    # ------------------------------------------------------------------
    # LedgerAdapter
    # ------------------------------------------------------------------

    async def verify_credential(self, claim: CredentialClaim) -> CredentialAttestation:
        entry_id = f"cred-{uuid.uuid4().hex}"
        entry_hash = await self._append(
            entry_id, _KIND_CREDENTIAL, json.dumps(asdict(claim), sort_keys=True),
            provider=claim.provider,
        )
        return CredentialAttestation(
            verification_id=entry_id,
            provider=claim.provider,
            issued_at=claim.issued_at,
            expires_at=claim.expires_at,
            entry_hash=entry_hash,
        )

    async def check_verification_status(self, verification_id: str) -> bool:
        row = await self._fetch_entry(verification_id)
        if row is None or row["kind"] == _KIND_REVOCATION:
            return False
        if not self._row_intact(row):
            log.warning("ledger_entry_corrupted", entry_id=verification_id)
            return False
        if await self._is_revoked(verification_id):
            return False
        if row["kind"] == _KIND_CREDENTIAL:
            expires_at = json.loads(row["payload"]).get("expires_at")
            if expires_at is not None and time.time() >= expires_at:
                return False
        return True

    async def generate_credential_proof(self, verification_id: str) -> str:
        row = await self._fetch_entry(verification_id)
        if row is None:
            raise LedgerError(
                f"Unknown verification '{verification_id}'",
                context={"verification_id": verification_id},
            )
        return encode_proof(
            {
                "verification_id": row["entry_id"],
                "kind": row["kind"],
                "payload": json.loads(row["payload"]),
                "prev_hash": row["prev_hash"],
                "entry_hash": row["entry_hash"],
            }
        )

    async def revoke_verification(self, verification_id: str) -> bool:
        row = await self._fetch_entry(verification_id)
        if row is None or row["kind"] == _KIND_REVOCATION:
            return False
        if await self._is_revoked(verification_id):
            return False
        await self._append(
            f"revoke-{verification_id}",
            _KIND_REVOCATION,
            json.dumps({"target": verification_id}),
            user=row["user_id"],
            provider=row["provider"],
        )
        return True

    async def record_verification(self, record: VerificationRecord) -> str:
        if await self._fetch_entry(record.id) is not None:
            raise LedgerError(
                f"Verification '{record.id}' already recorded",
                context={"verification_id": record.id},
            )
        return await self._append(
            record.id, _KIND_AI, record.canonical_json(),
            user=record.user, provider=record.provider,
        )

    async def get_verification(self, verification_id: str) -> VerificationRecord | None:
        row = await self._fetch_entry(verification_id)
        if row is None or row["kind"] != _KIND_AI:
            return None
        return VerificationRecord.model_validate_json(row["payload"])

    async def list_verifications(self, user: str | None = None) -> list[VerificationRecord]:
        assert self._conn is not None
        if user is None:
            cursor = await self._conn.execute(
                "SELECT payload FROM ledger_entries WHERE kind=? ORDER BY seq", (_KIND_AI,)
            )
        else:
            cursor = await self._conn.execute(
                "SELECT payload FROM ledger_entries WHERE kind=? AND user_id=? ORDER BY seq",
                (_KIND_AI, user),
            )
        rows = await cursor.fetchall()
        return [VerificationRecord.model_validate_json(r["payload"]) for r in rows]

    # ------------------------------------------------------------------
    # Chain integrity
    # ------------------------------------------------------------------

    async def verify_chain(self) -> bool:
        """Walk every entry and check its link and hash."""
        assert self._conn is not None
        cursor = await self._conn.execute("SELECT * FROM ledger_entries ORDER BY seq")
        prev = GENESIS_HASH
        async for row in cursor:
            if row["prev_hash"] != prev or not self._row_intact(row):
                log.warning("ledger_chain_broken", entry_id=row["entry_id"], seq=row["seq"])
                return False
            prev = row["entry_hash"]
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _append(
        self,
        entry_id: str,
        kind: str,
        payload: str,
        *,
        user: str = "",
        provider: str = "",
    ) -> str:
        assert self._conn is not None
        async with self._append_lock:
            cursor = await self._conn.execute(
                "SELECT entry_hash FROM ledger_entries ORDER BY seq DESC LIMIT 1"
            )
            last = await cursor.fetchone()
            prev_hash = last["entry_hash"] if last else GENESIS_HASH
            entry_hash = sha256_hex(prev_hash + payload)
            await self._conn.execute(
                """INSERT INTO ledger_entries
                   (entry_id, kind, user_id, provider, payload, prev_hash, entry_hash, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (entry_id, kind, user, provider, payload, prev_hash, entry_hash, time.time()),
            )
            await self._conn.commit()
        log.debug("ledger_appended", entry_id=entry_id, kind=kind)
        return entry_hash

    async def _fetch_entry(self, entry_id: str) -> aiosqlite.Row | None:
        assert self._conn is not None
        cursor = await self._conn.execute(
            "SELECT * FROM ledger_entries WHERE entry_id=?", (entry_id,)
        )
        return await cursor.fetchone()

    async def _is_revoked(self, entry_id: str) -> bool:
        return await self._fetch_entry(f"revoke-{entry_id}") is not None

    @staticmethod
    def _row_intact(row: aiosqlite.Row) -> bool:
        expected = sha256_hex(row["prev_hash"] + row["payload"])
        return hmac.compare_digest(expected, row["entry_hash"])
