"""Verification layer — VerificationService.

Produces tamper-evident records of AI operations:

  1. Reject an unknown action type and an empty request or response
  2. Reject a ``metadata["timestamp"]`` outside the freshness window (replay)
  3. Hash request and response with SHA-256 (non-strings as canonical JSON)
  4. Anchor the record through the :class:`LedgerAdapter`
  5. Return the record, a portable proof, and whatever content the privacy
     level allows to be retained

Every adapter call is bounded by a timeout and never retried here.

Usage::

    service = VerificationService(ledger, audit_logger)
    outcome = await service.create_verification(
        AIActionType.SUMMARIZE, todos, summary, {"timestamp": str(time.time())},
        provider="openai",
    )
    await service.verify_proof(outcome.proof, todos, summary)
"""

from __future__ import annotations

import hmac
import math
import time
import uuid
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError

from waltodo_guard.exceptions import (
    LedgerError,
    ReplayAttackSuspectedError,
    TamperDetectedError,
    ValidationError,
)
from waltodo_guard.logging import bind_operation_context, clear_operation_context, get_logger
from waltodo_guard.security.audit import AuditEvent, AuditLogger
from waltodo_guard.verification.ledger import (
    CredentialAttestation,
    CredentialClaim,
    LedgerAdapter,
    call_ledger,
    decode_proof,
    encode_proof,
)
from waltodo_guard.verification.models import (
    AIActionType,
    PrivacyLevel,
    VerificationOutcome,
    VerificationRecord,
    canonical_text,
    redact_summary,
    sha256_hex,
)

if TYPE_CHECKING:
    from waltodo_guard.credentials.manager import CredentialManager

log = get_logger(__name__)

# Timestamps above this are read as epoch milliseconds.
_MILLISECONDS_THRESHOLD = 1e11

_COMPARED_FIELDS = (
    "request_hash",
    "response_hash",
    "user",
    "provider",
    "timestamp",
    "verification_type",
    "metadata",
)


class VerificationService:
    """Creates and checks ledger-anchored verification records.

    Parameters
    ----------
    ledger:
        The adapter proofs are persisted through.
    audit:
        AuditLogger for verification events.
    credentials:
        Needed only for :meth:`verify_credential` / :meth:`revoke_credential`.
    freshness_window:
        Seconds a metadata timestamp may differ from now before it is treated
        as a replay.
    default_timeout:
        Bound on an adapter call when the caller gives none.
    """

    def __init__(
        self,
        ledger: LedgerAdapter,
        audit: AuditLogger,
        *,
        credentials: CredentialManager | None = None,
        freshness_window: float = 300.0,
        default_timeout: float = 30.0,
        default_privacy: PrivacyLevel = PrivacyLevel.HASH_ONLY,
        default_user: str = "local",
    ) -> None:
        self._ledger = ledger
        self._audit = audit
        self._credentials = credentials
        self._window = freshness_window
        self._default_timeout = default_timeout
        self._default_privacy = default_privacy
        self._default_user = default_user

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_verification(
        self,
        action_type: AIActionType | int | str,
        request: Any,
        response: Any,
        metadata: dict[str, Any] | None = None,
        privacy_level: PrivacyLevel | str | None = None,
        *,
        user: str | None = None,
        provider: str = "unknown",
        timeout: float | None = None,
    ) -> VerificationOutcome:
        action = self._parse_action(action_type)
        request_text = self._require_content(request, "request")
        response_text = self._require_content(response, "response")
        privacy = PrivacyLevel(privacy_level) if privacy_level else self._default_privacy

        meta = {str(k): str(v) for k, v in (metadata or {}).items()}
        if "timestamp" in meta:
            await self._check_fresh(meta["timestamp"], provider)
        meta["privacy_level"] = privacy.value

        record = VerificationRecord(
            id=f"ver-{uuid.uuid4().hex}",
            request_hash=sha256_hex(request_text),
            response_hash=sha256_hex(response_text),
            user=user or self._default_user,
            provider=provider,
            timestamp=time.time(),
            verification_type=action,
            metadata=meta,
        )

        bind_operation_context(provider=provider, verification_id=record.id)
        try:
            await call_ledger(
                self._ledger.record_verification(record),
                "record_verification",
                self._bound(timeout),
            )
        finally:
            clear_operation_context()

        await self._audit.log(
            AuditEvent.VERIFICATION_CREATED,
            provider=provider,
            verification_id=record.id,
            action_type=action.name.lower(),
            privacy_level=privacy.value,
        )
        log.info("verification_created", verification_id=record.id, action=action.name)

        request_content, response_content = self._retained(privacy, request_text, response_text)
        return VerificationOutcome(
            record=record,
            proof=self.generate_proof(record),
            privacy_level=privacy,
            request_content=request_content,
            response_content=response_content,
        )

    async def summarize(
        self, todos: Any, summary: str, *, provider: str = "unknown", **kwargs: Any
    ) -> VerificationOutcome:
        return await self.create_verification(
            AIActionType.SUMMARIZE,
            todos,
            summary,
            self._standard_metadata(todos, summary_length=len(summary)),
            provider=provider,
            **kwargs,
        )

    async def categorize(
        self,
        todos: Any,
        categories: dict[str, list[str]],
        *,
        provider: str = "unknown",
        **kwargs: Any,
    ) -> VerificationOutcome:
        return await self.create_verification(
            AIActionType.CATEGORIZE,
            todos,
            categories,
            self._standard_metadata(todos, category_count=len(categories)),
            provider=provider,
            **kwargs,
        )

    async def prioritize(
        self,
        todos: Any,
        priorities: dict[str, int],
        *,
        provider: str = "unknown",
        **kwargs: Any,
    ) -> VerificationOutcome:
        return await self.create_verification(
            AIActionType.PRIORITIZE,
            todos,
            priorities,
            self._standard_metadata(todos),
            provider=provider,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Check
    # ------------------------------------------------------------------

    async def verify_proof(
        self,
        proof: VerificationRecord | str,
        request: Any = None,
        response: Any = None,
        *,
        timeout: float | None = None,
    ) -> bool:
        """Compare *proof* with the ledger copy and optional original content.

        Raises :class:`TamperDetectedError` on any mismatch.  Returns the
        ledger's current status (``False`` once revoked).
        """
        record = proof if isinstance(proof, VerificationRecord) else self.parse_proof(proof)
        bound = self._bound(timeout)
        stored = await call_ledger(
            self._ledger.get_verification(record.id), "get_verification", bound
        )
        if stored is None:
            await self._tampered(record, ["id"])

        mismatched = [f for f in _COMPARED_FIELDS if getattr(stored, f) != getattr(record, f)]
        if request is not None and not _hash_matches(request, stored.request_hash):
            mismatched.append("request")
        if response is not None and not _hash_matches(response, stored.response_hash):
            mismatched.append("response")
        if mismatched:
            await self._tampered(record, mismatched)

        return await self.check_verification_status(record.id, timeout=bound)

    async def check_verification_status(
        self, verification_id: str, *, timeout: float | None = None
    ) -> bool:
        return await call_ledger(
            self._ledger.check_verification_status(verification_id),
            "check_verification_status",
            self._bound(timeout),
        )

    async def list_verifications(
        self, user: str | None = None, *, timeout: float | None = None
    ) -> list[VerificationRecord]:
        return await call_ledger(
            self._ledger.list_verifications(user), "list_verifications", self._bound(timeout)
        )

    def check_freshness(self, timestamp: Any, now: float | None = None) -> None:
        """Raise :class:`ReplayAttackSuspectedError` if *timestamp* is stale or future."""
        try:
            ts = float(timestamp)
        except (TypeError, ValueError):
            ts = math.nan
        if not math.isfinite(ts):
            raise ValidationError(
                "metadata.timestamp: Timestamp must be a finite number",
                field="metadata.timestamp",
                code="INVALID_TIMESTAMP",
            )
        if ts > _MILLISECONDS_THRESHOLD:
            ts /= 1000.0
        if abs((now if now is not None else time.time()) - ts) > self._window:
            raise ReplayAttackSuspectedError(ts, self._window)

    # ------------------------------------------------------------------
    # Proofs
    # ------------------------------------------------------------------

    @staticmethod
    def generate_proof(record: VerificationRecord) -> str:
        return encode_proof({"record": record.model_dump(mode="json"), "digest": record.digest()})

    @staticmethod
    def parse_proof(proof: str) -> VerificationRecord:
        data = decode_proof(proof)
        try:
            record = VerificationRecord.model_validate(data.get("record"))
        except PydanticValidationError as exc:
            raise LedgerError("Proof does not contain a valid verification record") from exc
        digest = data.get("digest")
        if not isinstance(digest, str) or not hmac.compare_digest(digest, record.digest()):
            raise TamperDetectedError(record.id, ["digest"])
        return record

    # ------------------------------------------------------------------
    # Credential attestation
    # ------------------------------------------------------------------

    async def verify_credential(
        self, provider: str, *, timeout: float | None = None
    ) -> CredentialAttestation:
        """Anchor *provider*'s credential claim and store the proof on the record."""
        credentials = self._require_credentials()
        record = await credentials.get_record(provider)
        bound = self._bound(timeout)
        attestation = await call_ledger(
            self._ledger.verify_credential(CredentialClaim.from_record(record)),
            "verify_credential",
            bound,
        )
        proof = await call_ledger(
            self._ledger.generate_credential_proof(attestation.verification_id),
            "generate_credential_proof",
            bound,
        )
        await credentials.mark_verified(record.provider, attestation.verification_id, proof)
        return attestation

    async def revoke_credential(self, provider: str, *, timeout: float | None = None) -> bool:
        credentials = self._require_credentials()
        record = await credentials.get_record(provider)
        if record.verification_id is None:
            return False
        revoked = await call_ledger(
            self._ledger.revoke_verification(record.verification_id),
            "revoke_verification",
            self._bound(timeout),
        )
        await credentials.mark_verified(record.provider, None, None)
        await self._audit.log(
            AuditEvent.VERIFICATION_REVOKED,
            provider=record.provider,
            verification_id=record.verification_id,
        )
        return revoked

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _bound(self, timeout: float | None) -> float:
        return timeout if timeout is not None else self._default_timeout

    def _require_credentials(self) -> CredentialManager:
        if self._credentials is None:
            raise LedgerError("Credential attestation needs a CredentialManager")
        return self._credentials

    @staticmethod
    def _parse_action(action_type: AIActionType | int | str) -> AIActionType:
        try:
            if isinstance(action_type, str):
                return AIActionType[action_type.strip().upper()]
            return AIActionType(action_type)
        except (KeyError, ValueError):
            raise ValidationError(
                f"action_type: Unknown AI action type {action_type!r}",
                field="action_type",
                code="INVALID_ACTION_TYPE",
            ) from None

    @staticmethod
    def _require_content(value: Any, field: str) -> str:
        text = canonical_text(value) if value is not None else ""
        if not text.strip() or text in ("{}", "[]", "null", '""'):
            raise ValidationError(
                f"{field}: Content cannot be empty",
                field=field,
                code="EMPTY_CONTENT",
            )
        return text

    @staticmethod
    def _retained(
        privacy: PrivacyLevel, request_text: str, response_text: str
    ) -> tuple[str | None, str | None]:
        if privacy is PrivacyLevel.PUBLIC:
            return request_text, response_text
        if privacy is PrivacyLevel.PRIVATE:
            return redact_summary(request_text), redact_summary(response_text)
        return None, None

    @staticmethod
    def _standard_metadata(todos: Any, **extra: Any) -> dict[str, Any]:
        meta: dict[str, Any] = {"timestamp": time.time()}
        if isinstance(todos, (list, tuple)):
            meta["todo_count"] = len(todos)
        meta.update(extra)
        return meta

    async def _check_fresh(self, timestamp: str, provider: str) -> None:
        try:
            self.check_freshness(timestamp)
        except ReplayAttackSuspectedError:
            await self._audit.log(
                AuditEvent.REPLAY_REJECTED, provider=provider, timestamp=timestamp
            )
            log.warning("verification_replay_rejected", provider=provider)
            raise

    async def _tampered(self, record: VerificationRecord, fields: list[str]) -> None:
        await self._audit.log(
            AuditEvent.TAMPER_DETECTED,
            provider=record.provider,
            verification_id=record.id,
            fields=fields,
        )
        log.warning("verification_tamper_detected", verification_id=record.id, fields=fields)
        raise TamperDetectedError(record.id, fields)


def _hash_matches(content: Any, expected: str) -> bool:
    return hmac.compare_digest(sha256_hex(canonical_text(content)), expected)
