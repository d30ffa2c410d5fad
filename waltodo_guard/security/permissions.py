"""Security layer — PermissionManager.

Authorizes AI operations against the permission level stored on each
provider's credential:

  - Every operation has a configured minimum level; unregistered operations
    require ``ADMIN``
  - Unknown (or expired) providers have level ``NO_ACCESS`` and are denied
  - No update path may assign ``ADMIN``; it is only reachable by writing a
    record straight through :class:`CredentialStore` at bootstrap
  - Every change, denial and blocked escalation emits an audit event

Usage::

    pm = PermissionManager(credential_manager, audit_logger)
    await pm.verify_operation_permission("openai", "categorize")
    await pm.update_permissions("openai", PermissionLevel.FULL)
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING

from waltodo_guard.credentials.models import CredentialRecord, PermissionLevel, normalize_provider
from waltodo_guard.exceptions import (
    CredentialError,
    PermissionDeniedError,
    PermissionEscalationError,
)
from waltodo_guard.logging import get_logger
from waltodo_guard.security.audit import AuditEvent, AuditLogger
from waltodo_guard.verification.ledger import CredentialClaim, LedgerAdapter, call_ledger

if TYPE_CHECKING:
    from waltodo_guard.credentials.manager import CredentialManager

log = get_logger(__name__)

DEFAULT_OPERATION_MINIMUMS: dict[str, PermissionLevel] = {
    "summarize": PermissionLevel.READ_ONLY,
    "analyze": PermissionLevel.READ_ONLY,
    "categorize": PermissionLevel.STANDARD,
    "prioritize": PermissionLevel.STANDARD,
    "suggest": PermissionLevel.STANDARD,
    "group": PermissionLevel.STANDARD,
    "schedule": PermissionLevel.STANDARD,
    "detect_dependencies": PermissionLevel.STANDARD,
    "estimate_effort": PermissionLevel.STANDARD,
    "train": PermissionLevel.FULL,
    "fine_tune": PermissionLevel.FULL,
    "generate_credential": PermissionLevel.ADMIN,
    "manage_providers": PermissionLevel.ADMIN,
}


class PermissionManager:
    """Operation-level access control with audit trail.

    Parameters
    ----------
    credentials:
        Source of each provider's stored permission level.
    audit:
        AuditLogger for permission events.
    operation_minimums:
        Operation -> minimum level.  Defaults to
        :data:`DEFAULT_OPERATION_MINIMUMS`.
    ledger:
        Optional ledger adapter.  When set, a level change on a verified
        credential revokes the old verification and anchors a new one.
    ledger_timeout:
        Bound on each ledger call made during re-verification.
    """

    def __init__(
        self,
        credentials: CredentialManager,
        audit: AuditLogger,
        *,
        operation_minimums: Mapping[str, PermissionLevel | str] | None = None,
        ledger: LedgerAdapter | None = None,
        ledger_timeout: float = 30.0,
    ) -> None:
        self._credentials = credentials
        self._audit = audit
        self._ledger = ledger
        self._ledger_timeout = ledger_timeout
        minimums = operation_minimums if operation_minimums is not None else DEFAULT_OPERATION_MINIMUMS
        self._minimums: dict[str, PermissionLevel] = {
            op.lower(): PermissionLevel.parse(level) for op, level in minimums.items()
        }

    # ------------------------------------------------------------------
    # Levels
    # ------------------------------------------------------------------

    def required_level(self, operation: str) -> PermissionLevel:
        return self._minimums.get(operation.strip().lower(), PermissionLevel.ADMIN)

    def register_operation(self, operation: str, minimum: PermissionLevel | str) -> None:
        self._minimums[operation.strip().lower()] = PermissionLevel.parse(minimum)

    async def get_permission_level(self, provider: str) -> PermissionLevel:
        """Stored level, or ``NO_ACCESS`` when the provider has no usable credential."""
        try:
            record = await self._credentials.get_record(provider)
        except CredentialError as exc:
            log.debug("permission_level_unavailable", reason=type(exc).__name__)
            return PermissionLevel.NO_ACCESS
        return record.permission_level

    # ------------------------------------------------------------------
    # Check
    # ------------------------------------------------------------------

    async def check_permission(self, provider: str, operation: str) -> bool:
        level = await self.get_permission_level(provider)
        if level is PermissionLevel.NO_ACCESS:
            return False
        return level >= self.required_level(operation)

    async def verify_operation_permission(self, provider: str, operation: str) -> None:
        """Raise :class:`PermissionDeniedError` unless *provider* may run *operation*."""
        level = await self.get_permission_level(provider)
        required = self.required_level(operation)
        if level is not PermissionLevel.NO_ACCESS and level >= required:
            return

        await self._audit.log(
            AuditEvent.PERMISSION_DENIED,
            provider=provider,
            operation=operation,
            current_level=level.label,
            required_level=required.label,
        )
        log.warning(
            "permission_denied",
            provider=provider,
            operation=operation,
            current_level=level.label,
            required_level=required.label,
        )
        raise PermissionDeniedError(
            provider=provider,
            operation=operation,
            current_level=level.label,
            required_level=required.label,
        )

    async def get_allowed_operations(self, provider: str) -> list[str]:
        level = await self.get_permission_level(provider)
        if level is PermissionLevel.NO_ACCESS:
            return []
        return sorted(op for op, minimum in self._minimums.items() if level >= minimum)

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def update_permissions(
        self, provider: str, new_level: PermissionLevel | int | str
    ) -> CredentialRecord:
        """Change *provider*'s level.  ``ADMIN`` raises :class:`PermissionEscalationError`."""
        provider = normalize_provider(provider)
        level = PermissionLevel.parse(new_level)
        if level >= PermissionLevel.ADMIN:
            await self._audit.log(
                AuditEvent.PERMISSION_ESCALATION_BLOCKED,
                provider=provider,
                requested_level=level.label,
            )
            log.warning("permission_escalation_blocked", provider=provider)
            raise PermissionEscalationError(provider, level.label)

        previous = await self._credentials.get_record(provider)
        updated = await self._credentials.set_permission_level(provider, level)

        if previous.verified and previous.verification_id and self._ledger is not None:
            updated = await self._reverify(updated, previous.verification_id)

        await self._audit.log(
            AuditEvent.PERMISSION_CHANGED,
            provider=provider,
            previous_level=previous.permission_level.label,
            new_level=level.label,
        )
        log.info(
            "permission_changed",
            provider=provider,
            previous_level=previous.permission_level.label,
            new_level=level.label,
        )
        return updated

    async def _reverify(self, record: CredentialRecord, old_verification_id: str) -> CredentialRecord:
        assert self._ledger is not None
        await call_ledger(
            self._ledger.revoke_verification(old_verification_id),
            "revoke_verification",
            self._ledger_timeout,
        )
        attestation = await call_ledger(
            self._ledger.verify_credential(CredentialClaim.from_record(record)),
            "verify_credential",
            self._ledger_timeout,
        )
        proof = await call_ledger(
            self._ledger.generate_credential_proof(attestation.verification_id),
            "generate_credential_proof",
            self._ledger_timeout,
        )
        return await self._credentials.mark_verified(
            record.provider, attestation.verification_id, proof
        )
