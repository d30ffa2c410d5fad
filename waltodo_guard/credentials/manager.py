"""Credential layer — CredentialManager.

Business rules on top of :class:`CredentialStore`:
  - Provider-id and empty-secret checks before any I/O
  - Usage tracking (``usage_count`` / ``last_used``) on every read
  - Expiry: an expired record is indistinguishable from a missing one
  - ``${PROVIDER}_API_KEY`` environment fallback
  - Rotation keeping the prior secret as ``previous_key``
  - Failed-authentication lockout and age-based rotation hints
  - Audit event emission for every access and change

Store failures are re-raised as ``SaveFailedError`` / ``RetrieveFailedError``
/ ``DeleteFailedError`` with the original exception chained.  None of them
carries a secret value.

Usage::

    manager = CredentialManager(store, audit_logger, validator=HTTPCredentialValidator(urls))
    await manager.save_credentials("openai", "sk-...")
    key = await manager.get_credentials("openai")
"""

from __future__ import annotations

import asyncio
import hmac
import os
import time
from collections.abc import Mapping
from typing import Any

from pydantic import SecretStr

from waltodo_guard.credentials.endpoint import CredentialValidator
from waltodo_guard.credentials.models import (
    CredentialLookup,
    CredentialRecord,
    CredentialType,
    PermissionLevel,
    env_var_name,
    normalize_provider,
)
from waltodo_guard.credentials.store import CredentialStore, KeyBackup
from waltodo_guard.exceptions import (
    CredentialLockedError,
    CredentialNotFoundError,
    DeleteFailedError,
    EmptySecretError,
    GuardError,
    OperationTimeoutError,
    PermissionEscalationError,
    RetrieveFailedError,
    SaveFailedError,
    StorageError,
    ValidationError,
    ValidationFailedError,
)
from waltodo_guard.logging import get_logger
from waltodo_guard.security.audit import AuditEvent, AuditLogger

log = get_logger(__name__)

_SECONDS_PER_DAY = 86_400


def _secrets_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


class CredentialManager:
    """Credential lifecycle service with audit trail.

    Parameters
    ----------
    store:
        Encrypted persistence backend.
    audit:
        AuditLogger for credential events.
    validator:
        Collaborator used by :meth:`validate_credentials`.
    rotation_days:
        Age after which :meth:`needs_rotation` reports ``True``.
    master_key_rotation_days:
        Master key age after which :meth:`master_key_rotation_due` reports ``True``.
    max_failed_auth:
        Failed validations before the credential is locked.
    default_expiry_days:
        Expiry applied by :meth:`save_credentials` when none is given.
    validation_timeout:
        Default bound, in seconds, on a validation endpoint call.
    environ:
        Environment mapping for the ``${PROVIDER}_API_KEY`` fallback.
        Defaults to ``os.environ`` read at call time.
    """

    def __init__(
        self,
        store: CredentialStore,
        audit: AuditLogger,
        *,
        validator: CredentialValidator | None = None,
        rotation_days: int = 90,
        master_key_rotation_days: int = 90,
        max_failed_auth: int = 5,
        default_expiry_days: int | None = None,
        validation_timeout: float = 10.0,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._store = store
        self._audit = audit
        self._validator = validator
        self._rotation_days = rotation_days
        self._master_key_rotation_days = master_key_rotation_days
        self._max_failed_auth = max_failed_auth
        self._default_expiry_days = default_expiry_days
        self._validation_timeout = validation_timeout
        self._environ = environ
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, provider: str) -> asyncio.Lock:
        """Return (or lazily create) the in-process lock for *provider*."""
        if provider not in self._locks:
            self._locks[provider] = asyncio.Lock()
        return self._locks[provider]

    # ------------------------------------------------------------------
    # Save / read
    # ------------------------------------------------------------------

    async def save_credentials(
        self,
        provider: str,
        secret: str,
        *,
        credential_type: CredentialType = CredentialType.API_KEY,
        permission_level: PermissionLevel | int | str = PermissionLevel.STANDARD,
        expiry_days: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CredentialRecord:
        """Persist a fresh record for *provider*, replacing any existing one."""
        provider = normalize_provider(provider)
        if not secret or not secret.strip():
            raise EmptySecretError(provider)

        level = PermissionLevel.parse(permission_level)
        if level >= PermissionLevel.ADMIN:
            await self._audit.log(
                AuditEvent.PERMISSION_ESCALATION_BLOCKED,
                provider=provider,
                requested_level=level.label,
                source="save_credentials",
            )
            raise PermissionEscalationError(provider, level.label)

        now = time.time()
        days = expiry_days if expiry_days is not None else self._default_expiry_days
        record = CredentialRecord(
            provider=provider,
            secret=SecretStr(secret),
            credential_type=credential_type,
            permission_level=level,
            created_at=now,
            last_used=now,
            usage_count=0,
            expires_at=now + days * _SECONDS_PER_DAY if days else None,
            metadata=metadata or {},
        )

        async with self._lock_for(provider):
            try:
                await self._store.save(record)
            except StorageError as exc:
                log.error("credential_save_failed", provider=provider, error=type(exc).__name__)
                raise SaveFailedError(provider, exc) from exc

        await self._audit.log(
            AuditEvent.CREDENTIAL_SAVED,
            provider=provider,
            credential_type=record.credential_type.value,
            permission_level=level.label,
            expires_at=record.expires_at,
        )
        log.info("credential_saved", provider=provider, permission_level=level.label)
        return record

    async def get_record(self, provider: str) -> CredentialRecord:
        """Return the active record without touching usage statistics.

        Expired records raise :class:`CredentialNotFoundError`.
        """
        provider = normalize_provider(provider)
        return await self._load_active(provider)

    async def get_credentials(self, provider: str) -> str:
        """Return *provider*'s secret and record the access."""
        provider = normalize_provider(provider)
        async with self._lock_for(provider):
            try:
                record = await self._load_active(provider)
            except GuardError as exc:
                await self._audit.log(
                    AuditEvent.CREDENTIAL_ACCESS_FAILED,
                    provider=provider,
                    reason=type(exc).__name__,
                )
                raise

            if record.auth_fail_count >= self._max_failed_auth:
                await self._audit.log(
                    AuditEvent.CREDENTIAL_ACCESS_FAILED, provider=provider, reason="locked"
                )
                raise CredentialLockedError(provider, record.auth_fail_count)

            record.usage_count += 1
            record.last_used = time.time()
            try:
                await self._store.save(record)
            except StorageError as exc:
                raise RetrieveFailedError(provider, exc) from exc

        await self._audit.log(
            AuditEvent.CREDENTIAL_ACCESSED,
            provider=provider,
            usage_count=record.usage_count,
        )
        return record.secret.get_secret_value()

    async def get_credential_with_env_fallback(self, provider: str) -> str:
        """Return ``${PROVIDER}_API_KEY`` when set, else the stored secret."""
        provider = normalize_provider(provider)
        environ = self._environ if self._environ is not None else os.environ
        value = environ.get(env_var_name(provider))
        if value and value.strip():
            log.debug("credential_from_environment", provider=provider)
            await self._audit.log(
                AuditEvent.CREDENTIAL_ACCESSED, provider=provider, source="environment"
            )
            return value
        return await self.get_credentials(provider)

    async def get_many(self, providers: list[str]) -> list[CredentialLookup]:
        """Look up several providers; one failure never aborts the others."""

        async def _one(name: str) -> CredentialLookup:
            try:
                secret = await self.get_credentials(name)
            except GuardError as exc:
                return CredentialLookup(provider=name, error=exc.message)
            return CredentialLookup(provider=name, secret=SecretStr(secret))

        return list(await asyncio.gather(*(_one(p) for p in providers)))

    # ------------------------------------------------------------------
    # Delete / list
    # ------------------------------------------------------------------

    async def delete_credentials(self, provider: str) -> bool:
        provider = normalize_provider(provider)
        async with self._lock_for(provider):
            try:
                existed = await self._store.delete(provider)
            except StorageError as exc:
                log.error("credential_delete_failed", provider=provider, error=type(exc).__name__)
                raise DeleteFailedError(provider, exc) from exc

        await self._audit.log(AuditEvent.CREDENTIAL_DELETED, provider=provider, existed=existed)
        log.info("credential_deleted", provider=provider, existed=existed)
        return existed

    async def list_providers(self) -> list[str]:
        """Provider ids from the store index; ``[]`` if it is missing or unreadable."""
        try:
            return await self._store.list()
        except StorageError as exc:
            log.warning("credential_index_unreadable", error=exc.message)
            return []

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    async def rotate_credentials(self, provider: str, new_secret: str) -> CredentialRecord:
        """Replace the secret, keeping the prior one as ``previous_key``."""
        provider = normalize_provider(provider)
        if not new_secret or not new_secret.strip():
            raise EmptySecretError(provider)

        async with self._lock_for(provider):
            current = await self._load_active(provider)
            if _secrets_equal(current.secret.get_secret_value(), new_secret):
                raise ValidationError(
                    "new_secret: New secret must differ from the current secret",
                    field="new_secret",
                    code="SECRET_UNCHANGED",
                )

            now = time.time()
            expires_at = None
            if current.expires_at is not None:
                # Keep the original lifetime, measured from this rotation.
                lifetime = current.expires_at - (current.rotated_at or current.created_at)
                expires_at = now + lifetime

            rotated = current.model_copy(
                update={
                    "secret": SecretStr(new_secret),
                    "previous_key": current.secret,
                    "rotated_at": now,
                    "last_used": now,
                    "usage_count": 0,
                    "auth_fail_count": 0,
                    "expires_at": expires_at,
                }
            )
            try:
                await self._store.save(rotated)
            except StorageError as exc:
                raise SaveFailedError(provider, exc) from exc

        await self._audit.log(AuditEvent.CREDENTIAL_ROTATED, provider=provider, rotated_at=now)
        log.info("credential_rotated", provider=provider)
        return rotated

    async def needs_rotation(self, provider: str) -> bool:
        record = await self.get_record(provider)
        return record.needs_rotation(self._rotation_days)

    # ------------------------------------------------------------------
    # Master key
    # ------------------------------------------------------------------

    async def rotate_master_key(self) -> KeyBackup:
        """Re-encrypt the whole store under a new master key."""
        try:
            backup = await self._store.rotate_master_key()
        except StorageError as exc:
            log.error("master_key_rotation_failed", error=type(exc).__name__)
            raise
        await self._audit.log(AuditEvent.MASTER_KEY_ROTATED, backup_id=backup.backup_id)
        return backup

    async def restore_master_key(self, backup_id: str | None = None) -> KeyBackup:
        backup = await self._store.restore_master_key(backup_id)
        await self._audit.log(AuditEvent.MASTER_KEY_RESTORED, backup_id=backup.backup_id)
        return backup

    async def master_key_rotation_due(self) -> bool:
        status = await self._store.key_rotation_status(self._master_key_rotation_days)
        return status.needs_rotation

    # ------------------------------------------------------------------
    # Validation and lockout
    # ------------------------------------------------------------------

    async def validate_credentials(
        self,
        provider: str,
        secret: str,
        *,
        timeout: float | None = None,
    ) -> bool:
        """Ask the validation endpoint whether *secret* is accepted.

        When *secret* is the stored secret for *provider*, a rejection counts
        towards the lockout threshold and an acceptance resets the counter.
        """
        provider = normalize_provider(provider)
        if not secret or not secret.strip():
            raise EmptySecretError(provider)
        if self._validator is None:
            raise ValidationFailedError(provider, LookupError("no credential validator"))

        bound = timeout if timeout is not None else self._validation_timeout
        try:
            valid = await asyncio.wait_for(
                self._validator.validate(provider, SecretStr(secret)),
                timeout=bound,
            )
        except asyncio.TimeoutError:
            raise OperationTimeoutError("validate_credentials", bound) from None
        except GuardError:
            raise
        except Exception as exc:
            log.warning("credential_validation_error", provider=provider, error=type(exc).__name__)
            raise ValidationFailedError(provider, exc) from exc

        await self._track_auth_result(provider, secret, valid)
        await self._audit.log(AuditEvent.CREDENTIAL_VALIDATED, provider=provider, valid=valid)
        return valid

    async def record_auth_failure(self, provider: str) -> int:
        """Count one failed authentication.  Returns the new failure count."""
        provider = normalize_provider(provider)
        async with self._lock_for(provider):
            record = await self._load_active(provider)
            record.auth_fail_count += 1
            try:
                await self._store.save(record)
            except StorageError as exc:
                raise SaveFailedError(provider, exc) from exc

        if record.auth_fail_count == self._max_failed_auth:
            await self._audit.log(
                AuditEvent.CREDENTIAL_LOCKED,
                provider=provider,
                failures=record.auth_fail_count,
            )
            log.warning("credential_locked", provider=provider, failures=record.auth_fail_count)
        return record.auth_fail_count

    async def is_locked(self, provider: str) -> bool:
        record = await self.get_record(provider)
        return record.auth_fail_count >= self._max_failed_auth

    async def _track_auth_result(self, provider: str, secret: str, valid: bool) -> None:
        try:
            record = await self.get_record(provider)
        except CredentialNotFoundError:
            return
        if not _secrets_equal(record.secret.get_secret_value(), secret):
            return
        if not valid:
            await self.record_auth_failure(provider)
        elif record.auth_fail_count:
            await self._update(provider, auth_fail_count=0)

    # ------------------------------------------------------------------
    # Internal update paths (PermissionManager, VerificationService)
    # ------------------------------------------------------------------

    async def set_permission_level(
        self, provider: str, level: PermissionLevel
    ) -> CredentialRecord:
        """Store a new permission level.  ``ADMIN`` is always refused."""
        provider = normalize_provider(provider)
        if level >= PermissionLevel.ADMIN:
            raise PermissionEscalationError(provider, level.label)
        return await self._update(provider, permission_level=level)

    async def mark_verified(
        self, provider: str, verification_id: str | None, proof: str | None
    ) -> CredentialRecord:
        """Attach (or clear, with ``None``) a ledger verification."""
        record = await self._update(
            normalize_provider(provider),
            verified=verification_id is not None,
            verification_id=verification_id,
            verification_proof=proof,
        )
        await self._audit.log(
            AuditEvent.CREDENTIAL_VERIFIED,
            provider=record.provider,
            verification_id=verification_id,
        )
        return record

    async def _update(self, provider: str, **changes: Any) -> CredentialRecord:
        async with self._lock_for(provider):
            record = await self._load_active(provider)
            updated = record.model_copy(update=changes)
            try:
                await self._store.save(updated)
            except StorageError as exc:
                raise SaveFailedError(provider, exc) from exc
        return updated

    async def _load_active(self, provider: str) -> CredentialRecord:
        try:
            record = await self._store.load(provider)
        except CredentialNotFoundError:
            raise
        except StorageError as exc:
            log.error("credential_retrieve_failed", provider=provider, error=type(exc).__name__)
            raise RetrieveFailedError(provider, exc) from exc
        if record.is_expired():
            log.info("credential_expired", provider=provider)
            raise CredentialNotFoundError(provider)
        return record
