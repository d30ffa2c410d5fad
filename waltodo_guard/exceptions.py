"""waltodo-guard — Exception hierarchy.

All exceptions raised by the trust-boundary layer inherit from GuardError so
that callers can catch the full family with a single except clause when needed.

No exception message or context ever carries a secret value.

Hierarchy:
    GuardError
    ├── CredentialError
    │   ├── InvalidProviderError
    │   ├── EmptySecretError
    │   ├── CredentialNotFoundError
    │   ├── StorageError
    │   │   ├── DecryptionError
    │   │   └── KeyBackupNotFoundError
    │   ├── SaveFailedError
    │   ├── RetrieveFailedError
    │   ├── DeleteFailedError
    │   ├── ValidationFailedError
    │   └── CredentialLockedError
    ├── SecurityError
    │   ├── PermissionDeniedError
    │   ├── PermissionEscalationError
    │   ├── ValidationError
    │   │   ├── MissingFlagsError
    │   │   ├── ConflictingFlagsError
    │   │   └── MissingEnvVarsError
    │   ├── ThreatDetectedError
    │   └── InputTooLargeError
    ├── VerificationError
    │   ├── TamperDetectedError
    │   ├── ReplayAttackSuspectedError
    │   └── LedgerError
    └── OperationTimeoutError
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from waltodo_guard.validation.rules import FieldError


class GuardError(Exception):
    """Base exception for all waltodo-guard errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = context or {}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context})"


# ---------------------------------------------------------------------------
# Credential layer
# ---------------------------------------------------------------------------


class CredentialError(GuardError):
    """Base for credential storage and management errors."""


class InvalidProviderError(CredentialError):
    def __init__(self, provider: str, reason: str = "") -> None:
        msg = "Invalid provider name"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, context={"reason": reason})
        # The raw id may be hostile (path traversal); keep only its length.
        self.provider_length = len(provider) if isinstance(provider, str) else 0
        self.reason = reason


class EmptySecretError(CredentialError):
    def __init__(self, provider: str) -> None:
        super().__init__(
            f"API key cannot be empty for provider '{provider}'",
            context={"provider": provider},
        )
        self.provider = provider


class CredentialNotFoundError(CredentialError):
    def __init__(self, provider: str) -> None:
        super().__init__(
            f"No credentials found for provider '{provider}'",
            context={"provider": provider},
        )
        self.provider = provider


class StorageError(CredentialError):
    """The credential document or master key could not be read or written."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message, context={"path": path})
        self.path = path


class DecryptionError(StorageError):
    """Ciphertext is corrupted or the master key changed."""

    def __init__(self, provider: str, path: str | None = None) -> None:
        super().__init__(f"Unable to decrypt credentials for provider '{provider}'", path)
        self.provider = provider


class KeyBackupNotFoundError(StorageError):
    """No master-key backup exists, or none matches the requested id."""

    def __init__(self, backup_id: str | None = None, path: str | None = None) -> None:
        if backup_id is None:
            message = "No master key backups available"
        else:
            message = f"Master key backup '{backup_id}' not found"
        super().__init__(message, path)
        self.backup_id = backup_id


class _WrappedCredentialError(CredentialError):
    _prefix = ""

    def __init__(self, provider: str, cause: BaseException | None = None) -> None:
        detail = type(cause).__name__ if cause is not None else "unknown"
        super().__init__(
            f"{self._prefix} for provider '{provider}' ({detail})",
            context={"provider": provider, "cause": detail},
        )
        self.provider = provider


class SaveFailedError(_WrappedCredentialError):
    _prefix = "Failed to save credentials"


class RetrieveFailedError(_WrappedCredentialError):
    _prefix = "Failed to retrieve credentials"


class DeleteFailedError(_WrappedCredentialError):
    _prefix = "Failed to delete credentials"


class ValidationFailedError(_WrappedCredentialError):
    _prefix = "Failed to validate credentials"


class CredentialLockedError(CredentialError):
    """Too many failed authentications; the credential must be rotated."""

    def __init__(self, provider: str, failures: int) -> None:
        super().__init__(
            f"Credentials for provider '{provider}' are locked after "
            f"{failures} failed authentications",
            context={"provider": provider, "failures": failures},
        )
        self.provider = provider
        self.failures = failures


# ---------------------------------------------------------------------------
# Security layer
# ---------------------------------------------------------------------------


class SecurityError(GuardError):
    """Base for all access-control and content-safety violations."""


class PermissionDeniedError(SecurityError):
    def __init__(
        self,
        provider: str,
        operation: str,
        current_level: str,
        required_level: str,
        reason: str = "",
    ) -> None:
        msg = (
            f"Provider '{provider}' with level '{current_level}' may not perform "
            f"'{operation}' (requires '{required_level}')"
        )
        if reason:
            msg += f": {reason}"
        super().__init__(
            msg,
            context={
                "provider": provider,
                "operation": operation,
                "current_level": current_level,
                "required_level": required_level,
            },
        )
        self.provider = provider
        self.operation = operation
        self.current_level = current_level
        self.required_level = required_level


class PermissionEscalationError(SecurityError):
    def __init__(self, provider: str, requested_level: str) -> None:
        super().__init__(
            f"Refusing to raise provider '{provider}' to '{requested_level}': "
            "privilege escalation is not allowed",
            context={"provider": provider, "requested_level": requested_level},
        )
        self.provider = provider
        self.requested_level = requested_level


class ValidationError(SecurityError):
    """One or more validation rules failed.

    ``code`` is the machine-readable rule code (``MULTIPLE_VIOLATIONS`` when
    several failed) and ``errors`` holds every collected :class:`FieldError`.
    """

    def __init__(
        self,
        message: str,
        field: str = "input",
        code: str = "VALIDATION_FAILED",
        errors: list[FieldError] | None = None,
    ) -> None:
        super().__init__(
            message,
            context={"field": field, "code": code, "error_count": len(errors or [])},
        )
        self.field = field
        self.code = code
        self.errors: list[FieldError] = list(errors or [])


class MissingFlagsError(ValidationError):
    def __init__(self, missing: list[str]) -> None:
        super().__init__(
            f"Missing required flags: {', '.join(missing)}",
            field="flags",
            code="MISSING_REQUIRED_FLAGS",
        )
        self.missing = missing


class ConflictingFlagsError(ValidationError):
    def __init__(self, flags: list[str]) -> None:
        super().__init__(
            f"Cannot use these flags together: {', '.join(flags)}",
            field="flags",
            code="MUTUALLY_EXCLUSIVE_FLAGS",
        )
        self.flags = flags


class MissingEnvVarsError(ValidationError):
    def __init__(self, missing: list[str]) -> None:
        super().__init__(
            f"Missing required environment variables: {', '.join(missing)}",
            field="environment",
            code="MISSING_ENV_VARS",
        )
        self.missing = missing


class ThreatDetectedError(SecurityError):
    def __init__(self, category: str, pattern_id: str = "", direction: str = "outbound") -> None:
        super().__init__(
            f"Potential {category} threat detected in {direction} content",
            context={"category": category, "pattern_id": pattern_id, "direction": direction},
        )
        self.category = category
        self.pattern_id = pattern_id
        self.direction = direction


class InputTooLargeError(SecurityError):
    def __init__(self, size: int, limit: int) -> None:
        super().__init__(
            f"Payload of {size} bytes exceeds the {limit}-byte limit",
            context={"size": size, "limit": limit},
        )
        self.size = size
        self.limit = limit


# ---------------------------------------------------------------------------
# Verification layer
# ---------------------------------------------------------------------------


class VerificationError(GuardError):
    """Base for tamper-evident verification errors."""


class TamperDetectedError(VerificationError):
    def __init__(self, verification_id: str, fields: list[str]) -> None:
        super().__init__(
            f"Verification '{verification_id}' does not match its stored proof "
            f"(mismatched: {', '.join(fields)})",
            context={"verification_id": verification_id, "fields": fields},
        )
        self.verification_id = verification_id
        self.fields = fields


class ReplayAttackSuspectedError(VerificationError):
    def __init__(self, timestamp: float, window_seconds: float) -> None:
        super().__init__(
            f"Request timestamp is outside the {window_seconds:g}s freshness window",
            context={"timestamp": timestamp, "window_seconds": window_seconds},
        )
        self.timestamp = timestamp
        self.window_seconds = window_seconds


class LedgerError(VerificationError):
    """The ledger adapter failed or returned an inconsistent answer."""


# ---------------------------------------------------------------------------
# Timeouts
# ---------------------------------------------------------------------------


class OperationTimeoutError(GuardError):
    def __init__(self, operation: str, timeout_seconds: float) -> None:
        super().__init__(
            f"'{operation}' did not complete within {timeout_seconds:g}s",
            context={"operation": operation, "timeout_seconds": timeout_seconds},
        )
        self.operation = operation
        self.timeout_seconds = timeout_seconds
