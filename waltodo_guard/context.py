"""waltodo-guard — GuardContext.

Builds every trust-boundary component from one :class:`Settings` instance and
owns their lifecycle.  Nothing in the package reaches for a global; callers
hold a context and pass its members where they are needed::

    async with GuardContext(Settings.load()) as guard:
        await guard.credentials.save_credentials("openai", "sk-...")
        await guard.permissions.verify_operation_permission("openai", "summarize")
        await guard.content.inspect_todos(todos, provider="openai")

Startup order:
    1. Logging
    2. Audit logger (NDJSON file when ``logging.audit_file`` is set)
    3. Credential store + validator + manager
    4. Ledger adapter + verification service (when enabled)
    5. Permission manager (re-verifies through the ledger when present)
    6. Threat detector + content guard
"""

from __future__ import annotations

import re
from types import TracebackType

from waltodo_guard.config import Settings
from waltodo_guard.credentials import CredentialManager, CredentialStore, HTTPCredentialValidator
from waltodo_guard.credentials.endpoint import CredentialValidator
from waltodo_guard.logging import configure_logging, get_logger
from waltodo_guard.security import (
    AuditLogger,
    ContentGuard,
    PermissionManager,
    ThreatCategory,
    ThreatDetector,
    ThreatPattern,
)
from waltodo_guard.validation import InputValidator
from waltodo_guard.verification import (
    LedgerAdapter,
    PrivacyLevel,
    SQLiteLedgerAdapter,
    VerificationService,
)

log = get_logger(__name__)


def build_extra_patterns(entries: list[dict[str, str]]) -> list[ThreatPattern]:
    """Turn ``threats.extra_patterns`` config entries into case-insensitive rules."""
    patterns: list[ThreatPattern] = []
    for entry in entries:
        try:
            patterns.append(
                ThreatPattern(
                    id=entry["id"],
                    category=ThreatCategory(entry["category"]),
                    pattern=re.compile(entry["pattern"], re.IGNORECASE),
                    description=entry.get("description", ""),
                )
            )
        except (KeyError, ValueError, re.error) as exc:
            raise ValueError(f"Invalid threat pattern entry {entry!r}: {exc}") from exc
    return patterns


class GuardContext:
    """Owns the credential, permission, content and verification components.

    Args:
        settings:  Loaded configuration.
        validator: Override for the credential validation endpoint.
        ledger:    Override for the ledger adapter.  A supplied adapter is
                   used as-is: the context neither initialises nor closes it.
        configure_logs: Set ``False`` when the host application already
                   configured logging.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        validator: CredentialValidator | None = None,
        ledger: LedgerAdapter | None = None,
        configure_logs: bool = True,
    ) -> None:
        self.settings = settings
        self._configure_logs = configure_logs
        self._owns_ledger = ledger is None

        self.audit = AuditLogger(audit_file=settings.logging.audit_file)

        cred_cfg = settings.credentials
        self.store = CredentialStore(
            cred_cfg.store_path,
            cred_cfg.master_key_path,
            backup_dir=cred_cfg.key_backup_dir,
            max_key_backups=cred_cfg.max_key_backups,
        )
        self.validator: CredentialValidator = validator or HTTPCredentialValidator(
            settings.validation_endpoint.base_urls,
            timeout=settings.validation_endpoint.timeout_seconds,
        )
        self.credentials = CredentialManager(
            self.store,
            self.audit,
            validator=self.validator,
            rotation_days=cred_cfg.rotation_days,
            master_key_rotation_days=cred_cfg.master_key_rotation_days,
            max_failed_auth=cred_cfg.max_failed_auth,
            default_expiry_days=cred_cfg.default_expiry_days,
            validation_timeout=settings.validation_endpoint.timeout_seconds,
        )

        ver_cfg = settings.verification
        self.ledger: LedgerAdapter | None = ledger
        if self.ledger is None and ver_cfg.enabled:
            self.ledger = SQLiteLedgerAdapter(ver_cfg.ledger_db_path)
        self.verification: VerificationService | None = None
        if self.ledger is not None:
            self.verification = VerificationService(
                self.ledger,
                self.audit,
                credentials=self.credentials,
                freshness_window=ver_cfg.freshness_window_seconds,
                default_timeout=ver_cfg.adapter_timeout_seconds,
                default_privacy=PrivacyLevel(ver_cfg.default_privacy_level),
            )

        self.permissions = PermissionManager(
            self.credentials,
            self.audit,
            operation_minimums=settings.permissions.operation_minimums,
            ledger=self.ledger,
            ledger_timeout=ver_cfg.adapter_timeout_seconds,
        )

        threat_cfg = settings.threats
        self.detector = ThreatDetector(
            max_payload_bytes=threat_cfg.max_payload_bytes,
            extra_patterns=build_extra_patterns(threat_cfg.extra_patterns),
            disabled_categories=threat_cfg.disabled_categories,
        )
        self.content = ContentGuard(self.detector, self.audit)
        self.validation = InputValidator

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        if self._configure_logs:
            log_cfg = self.settings.logging
            configure_logging(
                level=log_cfg.level,
                format=log_cfg.format,
                log_file=str(log_cfg.file) if log_cfg.file else None,
            )
        await self.store.init()
        if await self.credentials.master_key_rotation_due():
            log.warning(
                "master_key_rotation_due",
                days=self.settings.credentials.master_key_rotation_days,
            )
        if self._owns_ledger and isinstance(self.ledger, SQLiteLedgerAdapter):
            await self.ledger.init()
        log.info(
            "guard_context_ready",
            store=str(self.store.path),
            verification=self.verification is not None,
        )

    async def close(self) -> None:
        await self.validator.close()
        if self._owns_ledger and self.ledger is not None:
            await self.ledger.close()
        log.info("guard_context_closed")

    async def __aenter__(self) -> GuardContext:
        await self.init()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
