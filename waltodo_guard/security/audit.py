"""Security layer: audit trail.

One record is written per security-relevant outcome:
  - Credential saves, accesses, rotations and deletions
  - Master key rotations and restores
  - Failed credential accesses and lockouts
  - Permission changes, denials and blocked escalations
  - Threat detections and neutralized responses
  - Verification creation, tamper and replay detection

Records never contain secret material.  Shape::

    {"event_type": "...", "provider": "...", "timestamp": 1700000000.0,
     "details": {...}}

Where records go is decided by the EventBus handed in::

    logger = AuditLogger(audit_file=Path("~/.waltodo/audit.ndjson"))
    logger = AuditLogger(bus=FanoutEventBus([LogEventBus(...), other_bus]))

The NDJSON file is hash-chained line by line, so it can be checked and
queried after the fact::

    assert (await logger.verify_chain()).valid
    rotations = await logger.search(AuditEvent.CREDENTIAL_ROTATED, provider="openai")
"""

from __future__ import annotations

import time
from enum import Enum
from pathlib import Path
from typing import Any

from waltodo_guard.events.bus import (
    TOPIC_CREDENTIALS,
    TOPIC_PERMISSIONS,
    TOPIC_THREATS,
    TOPIC_VERIFICATION,
    ChainVerification,
    EventBus,
    FanoutEventBus,
    LogEventBus,
    NullEventBus,
)
from waltodo_guard.logging import get_logger

log = get_logger(__name__)


class AuditEvent(str, Enum):
    # Credential lifecycle
    CREDENTIAL_SAVED = "credential_saved"
    CREDENTIAL_ACCESSED = "credential_accessed"
    CREDENTIAL_ACCESS_FAILED = "credential_access_failed"
    CREDENTIAL_ROTATED = "credential_rotated"
    CREDENTIAL_DELETED = "credential_deleted"
    CREDENTIAL_VALIDATED = "credential_validated"
    CREDENTIAL_LOCKED = "credential_locked"
    CREDENTIAL_VERIFIED = "credential_verified"
    MASTER_KEY_ROTATED = "master_key_rotated"
    MASTER_KEY_RESTORED = "master_key_restored"
    # Permissions
    PERMISSION_CHANGED = "permission_changed"
    PERMISSION_DENIED = "permission_denied"
    PERMISSION_ESCALATION_BLOCKED = "permission_escalation_blocked"
    # Content safety
    THREAT_DETECTED = "threat_detected"
    RESPONSE_SANITIZED = "response_sanitized"
    # Verification
    VERIFICATION_CREATED = "verification_created"
    VERIFICATION_REVOKED = "verification_revoked"
    TAMPER_DETECTED = "tamper_detected"
    REPLAY_REJECTED = "replay_rejected"


_EVENT_TOPIC: dict[AuditEvent, str] = {
    AuditEvent.CREDENTIAL_SAVED: TOPIC_CREDENTIALS,
    AuditEvent.CREDENTIAL_ACCESSED: TOPIC_CREDENTIALS,
    AuditEvent.CREDENTIAL_ACCESS_FAILED: TOPIC_CREDENTIALS,
    AuditEvent.CREDENTIAL_ROTATED: TOPIC_CREDENTIALS,
    AuditEvent.CREDENTIAL_DELETED: TOPIC_CREDENTIALS,
    AuditEvent.CREDENTIAL_VALIDATED: TOPIC_CREDENTIALS,
    AuditEvent.CREDENTIAL_LOCKED: TOPIC_CREDENTIALS,
    AuditEvent.CREDENTIAL_VERIFIED: TOPIC_CREDENTIALS,
    AuditEvent.MASTER_KEY_ROTATED: TOPIC_CREDENTIALS,
    AuditEvent.MASTER_KEY_RESTORED: TOPIC_CREDENTIALS,
    AuditEvent.PERMISSION_CHANGED: TOPIC_PERMISSIONS,
    AuditEvent.PERMISSION_DENIED: TOPIC_PERMISSIONS,
    AuditEvent.PERMISSION_ESCALATION_BLOCKED: TOPIC_PERMISSIONS,
    AuditEvent.THREAT_DETECTED: TOPIC_THREATS,
    AuditEvent.RESPONSE_SANITIZED: TOPIC_THREATS,
    AuditEvent.VERIFICATION_CREATED: TOPIC_VERIFICATION,
    AuditEvent.VERIFICATION_REVOKED: TOPIC_VERIFICATION,
    AuditEvent.TAMPER_DETECTED: TOPIC_VERIFICATION,
    AuditEvent.REPLAY_REJECTED: TOPIC_VERIFICATION,
}


class AuditLogger:
    """Maps :class:`AuditEvent` values to topics and emits them.

    An explicit *bus* wins over *audit_file*; with neither, records are dropped.
    """

    def __init__(
        self,
        audit_file: Path | None = None,
        bus: EventBus | None = None,
    ) -> None:
        if bus is not None:
            self._bus: EventBus = bus
        elif audit_file is not None:
            self._bus = LogEventBus(audit_file)
        else:
            self._bus = NullEventBus()

    @property
    def bus(self) -> EventBus:
        return self._bus

    async def log(
        self,
        event: AuditEvent,
        provider: str | None = None,
        **details: Any,
    ) -> None:
        """Emit *event* with *details* on the topic its layer owns."""
        record = self._build_record(event, provider, details)
        topic = _EVENT_TOPIC.get(event, TOPIC_CREDENTIALS)
        log.debug("audit_event", audit_event=event.value, provider=provider)
        await self._bus.emit(topic, record)

    async def verify_chain(self) -> ChainVerification:
        """Check the hash chain of the NDJSON audit file.

        A logger with no file-backed sink has nothing to verify and reports
        a valid, empty chain.
        """
        sink = self._file_sink()
        if sink is None:
            return ChainVerification(valid=True, entries=0)
        return await sink.verify()

    async def search(
        self,
        event: AuditEvent | None = None,
        provider: str | None = None,
        *,
        since: float | None = None,
        until: float | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Past records from the audit file, oldest first."""
        sink = self._file_sink()
        if sink is None:
            return []
        return await sink.search(
            event_type=event.value if event is not None else None,
            provider=provider,
            since=since,
            until=until,
            limit=limit,
        )

    def _file_sink(self) -> LogEventBus | None:
        candidates = (
            self._bus.backends if isinstance(self._bus, FanoutEventBus) else [self._bus]
        )
        for bus in candidates:
            if isinstance(bus, LogEventBus) and bus.path is not None:
                return bus
        return None

    @staticmethod
    def _build_record(
        event: AuditEvent,
        provider: str | None,
        details: dict[str, Any],
    ) -> dict[str, Any]:
        return {
            "event_type": event.value,
            "provider": provider,
            "timestamp": time.time(),
            "details": details,
        }
