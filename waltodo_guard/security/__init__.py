"""Security layer — audit trail, operation permissions, threat detection."""

from waltodo_guard.security.audit import AuditEvent, AuditLogger
from waltodo_guard.security.threats import (
    SanitizedContent,
    ThreatCategory,
    ThreatDetector,
    ThreatPattern,
    ThreatScanResult,
)
from waltodo_guard.security.content_guard import ContentGuard
from waltodo_guard.security.permissions import DEFAULT_OPERATION_MINIMUMS, PermissionManager

__all__ = [
    "AuditEvent",
    "AuditLogger",
    "ContentGuard",
    "DEFAULT_OPERATION_MINIMUMS",
    "PermissionManager",
    "SanitizedContent",
    "ThreatCategory",
    "ThreatDetector",
    "ThreatPattern",
    "ThreatScanResult",
]
