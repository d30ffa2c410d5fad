"""Verification layer — tamper-evident records of AI operations."""

from waltodo_guard.verification.ledger import (
    CredentialAttestation,
    CredentialClaim,
    LedgerAdapter,
    SQLiteLedgerAdapter,
)
from waltodo_guard.verification.models import (
    AIActionType,
    PrivacyLevel,
    VerificationOutcome,
    VerificationRecord,
)
from waltodo_guard.verification.service import VerificationService

__all__ = [
    "AIActionType",
    "CredentialAttestation",
    "CredentialClaim",
    "LedgerAdapter",
    "PrivacyLevel",
    "SQLiteLedgerAdapter",
    "VerificationOutcome",
    "VerificationRecord",
    "VerificationService",
]
