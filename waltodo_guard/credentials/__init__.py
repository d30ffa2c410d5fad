"""Credential layer — encrypted storage and lifecycle of provider secrets."""

from waltodo_guard.credentials.endpoint import CredentialValidator, HTTPCredentialValidator
from waltodo_guard.credentials.manager import CredentialManager
from waltodo_guard.credentials.models import (
    CredentialLookup,
    CredentialRecord,
    CredentialType,
    PermissionLevel,
    env_var_name,
    normalize_provider,
)
from waltodo_guard.credentials.store import CredentialStore, KeyBackup, KeyRotationStatus

__all__ = [
    "CredentialLookup",
    "CredentialManager",
    "CredentialRecord",
    "CredentialStore",
    "CredentialType",
    "CredentialValidator",
    "HTTPCredentialValidator",
    "KeyBackup",
    "KeyRotationStatus",
    "PermissionLevel",
    "env_var_name",
    "normalize_provider",
]
