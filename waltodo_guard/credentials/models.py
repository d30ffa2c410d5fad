"""Credential layer — data models.

Defines:
  - PermissionLevel  — totally ordered capability tier of a credential
  - CredentialType   — kind of secret held
  - CredentialRecord — one provider's secret plus its usage metadata
  - CredentialLookup — per-item result of a batch lookup

Provider ids are normalized with :func:`normalize_provider` before any I/O.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from waltodo_guard.exceptions import InvalidProviderError

PROVIDER_ID_RE = re.compile(r"^[a-z0-9_-]+$")
MAX_PROVIDER_LENGTH = 64

_NON_ID_CHARS = re.compile(r"[^a-z0-9_-]")
_NON_ALNUM = re.compile(r"[^A-Z0-9]")

_SECONDS_PER_DAY = 86_400


class PermissionLevel(IntEnum):
    """Ordered permission tiers.  ``NO_ACCESS`` is the level of an unknown provider."""

    NO_ACCESS = -1
    READ_ONLY = 0
    RESTRICTED = 1
    STANDARD = 2
    FULL = 3
    ADMIN = 4

    @classmethod
    def parse(cls, value: PermissionLevel | int | str) -> PermissionLevel:
        """Accept an enum member, its integer value, or its name (any case)."""
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown permission level: {value!r}") from None

    @property
    def label(self) -> str:
        return self.name.lower()


class CredentialType(str, Enum):
    API_KEY = "api_key"
    OAUTH_TOKEN = "oauth_token"
    BLOCKCHAIN_KEY = "blockchain_key"


def normalize_provider(provider: str) -> str:
    """Return the canonical id for *provider*.

    Lower-cases and maps every character outside ``[a-z0-9_-]`` to ``_``.
    Raises :class:`InvalidProviderError` for ids that are empty, too long, or
    contain path components.
    """
    if not isinstance(provider, str) or not provider.strip():
        raise InvalidProviderError(str(provider), "empty provider id")
    raw = provider.strip()
    if len(raw) > MAX_PROVIDER_LENGTH:
        raise InvalidProviderError(raw, f"longer than {MAX_PROVIDER_LENGTH} characters")
    if ".." in raw or "/" in raw or "\\" in raw or "\x00" in raw:
        raise InvalidProviderError(raw, "path components are not allowed")

    normalized = _NON_ID_CHARS.sub("_", raw.lower())
    if not normalized.strip("_-"):
        raise InvalidProviderError(raw, "no alphanumeric characters")
    return normalized


def env_var_name(provider: str) -> str:
    """``openai`` -> ``OPENAI_API_KEY``; ``my-llm`` -> ``MY_LLM_API_KEY``."""
    return f"{_NON_ALNUM.sub('_', provider.upper())}_API_KEY"


class CredentialRecord(BaseModel):
    """One provider's secret and its usage metadata.

    ``secret`` and ``previous_key`` are :class:`~pydantic.SecretStr`, so they
    render as ``**********`` in ``repr()``, ``str()`` and ``model_dump_json()``.
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    provider: str
    secret: SecretStr
    credential_type: CredentialType = CredentialType.API_KEY
    permission_level: PermissionLevel = PermissionLevel.STANDARD
    created_at: float = Field(default_factory=time.time)
    last_used: float = Field(default_factory=time.time)
    usage_count: int = Field(default=0, ge=0)
    expires_at: float | None = None
    rotated_at: float | None = None
    previous_key: SecretStr | None = None
    verified: bool = False
    verification_id: str | None = None
    verification_proof: str | None = None
    auth_fail_count: int = Field(default=0, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("provider")
    @classmethod
    def _check_provider(cls, v: str) -> str:
        if not PROVIDER_ID_RE.match(v):
            raise ValueError("provider id must match [a-z0-9_-]+")
        return v

    def is_expired(self, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) >= self.expires_at

    def age_days(self, now: float | None = None) -> float:
        """Days since the secret was created or last rotated."""
        start = self.rotated_at or self.created_at
        return ((now if now is not None else time.time()) - start) / _SECONDS_PER_DAY

    def needs_rotation(self, max_age_days: int, now: float | None = None) -> bool:
        return self.age_days(now) >= max_age_days

    def secret_fields(self) -> dict[str, str | None]:
        """The values that go into the encrypted payload."""
        return {
            "secret": self.secret.get_secret_value(),
            "previous_key": (
                self.previous_key.get_secret_value() if self.previous_key else None
            ),
        }

    def public_fields(self) -> dict[str, Any]:
        """Everything except the secret values, safe to persist in clear."""
        return self.model_dump(mode="json", exclude={"secret", "previous_key"})


@dataclass(frozen=True)
class CredentialLookup:
    """Result of one item in :meth:`CredentialManager.get_many`."""

    provider: str
    secret: SecretStr | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None
