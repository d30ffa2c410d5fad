"""Verification layer — data models and hashing helpers."""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

_SHA256_HEX = r"^[0-9a-f]{64}$"

_REDACTIONS: list[re.Pattern[str]] = [
    re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"),
    re.compile(r"\b0x[a-fA-F0-9]{8,}\b"),
    re.compile(r"\b(?:sk|pk|xai)-[A-Za-z0-9_-]{6,}"),
    re.compile(r"\b[A-Za-z0-9_-]{32,}\b"),
]
_SUMMARY_CHARS = 80


class AIActionType(IntEnum):
    SUMMARIZE = 0
    CATEGORIZE = 1
    PRIORITIZE = 2
    SUGGEST = 3
    ANALYZE = 4


class PrivacyLevel(str, Enum):
    PUBLIC = "public"  # raw request/response retained
    HASH_ONLY = "hash_only"  # only the hashes are retained
    PRIVATE = "private"  # a redacted summary is retained


class VerificationRecord(BaseModel):
    """Immutable proof that an AI operation took place with given content."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(min_length=1)
    request_hash: str = Field(pattern=_SHA256_HEX)
    response_hash: str = Field(pattern=_SHA256_HEX)
    user: str
    provider: str
    timestamp: float
    verification_type: AIActionType
    metadata: dict[str, str] = Field(default_factory=dict)

    def canonical_json(self) -> str:
        return json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))

    def digest(self) -> str:
        return sha256_hex(self.canonical_json())


@dataclass(frozen=True)
class VerificationOutcome:
    """What :meth:`VerificationService.create_verification` hands back."""

    record: VerificationRecord
    proof: str
    privacy_level: PrivacyLevel
    request_content: str | None = None
    response_content: str | None = None


def canonical_text(value: Any) -> str:
    """Strings pass through; everything else becomes sorted, compact JSON."""
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def redact_summary(text: str) -> str:
    """Mask emails, addresses and key-like tokens, then truncate."""
    for pattern in _REDACTIONS:
        text = pattern.sub("[REDACTED]", text)
    text = " ".join(text.split())
    if len(text) <= _SUMMARY_CHARS:
        return text
    return f"{text[:_SUMMARY_CHARS]}... ({len(text)} chars)"
