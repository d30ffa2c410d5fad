"""waltodo-guard — Configuration.

Configuration is loaded from (in order of increasing priority):
    1. Built-in defaults (this file)
    2. User config:   ~/.waltodo/config.yaml
    3. An explicit config file passed to ``Settings.load()``
    4. Environment variables prefixed with WALTODO_

Call ``Settings.load()`` once at process startup and hand the instance to
:class:`~waltodo_guard.context.GuardContext`.  There is no module-level
settings singleton.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ---------------------------------------------------------------------------
# Sub-configuration blocks
# ---------------------------------------------------------------------------


class CredentialConfig(BaseModel):
    store_path: Path = Field(
        default=Path("~/.waltodo/credentials.json"),
        description="JSON document holding one encrypted record per provider.",
    )
    master_key_path: Path = Field(
        default=Path("~/.waltodo/master.key"),
        description="32-byte AES-256-GCM master key, created on first use (mode 0600).",
    )
    default_expiry_days: int | None = Field(
        default=None,
        ge=1,
        le=3650,
        description="Expiry applied to new credentials when the caller gives none. None = never.",
    )
    rotation_days: Annotated[int, Field(ge=1, le=3650)] = Field(
        default=90,
        description="Age after which needs_rotation() reports True.",
    )
    max_failed_auth: Annotated[int, Field(ge=1, le=100)] = Field(
        default=5,
        description="Failed validations before a credential is locked.",
    )
    key_backup_dir: Path | None = Field(
        default=None,
        description="Master key backups. None = key_backups/ next to the master key.",
    )
    max_key_backups: Annotated[int, Field(ge=1, le=100)] = Field(
        default=5,
        description="Newest master key backups kept; older ones are pruned.",
    )
    master_key_rotation_days: Annotated[int, Field(ge=1, le=3650)] = Field(
        default=90,
        description="Master key age after which startup logs a rotation warning.",
    )

    @field_validator("store_path", "master_key_path", "key_backup_dir", mode="before")
    @classmethod
    def expand_paths(cls, v: object) -> object:
        if isinstance(v, str):
            return Path(v).expanduser()
        if isinstance(v, Path):
            return v.expanduser()
        return v


class PermissionConfig(BaseModel):
    operation_minimums: dict[str, str] = Field(
        default_factory=lambda: {
            "summarize": "read_only",
            "analyze": "read_only",
            "categorize": "standard",
            "prioritize": "standard",
            "suggest": "standard",
            "group": "standard",
            "schedule": "standard",
            "detect_dependencies": "standard",
            "estimate_effort": "standard",
            "train": "full",
            "fine_tune": "full",
            "generate_credential": "admin",
            "manage_providers": "admin",
        },
        description=(
            "Minimum permission level per AI operation.  Operations missing from "
            "this mapping require 'admin'."
        ),
    )


class ThreatConfig(BaseModel):
    max_payload_bytes: Annotated[int, Field(ge=256, le=10_485_760)] = Field(
        default=10_240,
        description="Payloads larger than this are rejected before pattern scanning.",
    )
    disabled_categories: list[str] = Field(
        default_factory=list,
        description="Threat categories to skip, e.g. ['sql'].",
    )
    extra_patterns: list[dict[str, str]] = Field(
        default_factory=list,
        description=(
            "Additional patterns: [{'id': ..., 'category': ..., 'pattern': ..., "
            "'description': ...}]."
        ),
    )


class VerificationConfig(BaseModel):
    enabled: bool = Field(
        default=True,
        description="Build a ledger adapter and VerificationService at startup.",
    )
    freshness_window_seconds: Annotated[float, Field(gt=0, le=86_400)] = Field(
        default=300.0,
        description="Metadata timestamps older or newer than this are treated as replays.",
    )
    default_privacy_level: Literal["public", "hash_only", "private"] = "hash_only"
    ledger_db_path: Path = Field(default=Path("~/.waltodo/ledger.db"))
    adapter_timeout_seconds: Annotated[float, Field(gt=0, le=600)] = Field(
        default=30.0,
        description="Default timeout for ledger adapter calls when the caller gives none.",
    )

    @field_validator("ledger_db_path", mode="before")
    @classmethod
    def expand_ledger_path(cls, v: object) -> object:
        if isinstance(v, str):
            return Path(v).expanduser()
        return v


class ValidationEndpointConfig(BaseModel):
    base_urls: dict[str, str] = Field(
        default_factory=lambda: {
            "openai": "https://api.openai.com/v1",
            "anthropic": "https://api.anthropic.com/v1",
            "xai": "https://api.x.ai/v1",
        },
        description="Provider id -> API base URL used to check that a key is accepted.",
    )
    timeout_seconds: Annotated[float, Field(gt=0, le=120)] = 10.0


class LoggingConfig(BaseModel):
    level: Literal["debug", "info", "warning", "error", "critical"] = "info"
    format: Literal["json", "console"] = "console"
    file: Path | None = None
    audit_file: Path | None = Path("~/.waltodo/audit.ndjson")


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="WALTODO_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    credentials: CredentialConfig = Field(default_factory=CredentialConfig)
    permissions: PermissionConfig = Field(default_factory=PermissionConfig)
    threats: ThreatConfig = Field(default_factory=ThreatConfig)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)
    validation_endpoint: ValidationEndpointConfig = Field(
        default_factory=ValidationEndpointConfig
    )
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def load(cls, config_file: Path | None = None) -> "Settings":
        """Load settings from file + environment variables."""
        data: dict[str, object] = {}

        candidates = [Path.home() / ".waltodo" / "config.yaml"]
        if config_file:
            candidates.append(config_file)

        for path in candidates:
            if path.exists():
                import yaml  # lazy import

                with path.open() as f:
                    loaded = yaml.safe_load(f) or {}
                    data.update(loaded)

        return cls(**data)
