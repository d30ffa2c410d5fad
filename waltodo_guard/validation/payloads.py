"""Validation layer — fixed-field views of untrusted content.

Todo items bound for an AI provider are parsed into :class:`TodoContent`.
Only declared fields are ever populated, so keys such as ``__proto__`` or
``constructor`` are dropped at parse time rather than searched for.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

_DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"


class TodoContent(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    id: str = Field(min_length=1, max_length=128)
    title: str = Field(min_length=1, max_length=500)
    description: str = Field(default="", max_length=5000)
    completed: bool = False
    priority: Literal["high", "medium", "low"] = "medium"
    tags: list[str] = Field(default_factory=list, max_length=50)
    due_date: str | None = Field(default=None, pattern=_DATE_PATTERN)

    @field_validator("tags")
    @classmethod
    def _strip_tags(cls, v: list[str]) -> list[str]:
        return [t.strip() for t in v if t.strip()]

    def prompt_fields(self) -> dict[str, object]:
        """The subset sent to a provider."""
        return self.model_dump(exclude_none=True)
