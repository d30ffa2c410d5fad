"""Security layer — ContentGuard.

Wraps the trust boundary around an AI-completion adapter without ever
calling it:

    raw todos ──► TodoContent (typed, fixed fields) ──► ThreatDetector.check_outbound
                                                              │
                                           (caller sends request to provider)
                                                              │
    caller ◄── SanitizedContent ◄── ThreatDetector.sanitize_inbound ◄── response

Outbound matches abort before anything is sent; inbound matches are
neutralized.  Both emit audit events.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from waltodo_guard.exceptions import InputTooLargeError, ThreatDetectedError, ValidationError
from waltodo_guard.logging import get_logger
from waltodo_guard.security.audit import AuditEvent, AuditLogger
from waltodo_guard.security.threats import SanitizedContent, ThreatDetector
from waltodo_guard.validation.payloads import TodoContent
from waltodo_guard.validation.rules import FieldError

log = get_logger(__name__)


class ContentGuard:
    def __init__(self, detector: ThreatDetector, audit: AuditLogger) -> None:
        self._detector = detector
        self._audit = audit

    @property
    def detector(self) -> ThreatDetector:
        return self._detector

    def parse_todos(self, items: Sequence[Mapping[str, Any]]) -> list[TodoContent]:
        """Parse raw todo dicts into :class:`TodoContent`; undeclared keys are dropped."""
        parsed: list[TodoContent] = []
        errors: list[FieldError] = []
        for index, item in enumerate(items):
            try:
                parsed.append(TodoContent.model_validate(dict(item)))
            except PydanticValidationError as exc:
                for err in exc.errors():
                    loc = ".".join(str(part) for part in err["loc"])
                    errors.append(
                        FieldError(field=f"todos[{index}].{loc}", code=err["type"], message=err["msg"])
                    )
        if errors:
            raise ValidationError(
                "; ".join(f"{e.field}: {e.message}" for e in errors),
                field="todos",
                code="MULTIPLE_VIOLATIONS" if len(errors) > 1 else errors[0].code,
                errors=errors,
            )
        return parsed

    async def inspect_todos(
        self, items: Sequence[Mapping[str, Any]], *, provider: str, operation: str = ""
    ) -> list[TodoContent]:
        """Validate and scan todo items before they are sent to *provider*."""
        todos = self.parse_todos(items)
        await self.inspect_request([t.prompt_fields() for t in todos], provider=provider, operation=operation)
        return todos

    async def inspect_request(self, content: Any, *, provider: str, operation: str = "") -> None:
        """Raise if *content* is oversized or carries a threat signature."""
        try:
            self._detector.check_outbound(content)
        except ThreatDetectedError as exc:
            await self._audit.log(
                AuditEvent.THREAT_DETECTED,
                provider=provider,
                direction="outbound",
                category=exc.category,
                pattern_id=exc.pattern_id,
                operation=operation,
            )
            log.warning("outbound_threat_blocked", provider=provider, category=exc.category)
            raise
        except InputTooLargeError as exc:
            await self._audit.log(
                AuditEvent.THREAT_DETECTED,
                provider=provider,
                direction="outbound",
                category="oversized",
                size=exc.size,
                operation=operation,
            )
            raise

    async def inspect_response(
        self, content: Any, *, provider: str, operation: str = ""
    ) -> SanitizedContent:
        """Neutralize threat signatures in a provider response."""
        result = self._detector.sanitize_inbound(content)
        if result.modified:
            await self._audit.log(
                AuditEvent.RESPONSE_SANITIZED,
                provider=provider,
                categories=result.categories,
                operation=operation,
            )
            log.info("inbound_response_sanitized", provider=provider, categories=result.categories)
        return result
