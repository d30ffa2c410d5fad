"""waltodo-guard: structlog setup.

Every record carries an ISO timestamp, its level and logger name, plus
whichever of provider, operation and verification_id the current task has
bound with :func:`bind_operation_context`.

Secret-bearing keys are masked by a processor before rendering, so a stray
``log.info("x", api_key=...)`` never reaches a handler in clear text.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from typing import Any

import structlog
from structlog.types import EventDict, WrappedLogger

# Context variables: automatically injected into log records when set.
_ctx_provider: ContextVar[str | None] = ContextVar("provider", default=None)
_ctx_operation: ContextVar[str | None] = ContextVar("operation", default=None)
_ctx_verification_id: ContextVar[str | None] = ContextVar("verification_id", default=None)

_SECRET_KEYS = frozenset(
    {"secret", "api_key", "apikey", "password", "token", "previous_key", "new_secret"}
)
_MASK = "***"


def bind_operation_context(
    provider: str | None = None,
    operation: str | None = None,
    verification_id: str | None = None,
) -> None:
    """Bind trust-boundary context to the current async task / thread."""
    if provider is not None:
        _ctx_provider.set(provider)
    if operation is not None:
        _ctx_operation.set(operation)
    if verification_id is not None:
        _ctx_verification_id.set(verification_id)


def clear_operation_context() -> None:
    _ctx_provider.set(None)
    _ctx_operation.set(None)
    _ctx_verification_id.set(None)


# ---------------------------------------------------------------------------
# Custom processors
# ---------------------------------------------------------------------------


def _inject_context_vars(
    _logger: WrappedLogger, _method: str, event_dict: EventDict
) -> EventDict:
    """Copy bound operation context into the record without overriding explicit keys."""
    if (provider := _ctx_provider.get()) is not None:
        event_dict.setdefault("provider", provider)
    if (operation := _ctx_operation.get()) is not None:
        event_dict.setdefault("operation", operation)
    if (verification_id := _ctx_verification_id.get()) is not None:
        event_dict.setdefault("verification_id", verification_id)
    return event_dict


def redact_secrets(
    _logger: WrappedLogger, _method: str, event_dict: EventDict
) -> EventDict:
    """Mask values whose key names a secret."""
    for key in list(event_dict):
        if key.lower() in _SECRET_KEYS and event_dict[key] is not None:
            event_dict[key] = _MASK
    return event_dict


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def _handlers(formatter: logging.Formatter, log_file: str | None) -> list[logging.Handler]:
    targets: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        targets.append(logging.FileHandler(log_file))
    for handler in targets:
        handler.setFormatter(formatter)
    return targets


def configure_logging(
    level: str = "info",
    format: str = "console",
    log_file: str | None = None,
) -> None:
    """Route structlog and stdlib records through one formatter.

    ``GuardContext.init`` calls this before anything logs.  *format* selects
    ``"json"`` lines or the coloured ``"console"`` renderer; *log_file*, when
    given, receives the same output as stdout.
    """
    pre_chain: list[Any] = [
        structlog.contextvars.merge_contextvars,
        _inject_context_vars,
        redact_secrets,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    renderer: Any = (
        structlog.processors.JSONRenderer()
        if format == "json"
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=pre_chain,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    )

    root = logging.getLogger()
    root.handlers = _handlers(formatter, log_file)
    root.setLevel(level.upper())

    for chatty in ("httpx", "httpcore", "aiosqlite", "asyncio"):
        logging.getLogger(chatty).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
