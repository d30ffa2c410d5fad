"""Event streaming layer — audit sink infrastructure.

Quick start::

    from waltodo_guard.events import LogEventBus, TOPIC_CREDENTIALS

    bus = LogEventBus(Path("~/.waltodo/audit.ndjson"))
    await bus.emit(TOPIC_CREDENTIALS, {"event_type": "credential_saved", "provider": "openai"})
"""

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

__all__ = [
    "ChainVerification",
    "EventBus",
    "NullEventBus",
    "LogEventBus",
    "FanoutEventBus",
    "TOPIC_CREDENTIALS",
    "TOPIC_PERMISSIONS",
    "TOPIC_THREATS",
    "TOPIC_VERIFICATION",
]
