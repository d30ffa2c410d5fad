"""waltodo-guard — Credential and trust-boundary layer for the WalTodo CLI.

Everything that crosses between the todo application and an AI provider or
the verification ledger passes through here.

Layers (bottom to top):
    1. Credentials  — AES-256-GCM encrypted store, lifecycle manager, validation endpoint
    2. Security     — operation permissions, threat detection, content guard, audit trail
    3. Validation   — declarative rules, string sanitizing, flag/env checks, typed payloads
    4. Verification — hashed AI-operation records anchored through a ledger adapter

Wire them together with :class:`waltodo_guard.context.GuardContext`.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
