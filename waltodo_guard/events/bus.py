"""Audit sinks for the guard layers.

Each audit record is a dict published on one of four topics:

                                                    ┌───────────────┐
  CredentialManager   ──emit("waltodo.credentials")───►│               │
  PermissionManager   ──emit("waltodo.permissions")───►│ EventBus impl │──► NDJSON file
  ContentGuard        ──emit("waltodo.threats")───────►│               │──► other sinks
  VerificationService ──emit("waltodo.verification")──►│               │
                                                    └───────────────┘

Sinks:
  - NullEventBus    → default (no-op)
  - LogEventBus     → NDJSON append-only file, hash-chained
  - FanoutEventBus  → several backends at once
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from waltodo_guard.logging import get_logger

log = get_logger(__name__)

# ---------------------------------------------------------------------------
# Standard topic constants
# ---------------------------------------------------------------------------

TOPIC_CREDENTIALS = "waltodo.credentials"
TOPIC_PERMISSIONS = "waltodo.permissions"
TOPIC_THREATS = "waltodo.threats"
TOPIC_VERIFICATION = "waltodo.verification"


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------


class EventBus(ABC):
    """Destination for audit records.

    Implementations may be called from concurrent tasks.  Before a record is
    written it gains ``_topic`` and ``_timestamp`` (epoch seconds).
    """

    @abstractmethod
    async def emit(self, topic: str, event: dict[str, Any]) -> None:
        """Deliver *event* under *topic*.

        Write failures are logged at error level and do not propagate
        into the credential path.
        """

    def _stamp(self, topic: str, event: dict[str, Any]) -> dict[str, Any]:
        """Set ``_topic`` and ``_timestamp`` on *event* unless already present."""
        event.setdefault("_topic", topic)
        event.setdefault("_timestamp", time.time())
        return event


# ---------------------------------------------------------------------------
# NullEventBus
# ---------------------------------------------------------------------------


class NullEventBus(EventBus):
    """Discards all events.  Used when no audit file is configured."""

    async def emit(self, topic: str, event: dict[str, Any]) -> None:
        pass


# ---------------------------------------------------------------------------
# LogEventBus: NDJSON file
# ---------------------------------------------------------------------------

GENESIS_HASH = "0" * 64


def chain_hash(prev_hash: str, record: dict[str, Any]) -> str:
    """SHA-256 over *prev_hash* and the canonical JSON of *record*."""
    canonical = json.dumps(record, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256((prev_hash + canonical).encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ChainVerification:
    """Outcome of :meth:`LogEventBus.verify`.  ``broken_at`` is a 1-based line number."""

    valid: bool
    entries: int
    broken_at: int | None = None
    reason: str | None = None


class LogEventBus(EventBus):
    """Appends each record as one hash-chained JSON line.  Without a file it only logs.

    Every line carries ``_prev_hash`` (the previous line's ``_entry_hash``, or
    64 zeros for the first) and ``_entry_hash = sha256(_prev_hash + canonical
    JSON of the line without _entry_hash)``.  Editing, deleting or reordering
    a line breaks the chain from that point; :meth:`verify` reports where.
    Cutting lines off the end is only visible against a saved :attr:`head`.

    Example::

        bus = LogEventBus(Path("~/.waltodo/audit.ndjson"))
        await bus.emit(TOPIC_CREDENTIALS, {"event_type": "credential_accessed"})
        assert (await bus.verify()).valid
    """

    def __init__(self, log_file: Path | None = None) -> None:
        self._file = log_file.expanduser() if log_file else None
        self._lock = asyncio.Lock()
        self._head: str | None = None

    @property
    def path(self) -> Path | None:
        return self._file

    @property
    def head(self) -> str | None:
        """``_entry_hash`` of the last line this process wrote, if any."""
        return self._head

    async def emit(self, topic: str, event: dict[str, Any]) -> None:
        self._stamp(topic, event)
        log.debug("event_bus_emit", topic=topic, event_type=event.get("event_type"))
        if self._file is None:
            return

        async with self._lock:
            try:
                await asyncio.to_thread(self._append, event)
            except OSError as exc:
                log.error("event_bus_write_failed", topic=topic, error=str(exc))

    async def verify(self) -> ChainVerification:
        """Walk the file and check every link of the hash chain."""
        if self._file is None:
            return ChainVerification(valid=True, entries=0)
        async with self._lock:
            result = await asyncio.to_thread(self._verify_sync)
        if not result.valid:
            log.error(
                "audit_chain_broken",
                path=str(self._file),
                line=result.broken_at,
                reason=result.reason,
            )
        return result

    async def search(
        self,
        *,
        event_type: str | None = None,
        provider: str | None = None,
        topic: str | None = None,
        since: float | None = None,
        until: float | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Records matching every given filter, oldest first.

        *since* and *until* bound ``_timestamp`` (epoch seconds, inclusive).
        *limit* keeps the most recent matches.
        """
        if self._file is None:
            return []
        async with self._lock:
            records = await asyncio.to_thread(self._read_records)

        matches = [
            r
            for r in records
            if (event_type is None or r.get("event_type") == event_type)
            and (provider is None or r.get("provider") == provider)
            and (topic is None or r.get("_topic") == topic)
            and (since is None or r.get("_timestamp", 0.0) >= since)
            and (until is None or r.get("_timestamp", 0.0) <= until)
        ]
        if limit is not None:
            matches = matches[-limit:] if limit > 0 else []
        return matches

    # ------------------------------------------------------------------
    # Internals (run in a worker thread, bus lock held)
    # ------------------------------------------------------------------

    def _append(self, event: dict[str, Any]) -> None:
        prev_hash = self._head if self._head is not None else self._tail_hash()
        # Round-trip first so the hashed form is exactly what a reader parses.
        record = json.loads(json.dumps(event, default=str))
        record["_prev_hash"] = prev_hash
        record.pop("_entry_hash", None)
        entry_hash = chain_hash(prev_hash, record)
        line = json.dumps({**record, "_entry_hash": entry_hash}, ensure_ascii=False) + "\n"

        self._file.parent.mkdir(parents=True, exist_ok=True)
        with self._file.open("a", encoding="utf-8") as f:
            f.write(line)
        self._head = entry_hash

    def _tail_hash(self) -> str:
        if not self._file.exists():
            return GENESIS_HASH
        last = ""
        with self._file.open(encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    last = line
        if not last:
            return GENESIS_HASH
        try:
            entry_hash = json.loads(last).get("_entry_hash")
        except (json.JSONDecodeError, AttributeError):
            entry_hash = None
        if not isinstance(entry_hash, str):
            log.warning("audit_chain_restarted", path=str(self._file))
            return GENESIS_HASH
        return entry_hash

    def _verify_sync(self) -> ChainVerification:
        if not self._file.exists():
            return ChainVerification(valid=True, entries=0)
        prev_hash = GENESIS_HASH
        entries = 0
        with self._file.open(encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    return ChainVerification(False, entries, lineno, "unparseable line")
                if not isinstance(record, dict):
                    return ChainVerification(False, entries, lineno, "unparseable line")
                stored = record.pop("_entry_hash", None)
                if record.get("_prev_hash") != prev_hash:
                    return ChainVerification(False, entries, lineno, "prev_hash mismatch")
                if not isinstance(stored, str) or not hmac.compare_digest(
                    stored, chain_hash(prev_hash, record)
                ):
                    return ChainVerification(False, entries, lineno, "entry_hash mismatch")
                prev_hash = stored
                entries += 1
        return ChainVerification(valid=True, entries=entries)

    def _read_records(self) -> list[dict[str, Any]]:
        if not self._file.exists():
            return []
        records = []
        with self._file.open(encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    log.warning("audit_line_unparseable", path=str(self._file), line=lineno)
                    continue
                if isinstance(record, dict):
                    records.append(record)
        return records


# ---------------------------------------------------------------------------
# FanoutEventBus: broadcast to multiple backends simultaneously
# ---------------------------------------------------------------------------


class FanoutEventBus(EventBus):
    """Sends a copy of each record to every backend; one failing backend does not stop the rest."""

    def __init__(self, backends: list[EventBus]) -> None:
        self._backends = backends

    @property
    def backends(self) -> list[EventBus]:
        return list(self._backends)

    async def emit(self, topic: str, event: dict[str, Any]) -> None:
        self._stamp(topic, event)
        results = await asyncio.gather(
            *(b.emit(topic, dict(event)) for b in self._backends),
            return_exceptions=True,
        )
        for backend, result in zip(self._backends, results):
            if isinstance(result, BaseException):
                log.error(
                    "event_bus_backend_failed",
                    topic=topic,
                    backend=type(backend).__name__,
                    error=str(result),
                )
