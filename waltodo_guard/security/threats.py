"""Security layer — ThreatDetector.

Pattern-based scanner for content crossing the AI trust boundary.  It ships
with built-in signatures across 7 categories:

  - prompt-injection     — "ignore previous instructions" and friends
  - ssrf                 — loopback / metadata / private hosts, file:// gopher://
  - smuggling            — raw HTTP header tokens embedded in content
  - sql                  — classic injection fragments
  - xss                  — script and event-handler markup
  - command              — shell substitution and chained commands
  - prototype-pollution  — ``__proto__`` / ``constructor`` / ``prototype`` keys

Rules are evaluated in order and the first match wins.  Scans are pure: the
detector holds no per-call state, so payloads can be scanned in parallel.

Payloads larger than ``max_payload_bytes`` are rejected with
:class:`InputTooLargeError` before any regex runs.

Usage::

    detector = ThreatDetector()
    detector.check_outbound(prompt)              # raises ThreatDetectedError
    clean = detector.sanitize_inbound(response)  # neutralizes, never raises on match
"""

from __future__ import annotations

import json
import re
import unicodedata
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from waltodo_guard.exceptions import InputTooLargeError, ThreatDetectedError

_I = re.IGNORECASE
_ZERO_WIDTH = frozenset("\u200b\u200c\u200d\ufeff\u00ad\u2060")

POLLUTION_KEYS = frozenset({"__proto__", "constructor", "prototype"})


class ThreatCategory(str, Enum):
    PROMPT_INJECTION = "prompt-injection"
    SSRF = "ssrf"
    SMUGGLING = "smuggling"
    SQL = "sql"
    XSS = "xss"
    COMMAND = "command"
    PROTOTYPE_POLLUTION = "prototype-pollution"


@dataclass
class ThreatPattern:
    """A single detection signature.

    Attributes:
        id:          Unique identifier (e.g. ``"pi_ignore_instructions"``).
        category:    The threat category it reports.
        pattern:     Compiled regex.
        description: Human-readable description.
        enabled:     Whether this rule is active.
    """

    id: str
    category: ThreatCategory
    pattern: re.Pattern[str]
    description: str = ""
    enabled: bool = True


@dataclass(frozen=True)
class ThreatScanResult:
    matched: bool
    category: ThreatCategory | None = None
    pattern_id: str | None = None
    excerpt: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "matched": self.matched,
            "category": self.category.value if self.category else None,
            "pattern_id": self.pattern_id,
            "excerpt": self.excerpt,
        }


@dataclass(frozen=True)
class SanitizedContent:
    content: Any
    modified: bool
    categories: list[str] = field(default_factory=list)


_CLEAN = ThreatScanResult(matched=False)


# ---------------------------------------------------------------------------
# Built-in pattern definitions
# ---------------------------------------------------------------------------


def _build_default_patterns() -> list[ThreatPattern]:
    P = ThreatPattern
    C = ThreatCategory
    rules: list[ThreatPattern] = []

    # --- 1. Prototype pollution in serialized text (2) ---
    rules.extend([
        P("pp_proto_key", C.PROTOTYPE_POLLUTION,
          re.compile(r"""["']?__proto__["']?\s*[:=\[]"""),
          "__proto__ used as a key or member"),
        P("pp_constructor_prototype", C.PROTOTYPE_POLLUTION,
          re.compile(r"""\bconstructor\b["'\]]*\s*(?:\.|\[\s*["']|:\s*\{\s*["'])\s*prototype\b"""),
          "constructor.prototype traversal"),
    ])

    # --- 2. Script / markup injection (4) ---
    rules.extend([
        P("xss_script_tag", C.XSS, re.compile(r"<\s*/?\s*script\b", _I), "<script> tag"),
        P("xss_js_uri", C.XSS, re.compile(r"\bjavascript\s*:", _I), "javascript: URI"),
        P("xss_event_handler", C.XSS,
          re.compile(r"<[^<>]{0,200}\bon(?:error|load|click|mouseover|focus|submit)\s*=", _I),
          "Inline event handler attribute"),
        P("xss_embed_tag", C.XSS, re.compile(r"<\s*(?:iframe|object|embed|svg)\b", _I),
          "Embedding markup"),
    ])

    # --- 3. SQL injection fragments (4) ---
    rules.extend([
        P("sql_drop_table", C.SQL, re.compile(r"\bDROP\s+TABLE\b", _I), "DROP TABLE"),
        P("sql_union_select", C.SQL, re.compile(r"\bUNION\s+(?:ALL\s+)?SELECT\b", _I),
          "UNION SELECT"),
        P("sql_tautology", C.SQL,
          re.compile(r"""['"]\s*OR\s+['"]?\w+['"]?\s*=\s*['"]?\w+""", _I),
          "Quoted OR tautology"),
        P("sql_stacked_query", C.SQL,
          re.compile(r";\s*(?:DELETE\s+FROM|INSERT\s+INTO|UPDATE\s+\w+\s+SET|TRUNCATE)\b", _I),
          "Stacked destructive query"),
    ])

    # --- 4. Command injection (3) ---
    rules.extend([
        P("cmd_substitution", C.COMMAND,
          re.compile(r"\$\([^)]{0,200}\)|`[^`\n]{0,200}?\b(?:rm|curl|wget|nc|bash|sh|cat|chmod)\b[^`\n]{0,200}`"),
          "Command substitution"),
        P("cmd_chain", C.COMMAND,
          re.compile(r"(?:[;|]|&&)\s*(?:rm|curl|wget|nc|ncat|bash|sh|zsh|python3?|perl|chmod)\b", _I),
          "Chained shell command"),
        P("cmd_rm_rf", C.COMMAND, re.compile(r"\brm\s+-[a-zA-Z]{0,8}[rf][a-zA-Z]{0,8}\s+/", _I),
          "Recursive delete of an absolute path"),
    ])

    # --- 5. SSRF targets (4) ---
    rules.extend([
        P("ssrf_file_scheme", C.SSRF, re.compile(r"\bfile://", _I), "file:// URL"),
        P("ssrf_gopher_scheme", C.SSRF, re.compile(r"\b(?:gopher|dict|ldap)://", _I),
          "gopher/dict/ldap URL"),
        P("ssrf_loopback", C.SSRF,
          re.compile(
              r"\b(?:https?|ftp)://(?:localhost|127(?:\.\d{1,3}){3}|0\.0\.0\.0|\[::1?\]|internal\b)",
              _I,
          ),
          "Loopback or internal host"),
        P("ssrf_private_or_metadata", C.SSRF,
          re.compile(
              r"\b(?:https?|ftp)://(?:10(?:\.\d{1,3}){3}|192\.168(?:\.\d{1,3}){2}|"
              r"172\.(?:1[6-9]|2\d|3[01])(?:\.\d{1,3}){2}|169\.254(?:\.\d{1,3}){2}|"
              r"metadata\.google\.internal)",
              _I,
          ),
          "Private network or cloud metadata host"),
    ])

    # --- 6. Request smuggling header tokens (3) ---
    rules.extend([
        P("smuggle_content_length", C.SMUGGLING, re.compile(r"\bContent-Length\s*:", _I),
          "Content-Length header"),
        P("smuggle_transfer_encoding", C.SMUGGLING, re.compile(r"\bTransfer-Encoding\s*:", _I),
          "Transfer-Encoding header"),
        P("smuggle_http_version", C.SMUGGLING, re.compile(r"\bHTTP/1\.[01]\b", _I),
          "Raw HTTP/1.x request line"),
    ])

    # --- 7. Prompt injection phrasing (6) ---
    rules.extend([
        P("pi_ignore_instructions", C.PROMPT_INJECTION,
          re.compile(
              r"ignore\s+(?:all\s+)?(?:the\s+)?(?:previous|prior|earlier|above)\s+"
              r"(?:instructions?|prompts?|rules?)",
              _I,
          ),
          "Classic 'ignore previous instructions' injection"),
        P("pi_disregard", C.PROMPT_INJECTION,
          re.compile(
              r"disregard\s+(?:all\s+)?(?:your|previous|prior|earlier|the)\s+"
              r"(?:instructions?|rules?|guidelines?)",
              _I,
          ),
          "Disregard instructions variant"),
        P("pi_forget_everything", C.PROMPT_INJECTION,
          re.compile(r"forget\s+(?:everything|all)\s+(?:you\s+)?(?:know|were\s+told|learned)", _I),
          "Forget everything variant"),
        P("pi_role_override", C.PROMPT_INJECTION,
          re.compile(r"\byou\s+are\s+now\s+(?:a|an|in)\b|\bact\s+as\s+(?:an?\s+)?(?:unrestricted|jailbroken)", _I),
          "Role override"),
        P("pi_reveal_secrets", C.PROMPT_INJECTION,
          re.compile(
              r"\b(?:reveal|print|show|leak|output)\s+(?:your\s+|the\s+)?"
              r"(?:system\s+prompt|hidden\s+instructions|api\s+keys?|credentials)",
              _I,
          ),
          "Exfiltration of prompt or credentials"),
        P("pi_fake_system_turn", C.PROMPT_INJECTION,
          re.compile(r"(?:^|\n)[ \t]*(?:system|assistant)[ \t]*:", _I),
          "Fake system or assistant turn"),
    ])

    return rules


class ThreatDetector:
    """Ordered, first-match-wins signature scanner.

    Parameters
    ----------
    max_payload_bytes:
        Serialized size above which content is rejected unscanned.
    extra_patterns:
        Appended after the built-in rules.
    disabled_categories:
        Categories whose rules are skipped.
    """

    def __init__(
        self,
        *,
        max_payload_bytes: int = 10_240,
        extra_patterns: list[ThreatPattern] | None = None,
        disabled_categories: list[ThreatCategory | str] | None = None,
    ) -> None:
        self._max_bytes = max_payload_bytes
        self._patterns = _build_default_patterns()
        if extra_patterns:
            self._patterns.extend(extra_patterns)
        self._disabled: set[ThreatCategory] = {
            ThreatCategory(c) for c in (disabled_categories or [])
        }

    # ------------------------------------------------------------------
    # Pattern management
    # ------------------------------------------------------------------

    @property
    def patterns(self) -> list[ThreatPattern]:
        return self._patterns

    def add_pattern(self, rule: ThreatPattern) -> None:
        self._patterns.append(rule)

    def disable_pattern(self, pattern_id: str) -> bool:
        for p in self._patterns:
            if p.id == pattern_id:
                p.enabled = False
                return True
        return False

    def enable_pattern(self, pattern_id: str) -> bool:
        for p in self._patterns:
            if p.id == pattern_id:
                p.enabled = True
                return True
        return False

    def disable_category(self, category: ThreatCategory | str) -> None:
        self._disabled.add(ThreatCategory(category))

    def enable_category(self, category: ThreatCategory | str) -> None:
        self._disabled.discard(ThreatCategory(category))

    def status(self) -> dict[str, Any]:
        active = self._active_patterns()
        return {
            "max_payload_bytes": self._max_bytes,
            "total_patterns": len(self._patterns),
            "enabled_patterns": len(active),
            "disabled_categories": sorted(c.value for c in self._disabled),
            "categories": sorted({p.category.value for p in active}),
        }

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def scan(self, content: Any) -> ThreatScanResult:
        """Return the first match in *content*, or a clean result."""
        text = self._serialize(content)
        self._check_size(text)

        if not isinstance(content, str) and ThreatCategory.PROTOTYPE_POLLUTION not in self._disabled:
            key = _find_pollution_key(content)
            if key is not None:
                return ThreatScanResult(
                    matched=True,
                    category=ThreatCategory.PROTOTYPE_POLLUTION,
                    pattern_id="pp_object_key",
                    excerpt=key,
                )

        normalized = normalize_text(text)
        for rule in self._active_patterns():
            match = rule.pattern.search(normalized)
            if match:
                return ThreatScanResult(
                    matched=True,
                    category=rule.category,
                    pattern_id=rule.id,
                    excerpt=match.group(0)[:80],
                )
        return _CLEAN

    def check_outbound(self, content: Any) -> None:
        """Raise :class:`ThreatDetectedError` if *content* matches any rule."""
        result = self.scan(content)
        if result.matched:
            assert result.category is not None
            raise ThreatDetectedError(result.category.value, result.pattern_id or "", "outbound")

    def sanitize_inbound(self, content: Any) -> SanitizedContent:
        """Neutralize matches in *content* instead of rejecting it."""
        self._check_size(self._serialize(content))
        categories: set[str] = set()
        cleaned = self._neutralize(content, categories)
        return SanitizedContent(
            content=cleaned,
            modified=bool(categories),
            categories=sorted(categories),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _active_patterns(self) -> list[ThreatPattern]:
        return [p for p in self._patterns if p.enabled and p.category not in self._disabled]

    def _check_size(self, text: str) -> None:
        size = len(text.encode("utf-8"))
        if size > self._max_bytes:
            raise InputTooLargeError(size, self._max_bytes)

    @staticmethod
    def _serialize(content: Any) -> str:
        if isinstance(content, str):
            return content
        return json.dumps(content, default=str, ensure_ascii=False)

    def _neutralize(self, value: Any, categories: set[str]) -> Any:
        if isinstance(value, str):
            text = normalize_text(value)
            hits = 0
            for rule in self._active_patterns():
                text, count = rule.pattern.subn(f"[REDACTED:{rule.category.value}]", text)
                if count:
                    hits += count
                    categories.add(rule.category.value)
            return text if hits else value
        if isinstance(value, dict):
            cleaned: dict[Any, Any] = {}
            for key, item in value.items():
                if (
                    isinstance(key, str)
                    and key in POLLUTION_KEYS
                    and ThreatCategory.PROTOTYPE_POLLUTION not in self._disabled
                ):
                    categories.add(ThreatCategory.PROTOTYPE_POLLUTION.value)
                    continue
                cleaned[key] = self._neutralize(item, categories)
            return cleaned
        if isinstance(value, (list, tuple)):
            items = [self._neutralize(item, categories) for item in value]
            return tuple(items) if isinstance(value, tuple) else items
        return value


def normalize_text(text: str) -> str:
    """NFKC-normalize and strip zero-width characters so they cannot split keywords."""
    normalized = unicodedata.normalize("NFKC", text)
    return "".join(ch for ch in normalized if ch not in _ZERO_WIDTH)


def _find_pollution_key(value: Any) -> str | None:
    if isinstance(value, dict):
        for key, item in value.items():
            if isinstance(key, str) and key in POLLUTION_KEYS:
                return key
            found = _find_pollution_key(item)
            if found is not None:
                return found
    elif isinstance(value, (list, tuple)):
        for item in value:
            found = _find_pollution_key(item)
            if found is not None:
                return found
    return None
