"""Validation layer — declarative rules.

A :class:`ValidationRule` is a pure predicate plus the message and code
reported when it fails.  Rules carry no state and compose freely::

    rule = combine_rules(required_rule(), CommonRules.email)
    gated = conditional_rule(lambda v: v is not None, CommonRules.priority)
"""

from __future__ import annotations

import re
from collections.abc import Callable, Collection, Sized
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ValidationRule:
    test: Callable[[Any], bool]
    message: str
    code: str

    def __call__(self, value: Any) -> bool:
        return bool(self.test(value))


@dataclass(frozen=True)
class FieldError:
    field: str
    code: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "code": self.code, "message": self.message}


@dataclass
class ValidationResult:
    valid: bool = True
    errors: list[FieldError] = field(default_factory=list)

    def add(self, error: FieldError) -> None:
        self.errors.append(error)
        self.valid = False

    def merge(self, other: ValidationResult) -> None:
        for error in other.errors:
            self.add(error)


# ---------------------------------------------------------------------------
# Combinators
# ---------------------------------------------------------------------------


def combine_rules(*rules: ValidationRule) -> ValidationRule:
    """Logical AND of *rules*."""
    return ValidationRule(
        test=lambda value: all(rule(value) for rule in rules),
        message="Value must satisfy all constraints",
        code="COMPOSITE_VALIDATION_FAILED",
    )


def conditional_rule(predicate: Callable[[Any], bool], rule: ValidationRule) -> ValidationRule:
    """Apply *rule* only when ``predicate(value)`` holds."""
    return ValidationRule(
        test=lambda value: not predicate(value) or rule(value),
        message=rule.message,
        code=rule.code,
    )


# ---------------------------------------------------------------------------
# Constructors
# ---------------------------------------------------------------------------


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip() != ""
    return True


def required_rule(message: str = "This field is required") -> ValidationRule:
    return ValidationRule(test=_is_present, message=message, code="REQUIRED_FIELD")


def matches_pattern(
    pattern: str | re.Pattern[str], message: str, code: str = "PATTERN_MISMATCH"
) -> ValidationRule:
    compiled = re.compile(pattern) if isinstance(pattern, str) else pattern
    return ValidationRule(
        test=lambda value: isinstance(value, str) and compiled.search(value) is not None,
        message=message,
        code=code,
    )


def in_range(minimum: float, maximum: float, message: str | None = None) -> ValidationRule:
    def _test(value: Any) -> bool:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        return minimum <= value <= maximum

    return ValidationRule(
        test=_test,
        message=message or f"Value must be between {minimum} and {maximum}",
        code="OUT_OF_RANGE",
    )


def array_length(
    minimum: int, maximum: int | None = None, message: str | None = None
) -> ValidationRule:
    def _test(value: Any) -> bool:
        if not isinstance(value, (list, tuple)):
            return False
        return len(value) >= minimum and (maximum is None or len(value) <= maximum)

    bound = f"between {minimum} and {maximum}" if maximum is not None else f"at least {minimum}"
    return ValidationRule(
        test=_test,
        message=message or f"Array must contain {bound} items",
        code="INVALID_ARRAY_LENGTH",
    )


def one_of(allowed: Collection[Any], message: str | None = None, code: str = "INVALID_VALUE") -> ValidationRule:
    choices = tuple(allowed)
    return ValidationRule(
        test=lambda value: value in choices,
        message=message or f"Value must be one of: {', '.join(map(str, choices))}",
        code=code,
    )


def max_length(limit: int, message: str | None = None) -> ValidationRule:
    return ValidationRule(
        test=lambda value: isinstance(value, Sized) and len(value) <= limit,
        message=message or f"Value must be at most {limit} characters",
        code="TOO_LONG",
    )


def custom(
    test: Callable[[Any], bool], message: str, code: str = "CUSTOM_VALIDATION_FAILED"
) -> ValidationRule:
    return ValidationRule(test=test, message=message, code=code)


# ---------------------------------------------------------------------------
# Canned rules
# ---------------------------------------------------------------------------


class CommonRules:
    """Rules shared by every todo / wallet input."""

    date_format = matches_pattern(
        r"^\d{4}-\d{2}-\d{2}\Z", "Date must be in YYYY-MM-DD format", "INVALID_DATE_FORMAT"
    )
    email = matches_pattern(
        r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}\Z",
        "Invalid email address",
        "INVALID_EMAIL",
    )
    wallet_address = matches_pattern(
        r"^0x[a-fA-F0-9]{40}\Z", "Invalid wallet address format", "INVALID_WALLET_ADDRESS"
    )
    priority = one_of(
        ("high", "medium", "low"),
        "Priority must be high, medium, or low",
        "INVALID_PRIORITY",
    )
    network = one_of(
        ("mainnet", "testnet", "devnet", "local"),
        "Network must be mainnet, testnet, devnet, or local",
        "INVALID_NETWORK",
    )
    storage_location = one_of(
        ("local", "blockchain", "both"),
        "Storage location must be local, blockchain, or both",
        "INVALID_STORAGE_LOCATION",
    )
