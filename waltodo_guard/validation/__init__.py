"""Validation layer — declarative rules, input sanitizing, typed payloads."""

from waltodo_guard.validation.payloads import TodoContent
from waltodo_guard.validation.rules import (
    CommonRules,
    FieldError,
    ValidationResult,
    ValidationRule,
    array_length,
    combine_rules,
    conditional_rule,
    custom,
    in_range,
    matches_pattern,
    max_length,
    one_of,
    required_rule,
)
from waltodo_guard.validation.validator import InputValidator, ValidationOptions

__all__ = [
    "CommonRules",
    "FieldError",
    "InputValidator",
    "TodoContent",
    "ValidationOptions",
    "ValidationResult",
    "ValidationRule",
    "array_length",
    "combine_rules",
    "conditional_rule",
    "custom",
    "in_range",
    "matches_pattern",
    "max_length",
    "one_of",
    "required_rule",
]
