"""Validation layer — InputValidator.

Runs :class:`ValidationRule` lists against values and objects, and provides
the defensive helpers used at every input boundary:

  - ``sanitize_string``        — control chars, markup and shell metacharacters
  - ``validate_command_flags`` — required and mutually exclusive flags
  - ``validate_environment``   — required environment variables with defaults

Expected failures come back as a :class:`ValidationResult` when the caller
asks to collect them; otherwise the first failure raises
:class:`~waltodo_guard.exceptions.ValidationError` (or the configured
subclass).
"""

from __future__ import annotations

import os
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from waltodo_guard.exceptions import (
    ConflictingFlagsError,
    MissingEnvVarsError,
    MissingFlagsError,
    ValidationError,
)
from waltodo_guard.validation.rules import FieldError, ValidationResult, ValidationRule

# Tab, newline and carriage return are left for the whitespace collapse.
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_HTML_TAG = re.compile(r"<[^>]*>")
_SHELL_METACHARS = re.compile(r"""([\\$'"`;|&<>(){}\[\]!#*?~^])""")
_WHITESPACE_RUN = re.compile(r"\s+")


@dataclass(frozen=True)
class ValidationOptions:
    throw_on_first_error: bool = True
    collect_all_errors: bool = False
    error_class: type[ValidationError] = ValidationError


OBJECT_OPTIONS = ValidationOptions(throw_on_first_error=False, collect_all_errors=True)


class InputValidator:
    """Stateless rule runner.  All methods are static."""

    @staticmethod
    def validate(
        value: Any,
        rules: Iterable[ValidationRule],
        field: str = "input",
        options: ValidationOptions | None = None,
    ) -> ValidationResult:
        """Apply *rules* to *value* in order.

        With ``collect_all_errors`` every failure is gathered into the returned
        result.  Otherwise ``throw_on_first_error`` raises on the first failure,
        and when it is off the first failure is returned in the result.
        """
        opts = options or ValidationOptions()
        result = ValidationResult()

        for rule in rules:
            if rule(value):
                continue
            error = FieldError(field=field, code=rule.code, message=rule.message)
            if opts.collect_all_errors:
                result.add(error)
                continue
            if opts.throw_on_first_error:
                raise opts.error_class(
                    f"{field}: {rule.message}", field=field, code=rule.code, errors=[error]
                )
            result.add(error)
            break

        return result

    @staticmethod
    def validate_object(
        data: Mapping[str, Any],
        schema: Mapping[str, Sequence[ValidationRule]],
        options: ValidationOptions | None = None,
    ) -> ValidationResult:
        """Validate each schema field present in *data*.

        Keys of *data* without a schema entry pass unconditionally, and schema
        fields absent from *data* are not checked (use ``required_rule`` on a
        ``None`` value when presence matters).
        """
        opts = options or OBJECT_OPTIONS
        result = ValidationResult()
        per_field = ValidationOptions(
            throw_on_first_error=opts.throw_on_first_error and not opts.collect_all_errors,
            collect_all_errors=opts.collect_all_errors,
            error_class=opts.error_class,
        )

        for name, rules in schema.items():
            if name not in data:
                continue
            result.merge(InputValidator.validate(data[name], rules, name, per_field))

        if not result.valid and opts.throw_on_first_error and opts.collect_all_errors:
            summary = "; ".join(f"{e.field}: {e.message}" for e in result.errors)
            raise opts.error_class(
                f"Object validation failed: {summary}",
                field="object",
                code="OBJECT_VALIDATION_FAILED",
                errors=result.errors,
            )
        return result

    @staticmethod
    def raise_for(result: ValidationResult, field: str = "input") -> None:
        """Turn a failed result into a ``ValidationError``."""
        if result.valid:
            return
        if len(result.errors) == 1:
            error = result.errors[0]
            raise ValidationError(
                f"{error.field}: {error.message}", field=error.field, code=error.code,
                errors=result.errors,
            )
        raise ValidationError(
            "; ".join(f"{e.field}: {e.message}" for e in result.errors),
            field=field,
            code="MULTIPLE_VIOLATIONS",
            errors=result.errors,
        )

    # ------------------------------------------------------------------
    # Sanitizing
    # ------------------------------------------------------------------

    @staticmethod
    def sanitize_string(value: str | None) -> str:
        """Neutralize *value* for display and shell-adjacent use.

        Order matters: control characters go first so they cannot hide tags,
        tags go before escaping so their brackets are not escaped into text.
        """
        if not value:
            return ""
        text = _CONTROL_CHARS.sub("", str(value))
        text = _HTML_TAG.sub("", text)
        text = _SHELL_METACHARS.sub(r"\\\1", text)
        return _WHITESPACE_RUN.sub(" ", text).strip()

    # ------------------------------------------------------------------
    # Command-line and environment
    # ------------------------------------------------------------------

    @staticmethod
    def validate_command_flags(
        flags: Mapping[str, Any],
        required: Sequence[str] = (),
        exclusive_groups: Sequence[Sequence[str]] = (),
    ) -> None:
        """Check required and mutually exclusive flags.

        ``False`` counts as given; only an absent key or ``None`` is missing.
        """
        missing = [name for name in required if flags.get(name) is None]
        if missing:
            raise MissingFlagsError(missing)

        for group in exclusive_groups:
            used = [name for name in group if flags.get(name)]
            if len(used) > 1:
                raise ConflictingFlagsError(used)

    @staticmethod
    def validate_environment(
        required: Sequence[str],
        defaults: Mapping[str, str] | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        """Resolve every required and defaulted key.

        A key set in the environment keeps its environment value; *defaults*
        fill only keys the environment does not have.  A required key that
        resolves to an empty string counts as missing.
        """
        env = environ if environ is not None else os.environ
        defaults = defaults or {}
        resolved: dict[str, str] = {}
        for key in dict.fromkeys([*required, *defaults]):
            if key in env:
                resolved[key] = env[key]
            elif key in defaults:
                resolved[key] = defaults[key]

        missing = [key for key in required if not resolved.get(key)]
        if missing:
            raise MissingEnvVarsError(missing)
        return resolved
