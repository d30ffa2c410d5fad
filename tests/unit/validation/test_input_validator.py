"""Unit tests — InputValidator (rule runner, sanitizer, flags, environment)."""

from __future__ import annotations

import pytest

from waltodo_guard.exceptions import (
    ConflictingFlagsError,
    MissingEnvVarsError,
    MissingFlagsError,
    ValidationError,
)
from waltodo_guard.validation import (
    CommonRules,
    InputValidator,
    ValidationOptions,
    ValidationResult,
    max_length,
    required_rule,
)

COLLECT = ValidationOptions(throw_on_first_error=False, collect_all_errors=True)
FIRST_ONLY = ValidationOptions(throw_on_first_error=False, collect_all_errors=False)


class _TodoInputError(ValidationError):
    pass


@pytest.mark.unit
class TestValidate:
    # 1. no rules means any value passes, including None
    @pytest.mark.parametrize("value", [None, "", 0, [], {"a": 1}, "anything"])
    def test_empty_rules_pass(self, value) -> None:
        result = InputValidator.validate(value, [])
        assert result.valid is True
        assert result.errors == []

    # 2. the first failure raises by default
    def test_throws_on_first_error(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            InputValidator.validate("not-an-email", [CommonRules.email, max_length(3)], "email")
        err = exc_info.value
        assert err.code == "INVALID_EMAIL"
        assert err.field == "email"
        assert str(err) == "email: Invalid email address"

    # 3. collect mode gathers every failure and does not raise
    def test_collects_all(self) -> None:
        result = InputValidator.validate(
            "not-an-email", [CommonRules.email, max_length(3)], "email", COLLECT
        )
        assert result.valid is False
        assert [e.code for e in result.errors] == ["INVALID_EMAIL", "TOO_LONG"]

    # 4. non-throwing, non-collecting mode reports only the first failure
    def test_first_only(self) -> None:
        result = InputValidator.validate(
            "not-an-email", [CommonRules.email, max_length(3)], "email", FIRST_ONLY
        )
        assert [e.code for e in result.errors] == ["INVALID_EMAIL"]

    # 5. a custom error type can be substituted
    def test_custom_error_class(self) -> None:
        opts = ValidationOptions(error_class=_TodoInputError)
        with pytest.raises(_TodoInputError):
            InputValidator.validate(None, [required_rule()], "title", opts)

    # 6. rules run in order
    def test_rule_order(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            InputValidator.validate(None, [required_rule(), CommonRules.email])
        assert exc_info.value.code == "REQUIRED_FIELD"


@pytest.mark.unit
class TestValidateObject:
    SCHEMA = {
        "email": [required_rule(), CommonRules.email],
        "priority": [CommonRules.priority],
        "wallet": [CommonRules.wallet_address],
    }

    def test_collects_by_default(self) -> None:
        result = InputValidator.validate_object(
            {"email": "bad", "priority": "urgent", "unknown": object()}, self.SCHEMA
        )
        assert result.valid is False
        assert {e.field for e in result.errors} == {"email", "priority"}

    def test_fields_absent_from_schema_pass(self) -> None:
        result = InputValidator.validate_object({"notes": "<anything>"}, self.SCHEMA)
        assert result.valid is True

    def test_throw_and_collect_raises_summary(self) -> None:
        opts = ValidationOptions(throw_on_first_error=True, collect_all_errors=True)
        with pytest.raises(ValidationError) as exc_info:
            InputValidator.validate_object({"email": "bad", "priority": "x"}, self.SCHEMA, opts)
        assert exc_info.value.code == "OBJECT_VALIDATION_FAILED"
        assert len(exc_info.value.errors) == 2

    def test_throw_only_raises_first_field(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            InputValidator.validate_object(
                {"email": "bad"}, self.SCHEMA, ValidationOptions()
            )
        assert exc_info.value.field == "email"

    def test_raise_for(self) -> None:
        result = InputValidator.validate_object({"email": "bad", "priority": "x"}, self.SCHEMA)
        with pytest.raises(ValidationError) as exc_info:
            InputValidator.raise_for(result)
        assert exc_info.value.code == "MULTIPLE_VIOLATIONS"
        InputValidator.raise_for(ValidationResult())


@pytest.mark.unit
class TestSanitizeString:
    def test_script_tags_removed(self) -> None:
        out = InputValidator.sanitize_string("<script>alert(1)</script>")
        assert "<script>" not in out
        assert out == r"alert\(1\)"

    def test_command_substitution_escaped(self) -> None:
        out = InputValidator.sanitize_string("$(rm -rf /)")
        assert "$(" not in out
        assert out == r"\$\(rm -rf /\)"

    @pytest.mark.parametrize("value", [None, ""])
    def test_empty_input(self, value) -> None:
        assert InputValidator.sanitize_string(value) == ""

    def test_control_characters_stripped(self) -> None:
        assert InputValidator.sanitize_string("a\x00b\x07c\x1b") == "abc"

    def test_control_characters_cannot_hide_tags(self) -> None:
        assert InputValidator.sanitize_string("<scr\x00ipt>hi") == "hi"

    def test_whitespace_collapsed(self) -> None:
        assert InputValidator.sanitize_string("  buy \t\n  milk  ") == "buy milk"

    def test_metacharacters_escaped(self) -> None:
        assert InputValidator.sanitize_string("it's a|b & c;") == r"it\'s a\|b \& c\;"

    def test_backslash_escaped_once(self) -> None:
        assert InputValidator.sanitize_string("a\\b") == "a\\\\b"

    def test_plain_text_untouched(self) -> None:
        assert InputValidator.sanitize_string("Call Alex at 5pm") == "Call Alex at 5pm"


@pytest.mark.unit
class TestCommandFlags:
    def test_exclusive_group_conflict(self) -> None:
        with pytest.raises(ConflictingFlagsError) as exc_info:
            InputValidator.validate_command_flags(
                {"verbose": True, "quiet": True}, [], [["verbose", "quiet"]]
            )
        assert exc_info.value.flags == ["verbose", "quiet"]
        assert exc_info.value.code == "MUTUALLY_EXCLUSIVE_FLAGS"

    def test_single_flag_in_group_ok(self) -> None:
        InputValidator.validate_command_flags({"verbose": True}, [], [["verbose", "quiet"]])

    def test_false_counts_as_present(self) -> None:
        InputValidator.validate_command_flags({"network": False}, ["network"])

    def test_false_does_not_conflict(self) -> None:
        InputValidator.validate_command_flags(
            {"verbose": True, "quiet": False}, [], [["verbose", "quiet"]]
        )

    def test_missing_lists_every_key(self) -> None:
        with pytest.raises(MissingFlagsError) as exc_info:
            InputValidator.validate_command_flags({"title": None}, ["title", "list", "priority"])
        assert exc_info.value.missing == ["title", "list", "priority"]


@pytest.mark.unit
class TestEnvironment:
    def test_defaults_fill_absent_keys(self) -> None:
        env = InputValidator.validate_environment(
            ["WALTODO_NETWORK", "WALTODO_STORAGE"],
            {"WALTODO_STORAGE": "local"},
            environ={"WALTODO_NETWORK": "testnet"},
        )
        assert env == {"WALTODO_NETWORK": "testnet", "WALTODO_STORAGE": "local"}

    def test_environment_beats_defaults(self) -> None:
        env = InputValidator.validate_environment(
            ["WALTODO_NETWORK"], {"WALTODO_NETWORK": "devnet"}, environ={"WALTODO_NETWORK": "mainnet"}
        )
        assert env["WALTODO_NETWORK"] == "mainnet"

    def test_optional_key_present_in_environment(self) -> None:
        env = InputValidator.validate_environment(
            ["A"], {"B": "default"}, environ={"A": "1", "B": "from-env"}
        )
        assert env == {"A": "1", "B": "from-env"}

    def test_optional_key_absent_uses_default(self) -> None:
        env = InputValidator.validate_environment(["A"], {"B": "default"}, environ={"A": "1"})
        assert env == {"A": "1", "B": "default"}

    def test_missing_lists_all(self) -> None:
        with pytest.raises(MissingEnvVarsError) as exc_info:
            InputValidator.validate_environment(["A", "B", "C"], environ={"B": "1"})
        assert exc_info.value.missing == ["A", "C"]

    def test_empty_value_is_missing(self) -> None:
        with pytest.raises(MissingEnvVarsError) as exc_info:
            InputValidator.validate_environment(["A"], {"A": "fallback"}, environ={"A": ""})
        assert exc_info.value.missing == ["A"]
