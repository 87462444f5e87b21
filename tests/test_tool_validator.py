"""Tests for invocation validation and single-pass repair."""

from __future__ import annotations

import pytest

from toolrelay.ai.orchestration.parameter_aliases import ParameterAliasTable
from toolrelay.ai.orchestration.tool_validator import ToolCallValidator, coerce_value, zero_value
from toolrelay.ai.orchestration.turn_context import TurnContext
from toolrelay.ai.orchestration.types import (
    CALL_ID_KEY,
    IssueCode,
    ParameterSpec,
    ParameterType,
    ToolInvocation,
    ToolSchema,
)
from toolrelay.ai.services.telemetry import InMemoryDiagnosticSink
from toolrelay.ai.tools.registry import ToolSchemaRegistry


READ_FILE = ToolSchema(
    tool_id="read_file",
    parameters=(
        ParameterSpec("file_path", required=True),
        ParameterSpec("limit", ParameterType.INTEGER, minimum=1, maximum=50),
        ParameterSpec("encoding", default="utf-8"),
    ),
)

SEARCH = ToolSchema(
    tool_id="search_text",
    parameters=(
        ParameterSpec("query", required=True, min_length=1, max_length=20),
        ParameterSpec("mode", allowed_values=("literal", "regex"), default="literal", required=True),
        ParameterSpec("case_sensitive", ParameterType.BOOLEAN),
        ParameterSpec("paths", ParameterType.ARRAY, schema={"type": "array", "items": {"type": "string"}}),
        ParameterSpec("glob", pattern=r"^[\w*./]+$"),
        ParameterSpec("options", ParameterType.OBJECT),
        ParameterSpec("threshold", ParameterType.NUMBER),
    ),
)


@pytest.fixture
def validator() -> ToolCallValidator:
    return ToolCallValidator()


def _call(tool_id: str, **arguments) -> ToolInvocation:
    return ToolInvocation(tool_id=tool_id, arguments=dict(arguments), call_id="call_1")


# -----------------------------------------------------------------------------
# Parameter names
# -----------------------------------------------------------------------------


def test_alias_is_repaired_into_a_valid_call(validator: ToolCallValidator) -> None:
    outcome = validator.validate(_call("read_file", path="a.txt"), READ_FILE)

    assert not outcome.valid
    assert outcome.error_codes() == (IssueCode.MISSING_REQUIRED,)
    (warning,) = outcome.warnings
    assert (warning.code, warning.parameter, warning.suggestion) == (IssueCode.FUZZY_MATCH, "path", "file_path")

    repaired = outcome.repaired
    assert repaired is not None
    assert repaired.arguments == {"file_path": "a.txt"}
    assert repaired.call_id == "call_1"
    assert validator.validate(repaired, READ_FILE).valid


def test_case_insensitive_name_is_accepted(validator: ToolCallValidator) -> None:
    outcome = validator.validate(_call("read_file", FILE_PATH="a.txt"), READ_FILE)

    assert outcome.valid
    assert outcome.warnings == ()


def test_fuzzy_name_suggests_correction(validator: ToolCallValidator) -> None:
    outcome = validator.validate(_call("other", filepath="a", limt=3), _renamed(READ_FILE, "other"))

    suggestions = {issue.parameter: issue.suggestion for issue in outcome.warnings}
    assert suggestions == {"filepath": "file_path", "limt": "limit"}
    assert all(issue.code == IssueCode.FUZZY_MATCH for issue in outcome.warnings)


def test_prefix_match_is_a_fuzzy_match(validator: ToolCallValidator) -> None:
    outcome = validator.validate(_call("other", file="a"), _renamed(READ_FILE, "other"))

    (warning,) = outcome.warnings
    assert warning.suggestion == "file_path"


def test_unknown_parameter_is_an_error(validator: ToolCallValidator) -> None:
    outcome = validator.validate(_call("read_file", file_path="a", zzz_totally_unrelated=1), READ_FILE)

    assert not outcome.valid
    assert outcome.error_codes() == (IssueCode.UNKNOWN_PARAMETER,)


def test_short_names_do_not_fuzzy_match_everything(validator: ToolCallValidator) -> None:
    schema = ToolSchema(tool_id="t", parameters=(ParameterSpec("ab"), ParameterSpec("xy")))

    outcome = validator.validate(_call("t", q=1), schema)

    assert outcome.error_codes() == (IssueCode.UNKNOWN_PARAMETER,)


def test_internal_keys_are_ignored(validator: ToolCallValidator) -> None:
    outcome = validator.validate(_call("read_file", file_path="a", _raw_arguments="x", _callId="c"), READ_FILE)

    assert outcome.valid


def test_custom_alias_table() -> None:
    aliases = ParameterAliasTable({"search_text": {"q": "query"}})
    validator = ToolCallValidator(aliases)

    outcome = validator.validate(_call("search_text", q="needle"), SEARCH)

    assert outcome.warnings[0].suggestion == "query"
    assert outcome.repaired is not None
    assert outcome.repaired.arguments["query"] == "needle"


# -----------------------------------------------------------------------------
# Types and constraints
# -----------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("arguments", "parameter"),
    [
        ({"limit": "20"}, "limit"),
        ({"limit": 5.0}, "limit"),
        ({"encoding": 8}, "encoding"),
    ],
)
def test_coercible_types_are_warnings(validator: ToolCallValidator, arguments: dict, parameter: str) -> None:
    outcome = validator.validate(_call("read_file", file_path="a", **arguments), READ_FILE)

    assert outcome.valid
    assert [(issue.code, issue.parameter) for issue in outcome.warnings] == [(IssueCode.TYPE_COERCED, parameter)]


def test_uncoercible_type_is_an_error(validator: ToolCallValidator) -> None:
    outcome = validator.validate(_call("read_file", file_path="a", limit="lots"), READ_FILE)

    assert outcome.error_codes() == (IssueCode.INVALID_TYPE,)


def test_constraints_apply_to_coerced_values(validator: ToolCallValidator) -> None:
    outcome = validator.validate(_call("read_file", file_path="a", limit="99"), READ_FILE)

    assert outcome.warning_codes() == (IssueCode.TYPE_COERCED,)
    assert outcome.error_codes() == (IssueCode.CONSTRAINT_VIOLATION,)


def test_range_length_enum_and_pattern(validator: ToolCallValidator) -> None:
    outcome = validator.validate(
        _call("search_text", query="", mode="fuzzy", glob="bad glob!", threshold="0.5"),
        SEARCH,
    )

    codes = sorted(outcome.error_codes())
    assert codes == sorted([IssueCode.CONSTRAINT_VIOLATION, IssueCode.CONSTRAINT_VIOLATION, IssueCode.INVALID_FORMAT])
    assert outcome.warning_codes() == (IssueCode.TYPE_COERCED,)


def test_nested_array_schema_is_checked(validator: ToolCallValidator) -> None:
    outcome = validator.validate(_call("search_text", query="x", mode="regex", paths=["src", 3]), SEARCH)

    (error,) = outcome.errors
    assert error.code == IssueCode.CONSTRAINT_VIOLATION
    assert error.parameter == "paths"
    assert "'1'" in error.message


def test_null_required_value_is_missing(validator: ToolCallValidator) -> None:
    outcome = validator.validate(_call("read_file", file_path=None), READ_FILE)

    assert outcome.error_codes() == (IssueCode.MISSING_REQUIRED,)


@pytest.mark.parametrize(
    ("value", "declared", "expected"),
    [
        ("42", ParameterType.INTEGER, (True, 42)),
        ("3.0", ParameterType.INTEGER, (True, 3)),
        (2.5, ParameterType.INTEGER, (False, 2.5)),
        ("1.5", ParameterType.NUMBER, (True, 1.5)),
        ("nan", ParameterType.NUMBER, (False, "nan")),
        (True, ParameterType.STRING, (True, "true")),
        (12, ParameterType.STRING, (True, "12")),
        ("Yes", ParameterType.BOOLEAN, (True, True)),
        ("off", ParameterType.BOOLEAN, (True, False)),
        (1, ParameterType.BOOLEAN, (True, True)),
        (2, ParameterType.BOOLEAN, (False, 2)),
        ("a, b", ParameterType.ARRAY, (True, ["a", "b"])),
        ('["a", 1]', ParameterType.ARRAY, (True, ["a", 1])),
        ("single", ParameterType.ARRAY, (True, ["single"])),
        ("", ParameterType.ARRAY, (True, [])),
        (7, ParameterType.ARRAY, (True, [7])),
        ('{"a": 1}', ParameterType.OBJECT, (True, {"a": 1})),
        ("nope", ParameterType.OBJECT, (False, "nope")),
        (None, ParameterType.STRING, (False, None)),
    ],
)
def test_coerce_value(value, declared: str, expected: tuple) -> None:
    assert coerce_value(value, declared) == expected


def test_zero_values() -> None:
    assert [zero_value(kind) for kind in ParameterType.ALL] == ["", 0, 0.0, False, [], {}]


# -----------------------------------------------------------------------------
# Repair
# -----------------------------------------------------------------------------


def test_repair_copies_metadata_and_orders_by_declaration(validator: ToolCallValidator) -> None:
    invocation = _call("read_file", limit="5", path="a.txt", _callId="call_1", junk=1)

    repaired = validator.repair(invocation, READ_FILE)

    assert list(repaired.arguments) == [CALL_ID_KEY, "file_path", "limit"]
    assert repaired.arguments == {CALL_ID_KEY: "call_1", "file_path": "a.txt", "limit": 5}


def test_repair_fills_required_defaults_and_zero_values(validator: ToolCallValidator) -> None:
    repaired = validator.repair(_call("search_text"), SEARCH)

    assert repaired.arguments == {"query": "", "mode": "literal"}


def test_repair_drops_uncoercible_optional_values(validator: ToolCallValidator) -> None:
    repaired = validator.repair(_call("read_file", file_path="a", limit="lots"), READ_FILE)

    assert repaired.arguments == {"file_path": "a"}


def test_repair_carries_fuzzy_leftovers(validator: ToolCallValidator) -> None:
    schema = _renamed(READ_FILE, "other")

    repaired = validator.repair(_call("other", filepath="a", limt="3"), schema)

    assert repaired.arguments == {"file_path": "a", "limit": 3}


@pytest.mark.parametrize(
    "arguments",
    [
        {"path": "a.txt"},
        {"limit": "5", "path": "a.txt", "_callId": "x", "junk": 1},
        {"FILE_PATH": "a", "Encoding": 8},
        {},
        {"filepath": "b", "file": "c"},
    ],
)
def test_repair_is_a_fixed_point(validator: ToolCallValidator, arguments: dict) -> None:
    once = validator.repair(_call("read_file", **arguments), READ_FILE)

    assert validator.repair(once, READ_FILE) == once


def test_missing_inputs_raise(validator: ToolCallValidator) -> None:
    with pytest.raises(ValueError):
        validator.validate(ToolInvocation(tool_id="read_file", arguments=None), READ_FILE)  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        validator.validate(_call("read_file"), None)  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        validator.repair(None, READ_FILE)  # type: ignore[arg-type]


# -----------------------------------------------------------------------------
# Registry integration
# -----------------------------------------------------------------------------


def test_unknown_tool_is_reported(validator: ToolCallValidator) -> None:
    outcome = validator.validate_with_registry(_call("nope"), ToolSchemaRegistry([READ_FILE]))

    assert outcome.error_codes() == (IssueCode.UNKNOWN_TOOL,)
    assert outcome.repaired is None


def test_registry_validation_emits_correlated_event(validator: ToolCallValidator) -> None:
    sink = InMemoryDiagnosticSink()
    context = TurnContext.start(sinks=[sink])
    invocation = _call("read_file", path="a.txt")

    validator.validate_with_registry(invocation, ToolSchemaRegistry([READ_FILE]), context=context)

    (event,) = sink.named("tool_validation")
    assert event.correlation_id == context.correlate(invocation)
    assert event.payload["tool_id"] == "read_file"
    assert event.payload["valid"] is False
    assert event.payload["repaired"] is True


def _renamed(schema: ToolSchema, tool_id: str) -> ToolSchema:
    return ToolSchema(tool_id=tool_id, parameters=schema.parameters, description=schema.description)
