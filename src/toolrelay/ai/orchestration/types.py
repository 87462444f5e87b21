"""Core data types shared by the tool-call protocol layer.

The types here are deliberately plain: frozen dataclasses that can be
logged, compared and serialized without any of the components that
produce them.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Sequence

from jsonschema import Draft202012Validator

from ..utils.json_tools import canonical_json

__all__ = [
    "HistoryEntry",
    "Issue",
    "IssueCode",
    "ParameterSpec",
    "ParameterType",
    "Role",
    "ToolInvocation",
    "ToolSchema",
    "ValidationOutcome",
    "is_internal_key",
]

Role = Literal["user", "assistant", "tool"]

# Prefix marking argument keys that carry metadata rather than tool parameters.
INTERNAL_KEY_PREFIX = "_"
RAW_ARGUMENTS_KEY = "_raw_arguments"
CALL_ID_KEY = "_callId"


def is_internal_key(key: str) -> bool:
    return key.startswith(INTERNAL_KEY_PREFIX)


# -----------------------------------------------------------------------------
# Invocations
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolInvocation:
    """A structured request from the model to run one tool.

    Attributes:
        tool_id: Name of the tool the model asked for.
        arguments: Ordered argument mapping. Keys starting with ``_`` are
            metadata (for example ``_raw_arguments``) and are never treated
            as tool parameters.
        call_id: Provider-assigned identifier, when one exists.
    """

    tool_id: str
    arguments: dict[str, Any] = field(default_factory=dict)
    call_id: str | None = None

    def canonical_key(self) -> str:
        """Identity used for de-duplication: tool id plus key-sorted arguments."""

        return f"{self.tool_id}:{canonical_json(self.arguments)}"

    def public_arguments(self) -> dict[str, Any]:
        return {key: value for key, value in self.arguments.items() if not is_internal_key(key)}

    def with_arguments(self, arguments: Mapping[str, Any]) -> "ToolInvocation":
        return ToolInvocation(tool_id=self.tool_id, arguments=dict(arguments), call_id=self.call_id)

    def with_call_id(self, call_id: str) -> "ToolInvocation":
        return ToolInvocation(tool_id=self.tool_id, arguments=dict(self.arguments), call_id=call_id)

    def to_openai_tool_call(self) -> dict[str, Any]:
        """Render the invocation as an assistant ``tool_calls`` entry."""

        return {
            "id": self.call_id or "",
            "type": "function",
            "function": {
                "name": self.tool_id,
                "arguments": json.dumps(self.public_arguments(), ensure_ascii=False),
            },
        }


# -----------------------------------------------------------------------------
# Schemas
# -----------------------------------------------------------------------------


class ParameterType:
    """Declared parameter types understood by the validator."""

    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"

    ALL: tuple[str, ...] = (STRING, INTEGER, NUMBER, BOOLEAN, ARRAY, OBJECT)


@dataclass(slots=True, frozen=True)
class ParameterSpec:
    """Declaration of a single tool parameter and its constraints."""

    name: str
    type: str = ParameterType.STRING
    required: bool = False
    description: str = ""
    minimum: float | None = None
    maximum: float | None = None
    min_length: int | None = None
    max_length: int | None = None
    pattern: str | None = None
    allowed_values: tuple[Any, ...] | None = None
    default: Any = None
    schema: Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Parameter name must be a non-empty string")
        if self.type not in ParameterType.ALL:
            raise ValueError(f"Unsupported parameter type '{self.type}' for '{self.name}'")

    @classmethod
    def from_json_schema(cls, name: str, payload: Mapping[str, Any], *, required: bool = False) -> "ParameterSpec":
        raw_type = payload.get("type", ParameterType.STRING)
        if isinstance(raw_type, list):
            raw_type = next((item for item in raw_type if item != "null"), ParameterType.STRING)
        param_type = raw_type if raw_type in ParameterType.ALL else ParameterType.STRING
        enum = payload.get("enum")
        nested = dict(payload) if param_type in (ParameterType.ARRAY, ParameterType.OBJECT) else None
        return cls(
            name=name,
            type=param_type,
            required=required,
            description=str(payload.get("description", "")),
            minimum=payload.get("minimum"),
            maximum=payload.get("maximum"),
            min_length=payload.get("minLength"),
            max_length=payload.get("maxLength"),
            pattern=payload.get("pattern"),
            allowed_values=tuple(enum) if isinstance(enum, list) else None,
            default=payload.get("default"),
            schema=nested,
        )

    def to_json_schema(self) -> dict[str, Any]:
        if self.schema is not None:
            payload: dict[str, Any] = dict(self.schema)
        else:
            payload = {"type": self.type}
        if self.description:
            payload["description"] = self.description
        if self.minimum is not None:
            payload["minimum"] = self.minimum
        if self.maximum is not None:
            payload["maximum"] = self.maximum
        if self.type == ParameterType.STRING:
            if self.min_length is not None:
                payload["minLength"] = self.min_length
            if self.max_length is not None:
                payload["maxLength"] = self.max_length
        if self.pattern:
            payload["pattern"] = self.pattern
        if self.allowed_values is not None:
            payload["enum"] = list(self.allowed_values)
        if self.default is not None:
            payload["default"] = self.default
        return payload


@dataclass(slots=True, frozen=True)
class ToolSchema:
    """Parameter declarations for one tool. Read-only to the protocol layer."""

    tool_id: str
    parameters: tuple[ParameterSpec, ...] = ()
    description: str = ""

    def __post_init__(self) -> None:
        if not self.tool_id:
            raise ValueError("ToolSchema requires a tool_id")
        seen: set[str] = set()
        for spec in self.parameters:
            lowered = spec.name.lower()
            if lowered in seen:
                raise ValueError(f"Duplicate parameter '{spec.name}' in schema '{self.tool_id}'")
            seen.add(lowered)

    @property
    def parameter_names(self) -> tuple[str, ...]:
        return tuple(spec.name for spec in self.parameters)

    @property
    def required_parameters(self) -> tuple[ParameterSpec, ...]:
        return tuple(spec for spec in self.parameters if spec.required)

    def parameter(self, name: str) -> ParameterSpec | None:
        """Return the declaration matching ``name`` exactly, then case-insensitively."""

        for spec in self.parameters:
            if spec.name == name:
                return spec
        lowered = name.lower()
        for spec in self.parameters:
            if spec.name.lower() == lowered:
                return spec
        return None

    @classmethod
    def from_openai_tool(cls, definition: Mapping[str, Any]) -> "ToolSchema":
        """Build a schema from an OpenAI function-tool definition.

        Accepts either ``{"type": "function", "function": {...}}`` or the bare
        function payload. The embedded parameter schema is checked against
        JSON Schema 2020-12 before use.
        """

        function = definition.get("function", definition)
        name = str(function.get("name") or "").strip()
        if not name:
            raise ValueError("Tool definition is missing a function name")
        parameters = function.get("parameters") or {"type": "object", "properties": {}}
        Draft202012Validator.check_schema(parameters)
        properties = parameters.get("properties") or {}
        required = set(parameters.get("required") or ())
        specs = tuple(
            ParameterSpec.from_json_schema(param_name, payload or {}, required=param_name in required)
            for param_name, payload in properties.items()
        )
        return cls(tool_id=name, parameters=specs, description=str(function.get("description", "")))

    def to_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.tool_id,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": {spec.name: spec.to_json_schema() for spec in self.parameters},
                    "required": [spec.name for spec in self.parameters if spec.required],
                },
            },
        }


# -----------------------------------------------------------------------------
# Validation results
# -----------------------------------------------------------------------------


class IssueCode:
    """Stable identifiers for validation and parsing issues."""

    MISSING_REQUIRED = "missing_required"
    INVALID_TYPE = "invalid_type"
    TYPE_COERCED = "type_coerced"
    UNKNOWN_PARAMETER = "unknown_parameter"
    FUZZY_MATCH = "fuzzy_match"
    CONSTRAINT_VIOLATION = "constraint_violation"
    INVALID_FORMAT = "invalid_format"
    UNKNOWN_TOOL = "unknown_tool"
    MALFORMED_PAYLOAD = "malformed_payload"
    ORPHAN_DROPPED = "orphan_dropped"
    OUTPUT_TRUNCATED = "output_truncated"


@dataclass(slots=True, frozen=True)
class Issue:
    """A single validation or parsing finding."""

    code: str
    message: str
    parameter: str | None = None
    suggestion: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.parameter is not None:
            payload["parameter"] = self.parameter
        if self.suggestion is not None:
            payload["suggestion"] = self.suggestion
        return payload


@dataclass(slots=True, frozen=True)
class ValidationOutcome:
    """Result of validating one invocation against its schema."""

    valid: bool
    errors: tuple[Issue, ...] = ()
    warnings: tuple[Issue, ...] = ()
    repaired: ToolInvocation | None = None

    def error_codes(self) -> tuple[str, ...]:
        return tuple(issue.code for issue in self.errors)

    def warning_codes(self) -> tuple[str, ...]:
        return tuple(issue.code for issue in self.warnings)

    def as_payload(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [issue.to_dict() for issue in self.errors],
            "warnings": [issue.to_dict() for issue in self.warnings],
            "repaired": self.repaired is not None,
        }


# -----------------------------------------------------------------------------
# History
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class HistoryEntry:
    """One immutable conversation entry.

    Assistant entries may carry ``tool_calls``; tool entries carry the
    ``tool_call_id`` they answer, the producing ``tool_id`` and the stored
    (possibly capped) ``tool_result``, which is also their ``content``. Compression
    replaces whole ranges of entries and never edits fields in place.
    """

    role: Role
    content: str = ""
    timestamp: float = field(default_factory=time.time)
    token_estimate: int = 0
    tool_calls: tuple[ToolInvocation, ...] = ()
    tool_call_id: str | None = None
    tool_result: str | None = None
    tool_id: str | None = None
    truncated_chars: int = 0
    synthetic: bool = False

    @property
    def call_ids(self) -> tuple[str, ...]:
        return tuple(call.call_id for call in self.tool_calls if call.call_id)

    def with_tool_calls(self, tool_calls: Sequence[ToolInvocation]) -> "HistoryEntry":
        return HistoryEntry(
            role=self.role,
            content=self.content,
            timestamp=self.timestamp,
            token_estimate=self.token_estimate,
            tool_calls=tuple(tool_calls),
            tool_call_id=self.tool_call_id,
            tool_result=self.tool_result,
            tool_id=self.tool_id,
            truncated_chars=self.truncated_chars,
            synthetic=self.synthetic,
        )
