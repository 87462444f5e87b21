"""Schema validation and best-effort repair of tool invocations.

The validator checks an invocation against its :class:`ToolSchema` and
reports problems as :class:`Issue` records instead of raising. When the
call is invalid it also proposes a repaired invocation built in a single
pass; callers execute that repair at most once and surface whatever still
fails.
"""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Mapping

from jsonschema import Draft202012Validator
from rapidfuzz.distance import Levenshtein

from ..tools.registry import ToolSchemaRegistry
from .parameter_aliases import ParameterAliasTable
from .turn_context import TurnContext
from .types import (
    Issue,
    IssueCode,
    ParameterSpec,
    ParameterType,
    ToolInvocation,
    ToolSchema,
    ValidationOutcome,
    is_internal_key,
)

__all__ = ["ToolCallValidator", "coerce_value", "matches_type", "zero_value"]

LOGGER = logging.getLogger(__name__)

TRUE_STRINGS = frozenset({"true", "yes", "1", "on"})
FALSE_STRINGS = frozenset({"false", "no", "0", "off"})
MAX_FUZZY_DISTANCE = 2
MIN_AFFIX_LENGTH = 3
_SEPARATORS_RE = re.compile(r"[_\-]")


# -----------------------------------------------------------------------------
# Type helpers
# -----------------------------------------------------------------------------


def matches_type(value: Any, declared: str) -> bool:
    if declared == ParameterType.STRING:
        return isinstance(value, str)
    if declared == ParameterType.INTEGER:
        return isinstance(value, int) and not isinstance(value, bool)
    if declared == ParameterType.NUMBER:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if declared == ParameterType.BOOLEAN:
        return isinstance(value, bool)
    if declared == ParameterType.ARRAY:
        return isinstance(value, list)
    if declared == ParameterType.OBJECT:
        return isinstance(value, dict)
    return True


def coerce_value(value: Any, declared: str) -> tuple[bool, Any]:
    """Try to convert ``value`` to ``declared``; returns ``(ok, converted)``."""

    if value is None:
        return False, None
    if declared == ParameterType.STRING:
        if isinstance(value, bool):
            return True, "true" if value else "false"
        if isinstance(value, (int, float)):
            return True, str(value)
        if isinstance(value, (list, dict)):
            return True, json.dumps(value, ensure_ascii=False)
        return False, value
    if declared == ParameterType.INTEGER:
        return _coerce_integer(value)
    if declared == ParameterType.NUMBER:
        return _coerce_number(value)
    if declared == ParameterType.BOOLEAN:
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in TRUE_STRINGS:
                return True, True
            if lowered in FALSE_STRINGS:
                return True, False
            return False, value
        if isinstance(value, (int, float)) and value in (0, 1):
            return True, bool(value)
        return False, value
    if declared == ParameterType.ARRAY:
        return _coerce_array(value)
    if declared == ParameterType.OBJECT:
        if isinstance(value, str) and value.strip().startswith("{"):
            try:
                decoded = json.loads(value)
            except json.JSONDecodeError:
                return False, value
            if isinstance(decoded, dict):
                return True, decoded
        return False, value
    return True, value


def _coerce_integer(value: Any) -> tuple[bool, Any]:
    if isinstance(value, bool):
        return False, value
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return True, int(value)
        return False, value
    if isinstance(value, str):
        text = value.strip()
        try:
            return True, int(text, 10)
        except ValueError:
            pass
        ok, number = _coerce_number(text)
        if ok and float(number).is_integer():
            return True, int(number)
    return False, value


def _coerce_number(value: Any) -> tuple[bool, Any]:
    if isinstance(value, bool) or not isinstance(value, str):
        return False, value
    text = value.strip()
    try:
        return True, int(text, 10)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        return False, value
    if not math.isfinite(number):
        return False, value
    return True, number


def _coerce_array(value: Any) -> tuple[bool, Any]:
    if isinstance(value, tuple):
        return True, list(value)
    if isinstance(value, dict):
        return False, value
    if not isinstance(value, str):
        return True, [value]
    text = value.strip()
    if not text:
        return True, []
    if text.startswith("[") and text.endswith("]"):
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError:
            text = text[1:-1]
        else:
            if isinstance(decoded, list):
                return True, decoded
    if "," in text:
        return True, [item.strip().strip("\"'") for item in text.split(",") if item.strip()]
    return True, [text.strip("\"'")] if text else []


def zero_value(declared: str) -> Any:
    return {
        ParameterType.STRING: "",
        ParameterType.INTEGER: 0,
        ParameterType.NUMBER: 0.0,
        ParameterType.BOOLEAN: False,
        ParameterType.ARRAY: [],
        ParameterType.OBJECT: {},
    }.get(declared)


# -----------------------------------------------------------------------------
# Validator
# -----------------------------------------------------------------------------


class ToolCallValidator:
    """Validates invocations against schemas and proposes single-pass repairs."""

    def __init__(self, aliases: ParameterAliasTable | None = None) -> None:
        self._aliases = aliases or ParameterAliasTable()
        self._pattern_cache: dict[str, re.Pattern[str] | None] = {}

    @property
    def aliases(self) -> ParameterAliasTable:
        return self._aliases

    def validate(self, invocation: ToolInvocation, schema: ToolSchema) -> ValidationOutcome:
        """Check ``invocation`` against ``schema``.

        Raises:
            ValueError: when either argument is missing; that is a caller bug,
                not a model mistake.
        """

        arguments = self._require_inputs(invocation, schema)
        errors: list[Issue] = []
        warnings: list[Issue] = []

        for spec in schema.required_parameters:
            key = _find_key(arguments, spec.name)
            if key is None or arguments[key] is None:
                errors.append(
                    Issue(
                        code=IssueCode.MISSING_REQUIRED,
                        message=f"Required parameter '{spec.name}' is missing",
                        parameter=spec.name,
                    )
                )

        for key, value in arguments.items():
            if is_internal_key(key):
                continue
            spec = schema.parameter(key)
            if spec is None:
                self._resolve_unknown(invocation.tool_id, key, schema, errors, warnings)
                continue
            if value is None:
                continue
            if not matches_type(value, spec.type):
                ok, coerced = coerce_value(value, spec.type)
                if not ok:
                    errors.append(
                        Issue(
                            code=IssueCode.INVALID_TYPE,
                            message=f"Parameter '{key}' has invalid type. Expected {spec.type}, got {type(value).__name__}",
                            parameter=key,
                        )
                    )
                    continue
                warnings.append(
                    Issue(
                        code=IssueCode.TYPE_COERCED,
                        message=f"Parameter '{key}' was coerced from {type(value).__name__} to {spec.type}",
                        parameter=key,
                    )
                )
                value = coerced
            errors.extend(self._check_constraints(spec, key, value))

        valid = not errors
        repaired = None if valid else self.repair(invocation, schema)
        LOGGER.debug(
            "Validation result for %s: valid=%s errors=%d warnings=%d",
            invocation.tool_id,
            valid,
            len(errors),
            len(warnings),
        )
        return ValidationOutcome(valid=valid, errors=tuple(errors), warnings=tuple(warnings), repaired=repaired)

    def validate_with_registry(
        self,
        invocation: ToolInvocation,
        registry: ToolSchemaRegistry,
        *,
        context: TurnContext | None = None,
    ) -> ValidationOutcome:
        """Validate against the schema registered for the invocation's tool."""

        if invocation is None:
            raise ValueError("invocation is required")
        schema = registry.find(invocation.tool_id)
        if schema is None:
            outcome = ValidationOutcome(
                valid=False,
                errors=(
                    Issue(
                        code=IssueCode.UNKNOWN_TOOL,
                        message=f"Tool '{invocation.tool_id}' is not registered",
                    ),
                ),
            )
        else:
            outcome = self.validate(invocation, schema)
        if context is not None:
            context.emit(
                "tool_validation",
                correlation_id=context.correlate(invocation),
                tool_id=invocation.tool_id,
                **outcome.as_payload(),
            )
        return outcome

    def repair(self, invocation: ToolInvocation, schema: ToolSchema) -> ToolInvocation:
        """Rebuild ``invocation`` so it lines up with ``schema`` as well as possible.

        Single pass: metadata keys are copied, declared parameters are filled
        from exact or aliased keys, leftovers that fuzzy-match an unused
        declared name are carried over, and required parameters still missing
        get their default or a zero value. ``repair`` of a repaired call
        returns an equal call.
        """

        arguments = self._require_inputs(invocation, schema)
        metadata = {key: value for key, value in arguments.items() if is_internal_key(key)}
        used: set[str] = set(metadata)
        filled: dict[str, Any] = {}

        for spec in schema.parameters:
            key = _find_key(arguments, spec.name, exclude=used)
            if key is None:
                key = self._alias_key(invocation.tool_id, spec.name, arguments, used)
            if key is None:
                continue
            used.add(key)
            ok, value = self._normalize(arguments[key], spec)
            if ok:
                filled[spec.name] = value

        for key, value in arguments.items():
            if key in used or is_internal_key(key):
                continue
            open_names = [spec.name for spec in schema.parameters if spec.name not in filled]
            target = _similar_name(key, open_names)
            if target is None:
                continue
            spec = schema.parameter(target)
            ok, normalized = self._normalize(value, spec) if spec is not None else (False, None)
            if ok:
                used.add(key)
                filled[target] = normalized
                LOGGER.debug("Corrected parameter name from '%s' to '%s'", key, target)

        for spec in schema.required_parameters:
            if spec.name in filled:
                continue
            ok, value = self._normalize(spec.default, spec)
            filled[spec.name] = value if ok else zero_value(spec.type)
            LOGGER.debug("Using default value for missing required parameter '%s'", spec.name)

        rebuilt = dict(metadata)
        for spec in schema.parameters:
            if spec.name in filled:
                rebuilt[spec.name] = filled[spec.name]
        return invocation.with_arguments(rebuilt)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    @staticmethod
    def _require_inputs(invocation: ToolInvocation, schema: ToolSchema) -> Mapping[str, Any]:
        if invocation is None:
            raise ValueError("invocation is required")
        if schema is None:
            raise ValueError("schema is required")
        if invocation.arguments is None:
            raise ValueError("invocation arguments are required")
        return invocation.arguments

    def _resolve_unknown(
        self,
        tool_id: str,
        key: str,
        schema: ToolSchema,
        errors: list[Issue],
        warnings: list[Issue],
    ) -> None:
        target = self._aliases.resolve(tool_id, key)
        if target is not None and schema.parameter(target) is not None:
            warnings.append(
                Issue(
                    code=IssueCode.FUZZY_MATCH,
                    message=f"Parameter '{key}' is an alias for '{target}'",
                    parameter=key,
                    suggestion=target,
                )
            )
            return
        similar = _similar_name(key, schema.parameter_names)
        if similar is not None:
            warnings.append(
                Issue(
                    code=IssueCode.FUZZY_MATCH,
                    message=f"Unknown parameter '{key}'. Did you mean '{similar}'?",
                    parameter=key,
                    suggestion=similar,
                )
            )
            return
        errors.append(
            Issue(code=IssueCode.UNKNOWN_PARAMETER, message=f"Unknown parameter '{key}'", parameter=key)
        )

    def _alias_key(self, tool_id: str, name: str, arguments: Mapping[str, Any], used: set[str]) -> str | None:
        for key in arguments:
            if key in used or is_internal_key(key):
                continue
            target = self._aliases.resolve(tool_id, key)
            if target is not None and target.lower() == name.lower():
                return key
        return None

    @staticmethod
    def _normalize(value: Any, spec: ParameterSpec) -> tuple[bool, Any]:
        if value is None:
            return False, None
        if matches_type(value, spec.type):
            return True, value
        return coerce_value(value, spec.type)

    def _check_constraints(self, spec: ParameterSpec, key: str, value: Any) -> list[Issue]:
        issues: list[Issue] = []
        is_number = isinstance(value, (int, float)) and not isinstance(value, bool)
        if is_number and spec.minimum is not None and value < spec.minimum:
            issues.append(_constraint(key, f"Value {value} is less than minimum {spec.minimum}"))
        if is_number and spec.maximum is not None and value > spec.maximum:
            issues.append(_constraint(key, f"Value {value} is greater than maximum {spec.maximum}"))
        if isinstance(value, (str, list)):
            if spec.min_length is not None and len(value) < spec.min_length:
                issues.append(_constraint(key, f"Length {len(value)} is less than minimum length {spec.min_length}"))
            if spec.max_length is not None and len(value) > spec.max_length:
                issues.append(_constraint(key, f"Length {len(value)} exceeds maximum length {spec.max_length}"))
        if isinstance(value, str) and spec.pattern:
            pattern = self._compile(spec.pattern)
            if pattern is not None and pattern.search(value) is None:
                issues.append(
                    Issue(
                        code=IssueCode.INVALID_FORMAT,
                        message=f"Value for '{key}' does not match pattern {spec.pattern}",
                        parameter=key,
                    )
                )
        if spec.allowed_values is not None and value not in spec.allowed_values:
            allowed = ", ".join(str(item) for item in spec.allowed_values)
            issues.append(_constraint(key, f"Value '{value}' is not one of: {allowed}"))
        if spec.schema is not None and isinstance(value, (list, dict)):
            validator = Draft202012Validator(spec.schema)
            for error in sorted(validator.iter_errors(value), key=lambda item: list(item.path)):
                location = "/".join(str(part) for part in error.path)
                suffix = f" at '{location}'" if location else ""
                issues.append(_constraint(key, f"{error.message}{suffix}"))
        return issues

    def _compile(self, pattern: str) -> re.Pattern[str] | None:
        if pattern not in self._pattern_cache:
            try:
                self._pattern_cache[pattern] = re.compile(pattern)
            except re.error as exc:
                LOGGER.warning("Ignoring invalid parameter pattern %r: %s", pattern, exc)
                self._pattern_cache[pattern] = None
        return self._pattern_cache[pattern]


def _constraint(key: str, message: str) -> Issue:
    return Issue(code=IssueCode.CONSTRAINT_VIOLATION, message=message, parameter=key)


def _find_key(arguments: Mapping[str, Any], name: str, *, exclude: set[str] | None = None) -> str | None:
    """Return the supplied key matching ``name`` exactly, else case-insensitively."""

    skip = exclude or set()
    if name in arguments and name not in skip:
        return name
    lowered = name.lower()
    for key in arguments:
        if key not in skip and key.lower() == lowered:
            return key
    return None


def _similar_name(name: str, candidates: tuple[str, ...] | list[str]) -> str | None:
    """Best fuzzy candidate for ``name``: affix matches first, then edit distance <= 2."""

    lowered = name.lower()
    squashed = _SEPARATORS_RE.sub("", lowered)
    if not squashed:
        return None
    best: tuple[int, int, int] | None = None
    choice: str | None = None
    for position, candidate in enumerate(candidates):
        target = candidate.lower()
        score: tuple[int, int, int] | None = None
        shorter = min(len(lowered), len(target))
        if shorter >= MIN_AFFIX_LENGTH and (
            target.startswith(lowered)
            or target.endswith(lowered)
            or lowered.startswith(target)
            or lowered.endswith(target)
        ):
            score = (0, abs(len(target) - len(lowered)), position)
        else:
            target_squashed = _SEPARATORS_RE.sub("", target)
            # Names no longer than the distance bound would match anything.
            if min(len(squashed), len(target_squashed)) > MAX_FUZZY_DISTANCE:
                distance = Levenshtein.distance(squashed, target_squashed)
                if distance <= MAX_FUZZY_DISTANCE:
                    score = (1, distance, position)
        if score is not None and (best is None or score < best):
            best, choice = score, candidate
    return choice
