"""JSON helpers for noisy model output.

Models emit JSON that is truncated, wrapped in prose, single-quoted or
sprinkled with trailing commas. The helpers here answer three questions
without ever raising on bad input unless asked to:

* is a buffer a complete JSON value yet? (:func:`is_complete_json`)
* where do the top-level ``{...}`` objects sit inside free text?
  (:func:`balanced_object_spans`)
* what value did the model most likely mean? (:func:`lenient_loads`)
"""

from __future__ import annotations

import json
import logging
from typing import Any

import json_repair

__all__ = [
    "JsonRepairError",
    "balanced_object_spans",
    "canonical_json",
    "is_complete_json",
    "lenient_loads",
    "lenient_object",
]

LOGGER = logging.getLogger(__name__)

_OPENERS = {"{": "}", "[": "]"}
_CLOSERS = {"}", "]"}


class JsonRepairError(ValueError):
    """Raised when a payload cannot be coerced into a JSON value."""

    def __init__(self, message: str, raw: str) -> None:
        self.raw = raw
        super().__init__(message)


def is_complete_json(text: str | None) -> bool:
    """Return ``True`` when ``text`` holds one balanced object or array.

    String literals and escape sequences are honored so braces inside
    quoted values never count. Trailing whitespace is ignored.
    """

    if not text:
        return False
    stripped = text.strip()
    if not stripped or stripped[0] not in _OPENERS:
        return False

    stack: list[str] = []
    in_string = False
    escaped = False
    for position, char in enumerate(stripped):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _OPENERS:
            stack.append(_OPENERS[char])
        elif char in _CLOSERS:
            if not stack or stack.pop() != char:
                return False
            if not stack:
                return position == len(stripped) - 1
    return False


def balanced_object_spans(text: str | None) -> list[tuple[int, int]]:
    """Return ``(start, end)`` spans of every balanced top-level ``{...}`` in ``text``.

    Quotes only matter once the scanner is inside an object, so apostrophes
    and quotation marks in the surrounding prose do not derail it. An object
    left open at the end of the text is not reported.
    """

    spans: list[tuple[int, int]] = []
    if not text:
        return spans

    depth = 0
    start = -1
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if depth == 0:
            if char == "{":
                depth = 1
                start = index
                in_string = False
                escaped = False
            continue
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                spans.append((start, index + 1))
                start = -1
    return spans


def lenient_loads(text: str | None) -> Any:
    """Decode ``text`` as JSON, repairing common model mistakes when needed.

    Strict decoding is tried first; the repair pass handles trailing commas,
    single quotes, unquoted keys, truncated containers and similar damage.

    Raises:
        JsonRepairError: when nothing meaningful can be recovered.
    """

    raw = text or ""
    candidate = raw.strip()
    if not candidate:
        raise JsonRepairError("empty JSON payload", raw)
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass

    try:
        repaired = json_repair.loads(candidate)
    except (ValueError, RecursionError) as exc:
        raise JsonRepairError(f"unrepairable JSON payload: {exc}", raw) from exc

    # The repair library answers "" for input it cannot make sense of.
    if repaired == "" and candidate not in ('""', "''"):
        raise JsonRepairError("unrepairable JSON payload", raw)
    LOGGER.debug("Repaired malformed JSON payload (%d chars)", len(candidate))
    return repaired


def lenient_object(text: str | None) -> dict[str, Any]:
    """Like :func:`lenient_loads` but insist on a JSON object."""

    value = lenient_loads(text)
    if not isinstance(value, dict):
        raise JsonRepairError(
            f"expected a JSON object, got {type(value).__name__}", text or ""
        )
    return value


def canonical_json(value: Any) -> str:
    """Serialize ``value`` with sorted keys so equal payloads compare equal."""

    return json.dumps(value, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=str)
