"""Extraction of tool calls embedded in free-form model text.

Models that do not (or not reliably) use native tool calling still ask for
tools, they just do it in prose. This module recognizes the conventions
seen in practice, tried in order until one yields calls:

1. ``tagged``: a payload between delimiter tags such as
   ``<tool_call>...</tool_call>`` or inside a
   ``<|tool_calls_begin|>...<|tool_calls_end|>`` marker block;
2. ``fenced``: a fenced code block holding one JSON object;
3. ``wrapper``: a ``{"tool_call": {...}}`` object anywhere in the text;
4. ``bare``: any balanced object with a ``name``, ``tool`` or ``function`` key.

Strategies are never merged: the first stage that finds anything wins.
Malformed payloads are reported as issues and skipped, so
:meth:`ToolCallExtractor.extract` never raises on model output.
"""

from __future__ import annotations

import json
import logging
import hashlib
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from ..utils.json_tools import JsonRepairError, balanced_object_spans, lenient_loads
from .model_profiles import DEFAULT_PROFILE, ExtractionStrategy, ModelProfile
from .types import RAW_ARGUMENTS_KEY, Issue, IssueCode, ToolInvocation

__all__ = [
    "ExtractionResult",
    "TOOL_CALLS_BLOCK_RE",
    "TOOL_CALL_ENTRY_RE",
    "TOOL_MARKER_TRANSLATION",
    "ToolCallExtractor",
    "invocation_from_object",
    "normalize_tool_marker_text",
    "parsed_tool_call_id",
]

LOGGER = logging.getLogger(__name__)

NAME_KEYS: tuple[str, ...] = ("name", "tool", "function")
ARGUMENT_KEYS: tuple[str, ...] = ("arguments", "parameters")
CALL_ID_KEYS: tuple[str, ...] = ("id", "call_id")
WRAPPER_KEY = "tool_call"
_CALL_TYPE_PREFIXES = frozenset({"function", "functions"})

# Normalizes stylized glyphs inside <|tool ...|> markers emitted by some models.
TOOL_MARKER_TRANSLATION = str.maketrans(
    {
        ord("＜"): "<",
        ord("﹤"): "<",
        ord("〈"): "<",
        ord("＞"): ">",
        ord("﹥"): ">",
        ord("〉"): ">",
        ord("｜"): "|",
        ord("￨"): "|",
        ord("│"): "|",
        ord("▁"): "_",
        ord("\u00a0"): " ",
        ord("\u2002"): " ",
        ord("\u2003"): " ",
        ord("\u2009"): " ",
        ord("\u200b"): "",
        ord("\u200c"): "",
        ord("\u200d"): "",
        ord("\u202f"): " ",
        ord("\u3000"): " ",
        ord("\ufeff"): "",
    }
)

TOOL_CALLS_BLOCK_RE = re.compile(
    r"<\s*\|?\s*tool[\s_]*calls[\s_]*begin\s*\|?\s*>(?P<body>.*?)<\s*\|?\s*tool[\s_]*calls[\s_]*end\s*\|?\s*>",
    re.IGNORECASE | re.DOTALL,
)

TOOL_CALL_ENTRY_RE = re.compile(
    r"<\s*\|?\s*tool[\s_]*call[\s_]*begin\s*\|?\s*>(?P<name>.*?)<\s*\|?\s*tool[\s_]*sep\s*\|?\s*>(?P<args>.*?)<\s*\|?\s*tool[\s_]*call[\s_]*end\s*\|?\s*>",
    re.IGNORECASE | re.DOTALL,
)

FENCED_BLOCK_RE = re.compile(r"```[ \t]*(?P<lang>[\w+.-]*)[ \t]*\r?\n?(?P<body>.*?)```", re.DOTALL)

_GLUED_OBJECTS_RE = re.compile(r"\}\s*:\s*\{")
_BLANK_RUNS_RE = re.compile(r"\n{3,}")
_TRAILING_SPACE_RE = re.compile(r"[ \t]+\n")


def normalize_tool_marker_text(text: str) -> str:
    """Normalize stylized Unicode glyphs to ASCII equivalents for tool parsing."""
    return text.translate(TOOL_MARKER_TRANSLATION)


def parsed_tool_call_id(name: str, index: int, payload: str = "", scope: str = "") -> str:
    """Generate a call id for a tool call recovered from text.

    The id is stable for one ``scope`` (a turn id) and differs across scopes,
    so the same call repeated in a later turn gets a fresh id.
    """
    digest = hashlib.sha1(f"{scope}:{name}:{payload}".encode("utf-8")).hexdigest()[:8]
    return f"parsed_{name}_{index}_{digest}"


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ExtractionResult:
    """Outcome of one :meth:`ToolCallExtractor.parse` call.

    Attributes:
        invocations: De-duplicated tool invocations, in order of appearance.
        text: Display text with tool-call payloads and reasoning removed.
        issues: Non-fatal problems encountered while parsing.
        strategy: The stage that produced the invocations, if any did.
    """

    invocations: list[ToolInvocation] = field(default_factory=list)
    text: str = ""
    issues: list[Issue] = field(default_factory=list)
    strategy: str | None = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.invocations)


@dataclass(slots=True)
class _Match:
    invocation: ToolInvocation
    source: str


# -----------------------------------------------------------------------------
# Object interpretation
# -----------------------------------------------------------------------------


def invocation_from_object(payload: Mapping[str, Any], issues: list[Issue] | None = None) -> ToolInvocation | None:
    """Interpret one decoded JSON object as a tool invocation.

    Returns ``None`` when the object names no tool. The name is read from
    ``name``, ``tool`` or ``function``; an OpenAI style ``function`` object is
    unwrapped first. Arguments come from ``arguments`` or ``parameters``
    (decoding JSON strings) or, failing that, from every other key.
    """

    function_value = payload.get("function")
    if isinstance(function_value, Mapping) and any(key in function_value for key in NAME_KEYS):
        merged = dict(function_value)
        for key in CALL_ID_KEYS:
            if key in payload and key not in merged:
                merged[key] = payload[key]
        payload = merged

    name_key = next((key for key in NAME_KEYS if isinstance(payload.get(key), str) and payload[key].strip()), None)
    if name_key is None:
        return None
    tool_id = payload[name_key].strip()

    call_id = next(
        (str(payload[key]) for key in CALL_ID_KEYS if isinstance(payload.get(key), (str, int)) and payload[key] != ""),
        None,
    )

    argument_key = next((key for key in ARGUMENT_KEYS if key in payload), None)
    if argument_key is None:
        skipped = {name_key, *CALL_ID_KEYS}
        arguments = {key: value for key, value in payload.items() if key not in skipped}
        return ToolInvocation(tool_id=tool_id, arguments=arguments, call_id=call_id)

    return ToolInvocation(
        tool_id=tool_id,
        arguments=_coerce_arguments(tool_id, payload[argument_key], issues),
        call_id=call_id,
    )


def _coerce_arguments(tool_id: str, raw: Any, issues: list[Issue] | None) -> dict[str, Any]:
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, str):
        if not raw.strip():
            return {}
        try:
            decoded = lenient_loads(raw)
        except JsonRepairError:
            decoded = None
        if isinstance(decoded, dict):
            return decoded
        if issues is not None:
            issues.append(
                Issue(
                    code=IssueCode.MALFORMED_PAYLOAD,
                    message=f"Arguments for '{tool_id}' are not a JSON object",
                    parameter=RAW_ARGUMENTS_KEY,
                )
            )
        return {RAW_ARGUMENTS_KEY: raw}
    if issues is not None:
        issues.append(
            Issue(
                code=IssueCode.MALFORMED_PAYLOAD,
                message=f"Arguments for '{tool_id}' have unsupported type {type(raw).__name__}",
                parameter=RAW_ARGUMENTS_KEY,
            )
        )
    return {RAW_ARGUMENTS_KEY: json.dumps(raw, ensure_ascii=False, default=str)}


# -----------------------------------------------------------------------------
# Extractor
# -----------------------------------------------------------------------------


class ToolCallExtractor:
    """Recognizes tool invocations in complete model responses."""

    def __init__(self, profile: ModelProfile | None = None) -> None:
        self._profile = profile or DEFAULT_PROFILE
        self._tag_patterns = [
            (tag, re.compile(rf"<\s*{re.escape(tag)}\s*>(?P<body>.*?)<\s*/\s*{re.escape(tag)}\s*>", re.IGNORECASE | re.DOTALL))
            for tag in self._profile.call_tags
        ]
        reasoning = "|".join(re.escape(tag) for tag in self._profile.reasoning_tags)
        self._reasoning_re = (
            re.compile(rf"<\s*(?P<tag>{reasoning})\s*>.*?<\s*/\s*(?P=tag)\s*>", re.IGNORECASE | re.DOTALL)
            if reasoning
            else None
        )

    @property
    def profile(self) -> ModelProfile:
        return self._profile

    def extract(self, text: str | None) -> list[ToolInvocation]:
        """Return the de-duplicated invocations found in ``text``."""

        return self.parse(text).invocations

    def parse(self, text: str | None) -> ExtractionResult:
        """Extract invocations, display text and parse issues from ``text``."""

        if not text or not isinstance(text, str):
            return ExtractionResult()

        normalized = normalize_tool_marker_text(text)
        issues: list[Issue] = []
        matches: list[_Match] = []
        strategy: str | None = None
        for candidate in self._profile.strategies:
            matches = self._run_strategy(candidate, normalized, issues)
            if matches:
                strategy = candidate
                break

        invocations = _dedupe([match.invocation for match in matches])
        if invocations:
            LOGGER.debug(
                "Extracted %d tool call(s) via %s strategy (profile=%s)",
                len(invocations),
                strategy,
                self._profile.name,
            )
        for issue in issues:
            LOGGER.warning("Skipped malformed tool call payload: %s", issue.message)

        display = self.clean_text(normalized, [match.source for match in matches])
        return ExtractionResult(invocations=invocations, text=display, issues=issues, strategy=strategy)

    def clean_text(self, text: str, sources: Sequence[str] = ()) -> str:
        """Remove tool-call payloads and reasoning blocks from ``text``."""

        cleaned = text
        for source in sources:
            if source:
                cleaned = cleaned.replace(source, "", 1)
        if self._profile.marker_blocks:
            cleaned = TOOL_CALLS_BLOCK_RE.sub("", cleaned)
        for _tag, pattern in self._tag_patterns:
            cleaned = pattern.sub("", cleaned)
        if self._reasoning_re is not None:
            cleaned = self._reasoning_re.sub("", cleaned)
        cleaned = _TRAILING_SPACE_RE.sub("\n", cleaned)
        cleaned = _BLANK_RUNS_RE.sub("\n\n", cleaned)
        return cleaned.strip()

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------
    def _run_strategy(self, strategy: str, text: str, issues: list[Issue]) -> list[_Match]:
        if strategy == ExtractionStrategy.TAGGED:
            return self._extract_tagged(text, issues)
        if strategy == ExtractionStrategy.FENCED:
            return self._extract_fenced(text, issues)
        if strategy == ExtractionStrategy.WRAPPER:
            return self._extract_objects(_normalize_separators(text), issues, wrapper=True)
        if strategy == ExtractionStrategy.BARE:
            return self._extract_objects(_normalize_separators(text), issues, wrapper=False)
        raise ValueError(f"Unknown extraction strategy: {strategy}")

    def _extract_tagged(self, text: str, issues: list[Issue]) -> list[_Match]:
        found: list[tuple[int, _Match]] = []
        if self._profile.marker_blocks:
            for block in TOOL_CALLS_BLOCK_RE.finditer(text):
                for entry in TOOL_CALL_ENTRY_RE.finditer(block.group("body") or ""):
                    invocation = self._marker_entry(entry, issues)
                    if invocation is not None:
                        found.append((block.start() + entry.start(), _Match(invocation, entry.group(0))))
        for tag, pattern in self._tag_patterns:
            for tagged in pattern.finditer(text):
                for invocation in self._payload_invocations(tagged.group("body") or "", f"<{tag}> block", issues):
                    found.append((tagged.start(), _Match(invocation, tagged.group(0))))
        found.sort(key=lambda item: item[0])
        return [match for _position, match in found]

    def _marker_entry(self, entry: re.Match[str], issues: list[Issue]) -> ToolInvocation | None:
        name = (entry.group("name") or "").strip().strip("\"' \t\n\r")
        args_text = entry.group("args") or ""
        if name.lower() in _CALL_TYPE_PREFIXES:
            # "function<|tool_sep|>name\n```json ...```": the name leads the args.
            head, _, args_text = args_text.lstrip().partition("\n")
            name = head.strip().strip("\"'")
        elif "\n" in name:
            name = name.splitlines()[-1].strip()
        if not name:
            issues.append(Issue(code=IssueCode.MALFORMED_PAYLOAD, message="Tool call marker without a tool name"))
            return None
        args_raw = _strip_fence(args_text)
        return ToolInvocation(tool_id=name, arguments=_coerce_arguments(name, args_raw, issues))

    def _extract_fenced(self, text: str, issues: list[Issue]) -> list[_Match]:
        matches: list[_Match] = []
        for block in FENCED_BLOCK_RE.finditer(text):
            body = (block.group("body") or "").strip()
            if not body.startswith(("{", "[")):
                continue
            lang = (block.group("lang") or "").lower()
            if lang and lang not in {"json", "jsonc", "json5", "tool_call", "tool", "javascript", "js"}:
                continue
            quiet = not lang and not _looks_like_call(body)
            for invocation in self._payload_invocations(body, "fenced block", issues, quiet=quiet):
                matches.append(_Match(invocation, block.group(0)))
        return matches

    def _extract_objects(self, text: str, issues: list[Issue], *, wrapper: bool) -> list[_Match]:
        matches: list[_Match] = []
        for start, end in balanced_object_spans(text):
            snippet = text[start:end]
            if wrapper and f'"{WRAPPER_KEY}"' not in snippet and f"'{WRAPPER_KEY}'" not in snippet:
                continue
            try:
                decoded = lenient_loads(snippet)
            except JsonRepairError as exc:
                if _looks_like_call(snippet):
                    issues.append(
                        Issue(code=IssueCode.MALFORMED_PAYLOAD, message=f"Unparseable JSON object: {exc}")
                    )
                continue
            if not isinstance(decoded, dict):
                continue
            if wrapper:
                inner = decoded.get(WRAPPER_KEY)
                candidates = inner if isinstance(inner, list) else [inner]
                for candidate in candidates:
                    if isinstance(candidate, Mapping):
                        invocation = invocation_from_object(candidate, issues)
                        if invocation is not None:
                            matches.append(_Match(invocation, snippet))
                continue
            if WRAPPER_KEY in decoded:
                continue
            invocation = invocation_from_object(decoded, issues)
            if invocation is not None:
                matches.append(_Match(invocation, snippet))
        return matches

    def _payload_invocations(
        self,
        body: str,
        origin: str,
        issues: list[Issue],
        *,
        quiet: bool = False,
    ) -> list[ToolInvocation]:
        payload = _strip_fence(body)
        if not payload:
            return []
        try:
            decoded = lenient_loads(payload)
        except JsonRepairError as exc:
            if not quiet:
                issues.append(Issue(code=IssueCode.MALFORMED_PAYLOAD, message=f"Unparseable {origin}: {exc}"))
            return []

        objects: list[Mapping[str, Any]]
        if isinstance(decoded, list):
            objects = [item for item in decoded if isinstance(item, Mapping)]
        elif isinstance(decoded, Mapping):
            wrapped = decoded.get(WRAPPER_KEY)
            if isinstance(wrapped, Mapping):
                objects = [wrapped]
            elif isinstance(wrapped, list):
                objects = [item for item in wrapped if isinstance(item, Mapping)]
            else:
                objects = [decoded]
        else:
            objects = []

        return [inv for inv in (invocation_from_object(obj, issues) for obj in objects) if inv is not None]


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _dedupe(invocations: Sequence[ToolInvocation]) -> list[ToolInvocation]:
    seen: set[str] = set()
    unique: list[ToolInvocation] = []
    for invocation in invocations:
        key = invocation.canonical_key()
        if key in seen:
            continue
        seen.add(key)
        unique.append(invocation)
    return unique


def _strip_fence(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```"):
        match = FENCED_BLOCK_RE.search(stripped)
        if match:
            return (match.group("body") or "").strip()
        stripped = stripped.lstrip("`")
        first_newline = stripped.find("\n")
        stripped = stripped[first_newline + 1 :] if first_newline >= 0 else ""
    return stripped.strip()


def _looks_like_call(snippet: str) -> bool:
    return any(f'"{key}"' in snippet for key in NAME_KEYS + (WRAPPER_KEY,))


def _normalize_separators(text: str) -> str:
    """Split glued objects apart and drop brace-only lines that unbalance the text."""

    text = _GLUED_OBJECTS_RE.sub("}\n{", text)
    surplus = _brace_surplus(text)
    if surplus == 0:
        return text
    stray = "{" if surplus > 0 else "}"
    remaining = abs(surplus)
    lines = text.split("\n")
    ordered = range(len(lines)) if stray == "{" else range(len(lines) - 1, -1, -1)
    for index in ordered:
        if remaining == 0:
            break
        if lines[index].strip() == stray:
            lines[index] = ""
            remaining -= 1
    return "\n".join(lines)


def _brace_surplus(text: str) -> int:
    depth = 0
    in_string = False
    escaped = False
    for char in text:
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
    return depth
