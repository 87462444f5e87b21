"""Per-tool output limits applied before tool results enter the history.

Directory listings and search results are the usual context hogs, so each
tool family gets its own character ceiling and a turn-wide tracker tightens
the ceilings once several tools have run in the same turn.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

__all__ = [
    "CumulativeOutputTracker",
    "DEFAULT_OUTPUT_LIMITS",
    "LimitedOutput",
    "OutputStats",
    "ToolOutputLimits",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_LIMIT_KEY = "_default"

DEFAULT_OUTPUT_LIMITS: Mapping[str, int] = MappingProxyType(
    {
        "read_file": 1500,
        "search_files": 1000,
        "search_text": 1000,
        "list_directory": 800,
        "code_index": 1200,
        "bash": 1000,
        "bash_command": 1000,
        "execute_command": 1000,
        "http_request": 1500,
        "web_search": 1000,
        DEFAULT_LIMIT_KEY: 1000,
    }
)

# Window before the cut in which a natural break is preferred.
NEWLINE_WINDOW = 200
SPACE_WINDOW = 50


@dataclass(slots=True, frozen=True)
class LimitedOutput:
    text: str
    omitted_chars: int = 0
    limit: int = 0

    @property
    def truncated(self) -> bool:
        return self.omitted_chars > 0


class ToolOutputLimits:
    """Character ceilings keyed by tool id, with substring fallback."""

    def __init__(self, limits: Mapping[str, int] | None = None) -> None:
        merged = dict(DEFAULT_OUTPUT_LIMITS)
        if limits:
            merged.update({_normalize_tool_id(key): int(value) for key, value in limits.items()})
        self._limits = merged

    def limit_for(self, tool_id: str) -> int:
        """Return the ceiling for ``tool_id``.

        ``read-file`` and ``read.file`` match ``read_file``; a tool whose id
        contains a known id (``read_file_tool``) inherits that limit.
        """
        normalized = _normalize_tool_id(tool_id)
        if normalized in self._limits:
            return self._limits[normalized]
        for key, value in self._limits.items():
            if key != DEFAULT_LIMIT_KEY and key in normalized:
                return value
        return self._limits[DEFAULT_LIMIT_KEY]

    def apply(self, tool_id: str, output: str | None, limit: int | None = None) -> LimitedOutput:
        """Truncate ``output`` to the tool's ceiling, preferring a line or word break."""

        text = output or ""
        ceiling = self.limit_for(tool_id) if limit is None else max(0, int(limit))
        if len(text) <= ceiling:
            return LimitedOutput(text=text, limit=ceiling)

        cut = ceiling
        head = text[:ceiling]
        last_newline = head.rfind("\n")
        last_space = head.rfind(" ")
        if last_newline > 0 and last_newline > ceiling - NEWLINE_WINDOW:
            cut = last_newline
        elif last_space > 0 and last_space > ceiling - SPACE_WINDOW:
            cut = last_space
        omitted = len(text) - cut
        LOGGER.debug("Truncating %s output from %d to %d chars", tool_id, len(text), cut)
        notice = f"\n\n[Output truncated - {omitted:,} characters omitted. Tool: {tool_id}]"
        return LimitedOutput(text=text[:cut] + notice, omitted_chars=omitted, limit=ceiling)


@dataclass(slots=True, frozen=True)
class OutputStats:
    total_chars: int
    tool_count: int
    near_limit: bool


class CumulativeOutputTracker:
    """Tightens per-tool ceilings as one turn accumulates tool output."""

    def __init__(
        self,
        *,
        max_total_chars: int = 6000,
        multi_tool_limit: int = 800,
        minimum_limit: int = 100,
        warning_ratio: float = 0.8,
    ) -> None:
        self._max_total = max_total_chars
        self._multi_tool_limit = multi_tool_limit
        self._minimum_limit = minimum_limit
        self._warning_ratio = warning_ratio
        self._total_chars = 0
        self._tools: list[str] = []

    def adjusted_limit(self, tool_id: str, base_limit: int) -> int:
        remaining = self._max_total - self._total_chars
        if remaining <= 0:
            return self._minimum_limit
        if len(self._tools) >= 2:
            return min(self._multi_tool_limit, remaining)
        return min(base_limit, remaining)

    def record(self, tool_id: str, output_length: int) -> None:
        self._total_chars += max(0, output_length)
        if tool_id not in self._tools:
            self._tools.append(tool_id)
        if self._near_limit():
            LOGGER.warning(
                "Approaching tool output limit: %d/%d chars across %d tool(s)",
                self._total_chars,
                self._max_total,
                len(self._tools),
            )

    def reset(self) -> None:
        self._total_chars = 0
        self._tools.clear()

    def stats(self) -> OutputStats:
        return OutputStats(total_chars=self._total_chars, tool_count=len(self._tools), near_limit=self._near_limit())

    def _near_limit(self) -> bool:
        return self._total_chars > self._max_total * self._warning_ratio


def _normalize_tool_id(tool_id: str) -> str:
    return (tool_id or "").strip().lower().replace("-", "_").replace(".", "_")
