"""Conversation history with tool-call pairing and budget compression.

:class:`ConversationHistory` stores the entries of one conversation and
produces the view that is serialized into the next model request. Two rules
hold for every view it builds:

* every tool result answers an earlier assistant tool call, and every
  assistant tool call has a result; unmatched halves (orphans) are pruned;
* compression only ever replaces a prefix of the history and never cuts
  between an assistant tool call and its results.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Mapping, Sequence

from ..utils.json_tools import canonical_json
from ..utils.tokens import estimate_tokens
from .types import HistoryEntry, ToolInvocation

if TYPE_CHECKING:
    from ...services.settings import Settings

__all__ = ["ConversationHistory", "HistoryStats", "TRUNCATION_NOTICE"]

LOGGER = logging.getLogger(__name__)

TRUNCATION_NOTICE = "\n\n... (output truncated - showing first {kept} of {total} total characters)"
SUMMARY_PREFIX = "[Previous conversation summary: "

TelemetryEmitter = Callable[[str, Mapping[str, Any]], None]


@dataclass(slots=True, frozen=True)
class HistoryStats:
    """Snapshot of the history's size and composition."""

    message_count: int
    estimated_tokens: int
    tool_result_count: int
    summarized_messages: int
    truncated_chars: int
    oldest_timestamp: float | None
    newest_timestamp: float | None

    def as_payload(self) -> dict[str, Any]:
        return {
            "message_count": self.message_count,
            "estimated_tokens": self.estimated_tokens,
            "tool_result_count": self.tool_result_count,
            "summarized_messages": self.summarized_messages,
            "truncated_chars": self.truncated_chars,
        }


class ConversationHistory:
    """Ordered conversation entries plus the system instruction.

    Args:
        system_prompt: Instruction sent ahead of every request view.
        max_tokens: Hard budget the view should fit in; exceeding it after
            compression is logged, never enforced by cutting pairs.
        compression_threshold: Estimated token count above which the next
            view build compresses older entries first.
        keep_recent: Number of most recent entries kept verbatim.
        max_tool_result_chars: Cap applied to every stored tool result.
        telemetry_emitter: Optional ``(event_name, payload)`` callback.
    """

    def __init__(
        self,
        system_prompt: str = "",
        *,
        max_tokens: int = 12_000,
        compression_threshold: int = 10_000,
        keep_recent: int = 10,
        max_tool_result_chars: int = 3_000,
        telemetry_emitter: TelemetryEmitter | None = None,
    ) -> None:
        if compression_threshold > max_tokens:
            raise ValueError("compression_threshold must not exceed max_tokens")
        if keep_recent < 1:
            raise ValueError("keep_recent must be positive")
        self._system_prompt = system_prompt or ""
        self._max_tokens = max_tokens
        self._threshold = compression_threshold
        self._keep_recent = keep_recent
        self._max_tool_chars = max(1, max_tool_result_chars)
        self._emitter = telemetry_emitter
        self._entries: list[HistoryEntry] = []
        self._last_truncation = 0
        self._truncated_total = 0
        self._summarized_messages = 0
        self._summarized_tools: Counter[str] = Counter()
        self._summarized_topics: set[str] = set()

    @classmethod
    def from_settings(cls, settings: "Settings", **kwargs: Any) -> "ConversationHistory":
        return cls(
            settings.system_prompt,
            max_tokens=settings.max_tokens,
            compression_threshold=min(settings.compression_threshold, settings.max_tokens),
            keep_recent=max(1, settings.keep_recent),
            max_tool_result_chars=settings.max_tool_result_chars,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    @property
    def compression_threshold(self) -> int:
        return self._threshold

    @property
    def max_tokens(self) -> int:
        return self._max_tokens

    @property
    def last_truncation(self) -> int:
        """Characters dropped from the most recently appended tool result."""

        return self._last_truncation

    def set_telemetry_emitter(self, emitter: TelemetryEmitter | None) -> None:
        self._emitter = emitter

    # ------------------------------------------------------------------
    # Appends
    # ------------------------------------------------------------------
    def append_user(self, content: str) -> HistoryEntry:
        return self._append(HistoryEntry(role="user", content=content or "", token_estimate=estimate_tokens(content)))

    def append_assistant(self, content: str, tool_calls: Sequence[ToolInvocation] | None = None) -> HistoryEntry:
        calls = tuple(tool_calls or ())
        entry = HistoryEntry(
            role="assistant",
            content=content or "",
            token_estimate=estimate_tokens(content) + _calls_estimate(calls),
            tool_calls=calls,
        )
        return self._append(entry)

    def append_tool_result(self, tool_id: str, call_id: str, content: str) -> HistoryEntry:
        """Store a tool result, capping it at ``max_tool_result_chars``."""

        text = content or ""
        dropped = 0
        if len(text) > self._max_tool_chars:
            total = len(text)
            dropped = total - self._max_tool_chars
            text = text[: self._max_tool_chars] + TRUNCATION_NOTICE.format(kept=self._max_tool_chars, total=total)
            LOGGER.debug("Capped %s result for call %s: dropped %d chars", tool_id, call_id, dropped)
            self._emit("tool_result_truncated", {"tool_id": tool_id, "call_id": call_id, "dropped_chars": dropped})
        self._last_truncation = dropped
        self._truncated_total += dropped
        entry = HistoryEntry(
            role="tool",
            content=text,
            token_estimate=estimate_tokens(text),
            tool_call_id=call_id,
            tool_result=text,
            tool_id=tool_id,
            truncated_chars=dropped,
        )
        return self._append(entry)

    def _append(self, entry: HistoryEntry) -> HistoryEntry:
        self._entries.append(entry)
        return entry

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    def entries(self) -> list[HistoryEntry]:
        """Return a copy of the stored entries (orphans included)."""

        return list(self._entries)

    def estimate_total_tokens(self) -> int:
        return estimate_tokens(self._system_prompt) + sum(entry.token_estimate for entry in self._entries)

    def build_request_view(self) -> list[HistoryEntry]:
        """Return the entries to serialize, compressed if needed and free of orphans."""

        if self.estimate_total_tokens() > self._threshold:
            self.compress()
        view = self._prune_orphans(self._entries)
        estimated = estimate_tokens(self._system_prompt) + sum(entry.token_estimate for entry in view)
        if estimated > self._max_tokens:
            LOGGER.warning(
                "Request view still exceeds budget after compression: %d > %d tokens",
                estimated,
                self._max_tokens,
            )
            self._emit("context_over_budget", {"estimated_tokens": estimated, "max_tokens": self._max_tokens})
        return view

    def compress(self) -> bool:
        """Fold entries older than the recent window into one summary entry.

        Returns ``True`` when anything was compressed.
        """

        cut = self._safe_cut(len(self._entries) - self._keep_recent)
        if cut <= 0:
            return False
        older = self._entries[:cut]
        if len(older) == 1 and older[0].synthetic:
            return False
        before = self.estimate_total_tokens()
        for entry in older:
            if entry.synthetic:
                continue
            self._summarized_messages += 1
            if entry.role == "tool":
                self._summarized_tools[entry.tool_id or "tool"] += 1
            elif entry.role == "user":
                topic = " ".join(entry.content.lower().split())
                if topic:
                    self._summarized_topics.add(topic)
        summary_text = f"{SUMMARY_PREFIX}{self._summary_body()}]"
        summary = HistoryEntry(
            role="assistant",
            content=summary_text,
            timestamp=older[-1].timestamp,
            token_estimate=estimate_tokens(summary_text),
            synthetic=True,
        )
        self._entries = [summary] + self._entries[cut:]
        after = self.estimate_total_tokens()
        LOGGER.info("Compressed %d history entries (%d -> %d estimated tokens)", len(older), before, after)
        self._emit(
            "history_compressed",
            {"entries_removed": len(older), "tokens_before": before, "tokens_after": after},
        )
        return True

    def clear(self) -> None:
        self._entries.clear()
        self._last_truncation = 0
        self._truncated_total = 0
        self._summarized_messages = 0
        self._summarized_tools.clear()
        self._summarized_topics.clear()

    def update_system_prompt(self, prompt: str) -> None:
        self._system_prompt = prompt or ""

    def stats(self) -> HistoryStats:
        return HistoryStats(
            message_count=len(self._entries) + 1,
            estimated_tokens=self.estimate_total_tokens(),
            tool_result_count=sum(1 for entry in self._entries if entry.role == "tool"),
            summarized_messages=self._summarized_messages,
            truncated_chars=self._truncated_total,
            oldest_timestamp=self._entries[0].timestamp if self._entries else None,
            newest_timestamp=self._entries[-1].timestamp if self._entries else None,
        )

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _safe_cut(self, cut: int) -> int:
        """Move ``cut`` backward until no assistant/tool pair straddles it."""

        if cut <= 0:
            return 0
        pairs = self._pair_positions()
        while True:
            straddling = [call_index for call_index, result_index in pairs if call_index < cut <= result_index]
            if not straddling:
                return cut
            cut = min(straddling)

    def _pair_positions(self) -> list[tuple[int, int]]:
        return [(call_index, result_index) for call_index, _position, result_index in _pairings(self._entries)]

    def _prune_orphans(self, entries: Sequence[HistoryEntry]) -> list[HistoryEntry]:
        pairs = _pairings(entries)
        answered = {(call_index, position) for call_index, position, _result in pairs}
        kept_results = {result_index for _call, _position, result_index in pairs}

        view: list[HistoryEntry] = []
        dropped_calls = 0
        dropped_results = 0
        for index, entry in enumerate(entries):
            if entry.role == "assistant" and entry.tool_calls:
                kept = tuple(call for position, call in enumerate(entry.tool_calls) if (index, position) in answered)
                dropped_calls += len(entry.tool_calls) - len(kept)
                if len(kept) != len(entry.tool_calls):
                    if not kept and not entry.content.strip():
                        continue
                    entry = entry.with_tool_calls(kept)
                view.append(entry)
            elif entry.role == "tool":
                if index not in kept_results:
                    dropped_results += 1
                    continue
                view.append(entry)
            else:
                view.append(entry)

        if dropped_calls or dropped_results:
            LOGGER.debug("Pruned %d orphaned call(s) and %d orphaned result(s)", dropped_calls, dropped_results)
            self._emit("orphan_dropped", {"calls": dropped_calls, "results": dropped_results})
        return view

    def _summary_body(self) -> str:
        lines = [f"Discussed {self._summarized_messages} messages:"]
        if self._summarized_tools:
            executed = ", ".join(f"{name} ({count}x)" for name, count in self._summarized_tools.items())
            lines.append(f"- Executed tools: {executed}")
        if self._summarized_topics:
            lines.append(f"- User asked about {len(self._summarized_topics)} topics")
        return "\n".join(lines)

    def _emit(self, name: str, payload: Mapping[str, Any]) -> None:
        if self._emitter is None:
            return
        try:
            self._emitter(name, dict(payload))
        except Exception:  # pragma: no cover - emitter failures must not break history
            LOGGER.debug("History telemetry emitter failed for %s", name, exc_info=True)


def _calls_estimate(calls: Sequence[ToolInvocation]) -> int:
    return sum(estimate_tokens(call.tool_id) + estimate_tokens(canonical_json(call.public_arguments())) for call in calls)


def _pairings(entries: Sequence[HistoryEntry]) -> list[tuple[int, int, int]]:
    """Match tool results to calls as ``(assistant index, call position, result index)``.

    A result answers the nearest preceding unanswered call with its id, so an
    id reused by a later turn pairs with that turn's call.
    """

    pending: dict[str, list[tuple[int, int]]] = {}
    pairs: list[tuple[int, int, int]] = []
    for index, entry in enumerate(entries):
        if entry.role == "assistant":
            for position, call in enumerate(entry.tool_calls):
                if call.call_id:
                    pending.setdefault(call.call_id, []).append((index, position))
        elif entry.role == "tool" and entry.tool_call_id:
            waiting = pending.get(entry.tool_call_id)
            if waiting:
                call_index, position = waiting.pop()
                pairs.append((call_index, position, index))
    return pairs
