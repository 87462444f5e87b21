"""Reassembly of streamed tool-call fragments.

Streaming providers deliver a tool call as many small fragments: an id and
a name once, then the JSON arguments a few characters at a time, all tagged
with a slot index. :class:`FragmentAccumulator` buffers those fragments per
slot and hands back finished :class:`ToolInvocation` objects.

One producer task may call :meth:`FragmentAccumulator.accumulate` while a
consumer drains or peeks; a single lock guards all state.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Any

from ..utils.json_tools import JsonRepairError, is_complete_json, lenient_loads
from .types import CALL_ID_KEY, RAW_ARGUMENTS_KEY, ToolInvocation

__all__ = [
    "AccumulationSlot",
    "AccumulatorStats",
    "FragmentAccumulator",
    "SLOT_KEY_OFFSET",
    "StreamFragment",
]

LOGGER = logging.getLogger(__name__)

# Offset applied to the slot key when one provider index carries a second call.
SLOT_KEY_OFFSET = 1000


@dataclass(slots=True, frozen=True)
class StreamFragment:
    """One incremental piece of streamed model output.

    ``slot_index`` is ``None`` for fragments that carry no tool-call data,
    such as the final ``finished`` marker.
    """

    slot_index: int | None = None
    id: str | None = None
    name: str | None = None
    arguments_delta: str | None = None
    finished: bool = False
    finish_reason: str | None = None


@dataclass(slots=True)
class AccumulationSlot:
    """In-progress buffer for one streamed tool call."""

    index: int
    id: str | None = None
    name: str | None = None
    argument_buffer: str = ""
    chunk_count: int = 0
    complete: bool = False
    started_at: float = field(default_factory=time.monotonic)

    @property
    def has_minimum_data(self) -> bool:
        return bool(self.name and self.name.strip())


@dataclass(slots=True, frozen=True)
class AccumulatorStats:
    total: int = 0
    complete: int = 0
    incomplete: int = 0
    total_chunks: int = 0
    oldest_age_seconds: float = 0.0

    def as_payload(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "complete": self.complete,
            "incomplete": self.incomplete,
            "total_chunks": self.total_chunks,
            "oldest_age_seconds": round(self.oldest_age_seconds, 3),
        }


class FragmentAccumulator:
    """Buffers streamed fragments per slot until the calls they form are complete."""

    def __init__(self) -> None:
        self._slots: dict[int, AccumulationSlot] = {}
        # Provider index -> key of the slot currently receiving its fragments.
        self._active_keys: dict[int, int] = {}
        self._lock = Lock()

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------
    def accumulate(self, fragment: StreamFragment | None) -> None:
        if fragment is None:
            return
        with self._lock:
            if fragment.slot_index is not None:
                self._apply(fragment)
            if fragment.finished:
                LOGGER.debug(
                    "Stream finished (reason=%s); marking %d slot(s) complete",
                    fragment.finish_reason,
                    len(self._slots),
                )
                for slot in self._slots.values():
                    slot.complete = True

    def _apply(self, fragment: StreamFragment) -> None:
        index = int(fragment.slot_index or 0)
        key = self._active_keys.get(index, index)
        slot = self._slots.get(key)
        if slot is None:
            slot = AccumulationSlot(index=key)
            self._slots[key] = slot
            self._active_keys[index] = key
            LOGGER.debug("Started accumulating tool call at slot %d", key)

        if fragment.name:
            if slot.name and slot.name != fragment.name and slot.argument_buffer:
                slot = self._handle_name_change(index, slot, fragment.name)
            slot.name = fragment.name

        if fragment.id:
            slot.id = fragment.id

        if fragment.arguments_delta:
            slot.argument_buffer += fragment.arguments_delta

        slot.chunk_count += 1

    def _handle_name_change(self, index: int, slot: AccumulationSlot, new_name: str) -> AccumulationSlot:
        # Heuristic only: a provider reusing one index for two calls is unusual.
        LOGGER.warning(
            "Received tool name '%s' while accumulating '%s' at slot %d",
            new_name,
            slot.name,
            slot.index,
        )
        if not is_complete_json(slot.argument_buffer):
            slot.argument_buffer = ""
            return slot

        slot.complete = True
        new_key = slot.index + SLOT_KEY_OFFSET
        while new_key in self._slots:
            new_key += SLOT_KEY_OFFSET
        fresh = AccumulationSlot(index=new_key)
        self._slots[new_key] = fresh
        self._active_keys[index] = new_key
        return fresh

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------
    def drain_completed(self) -> list[ToolInvocation]:
        """Return and remove every complete slot that has a tool name."""

        with self._lock:
            drained: list[ToolInvocation] = []
            for key in sorted(self._slots):
                slot = self._slots[key]
                if not (slot.complete and slot.has_minimum_data):
                    continue
                drained.append(self._to_invocation(slot))
                del self._slots[key]
                LOGGER.debug(
                    "Completed tool call %s with %d chars of arguments",
                    slot.name,
                    len(slot.argument_buffer),
                )
            return drained

    def peek_all(self, include_incomplete: bool = False) -> list[ToolInvocation]:
        """Return invocations for named slots without removing them."""

        with self._lock:
            return [
                self._to_invocation(self._slots[key])
                for key in sorted(self._slots)
                if self._slots[key].has_minimum_data
                and (self._slots[key].complete or include_incomplete)
            ]

    def clear(self) -> None:
        with self._lock:
            if self._slots:
                LOGGER.debug("Clearing %d accumulated tool call(s)", len(self._slots))
            self._slots.clear()
            self._active_keys.clear()

    def stats(self) -> AccumulatorStats:
        with self._lock:
            slots = list(self._slots.values())
        if not slots:
            return AccumulatorStats()
        complete = sum(1 for slot in slots if slot.complete)
        oldest = min(slot.started_at for slot in slots)
        return AccumulatorStats(
            total=len(slots),
            complete=complete,
            incomplete=len(slots) - complete,
            total_chunks=sum(slot.chunk_count for slot in slots),
            oldest_age_seconds=max(0.0, time.monotonic() - oldest),
        )

    def reassemble_text(self, slot_index: int) -> str | None:
        """Return the raw argument buffer for ``slot_index`` (diagnostics)."""

        with self._lock:
            key = self._active_keys.get(slot_index, slot_index)
            slot = self._slots.get(key)
            return slot.argument_buffer if slot is not None else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)

    @staticmethod
    def _to_invocation(slot: AccumulationSlot) -> ToolInvocation:
        arguments: dict[str, Any] = {}
        raw = slot.argument_buffer
        if raw.strip():
            try:
                parsed = lenient_loads(raw)
            except JsonRepairError:
                parsed = None
            if isinstance(parsed, dict):
                arguments.update(parsed)
            else:
                LOGGER.warning("Failed to parse tool call arguments for %s; keeping raw text", slot.name)
                arguments[RAW_ARGUMENTS_KEY] = raw
        if slot.id:
            arguments[CALL_ID_KEY] = slot.id
        return ToolInvocation(tool_id=str(slot.name).strip(), arguments=arguments, call_id=slot.id)
