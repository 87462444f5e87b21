"""Diagnostic events and the sinks that collect them.

Events are structured, non-fatal observations (an orphan dropped, a call
repaired, a tool result truncated). Subscribers implement
:class:`DiagnosticSink`; two are provided: a bounded in-memory buffer for
inspection and tests, and a sink that forwards events to :mod:`logging`.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Mapping, Protocol, Sequence

__all__ = [
    "DiagnosticEvent",
    "DiagnosticSink",
    "InMemoryDiagnosticSink",
    "LoggingDiagnosticSink",
    "snapshot_events",
]

LOGGER = logging.getLogger(__name__)

MIN_CAPACITY = 10


@dataclass(slots=True, frozen=True)
class DiagnosticEvent:
    """A structured, non-fatal observation emitted during a turn."""

    name: str
    turn_id: str
    correlation_id: str | None = None
    payload: Mapping[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "turn_id": self.turn_id,
            "correlation_id": self.correlation_id,
            "payload": dict(self.payload),
            "timestamp": self.timestamp,
        }


class DiagnosticSink(Protocol):
    def record(self, event: DiagnosticEvent) -> None:
        ...


class InMemoryDiagnosticSink:
    """Keeps the most recent ``capacity`` events (never fewer than ten)."""

    def __init__(self, capacity: int = 200) -> None:
        self._events: deque[DiagnosticEvent] = deque(maxlen=max(MIN_CAPACITY, capacity))
        self._guard = Lock()

    @property
    def capacity(self) -> int:
        return self._events.maxlen or MIN_CAPACITY

    def record(self, event: DiagnosticEvent) -> None:
        with self._guard:
            self._events.append(event)

    def tail(self, limit: int | None = None) -> list[DiagnosticEvent]:
        """Return up to ``limit`` of the newest events, oldest first."""

        with self._guard:
            snapshot = list(self._events)
        if limit is not None and 0 <= limit < len(snapshot):
            snapshot = snapshot[len(snapshot) - limit :]
        return snapshot

    def named(self, name: str) -> list[DiagnosticEvent]:
        with self._guard:
            return [event for event in self._events if event.name == name]

    def clear(self) -> None:
        with self._guard:
            self._events.clear()

    def __len__(self) -> int:
        with self._guard:
            return len(self._events)


class LoggingDiagnosticSink:
    """Writes every event to a logger as one line of ``name key=value`` text."""

    def __init__(self, logger: logging.Logger | None = None, level: int = logging.DEBUG) -> None:
        self._logger = logger or LOGGER
        self._level = level

    def record(self, event: DiagnosticEvent) -> None:
        if not self._logger.isEnabledFor(self._level):
            return
        details = " ".join(f"{key}={value!r}" for key, value in sorted(event.payload.items()))
        self._logger.log(
            self._level,
            "[%s%s] %s %s",
            event.turn_id[:8],
            f"/{event.correlation_id}" if event.correlation_id else "",
            event.name,
            details,
        )


def snapshot_events(sink: DiagnosticSink, limit: int | None = None) -> Sequence[DiagnosticEvent]:
    """Return buffered events from ``sink``.

    Raises:
        TypeError: when the sink keeps no events.
    """

    tail = getattr(sink, "tail", None)
    if not callable(tail):
        raise TypeError(f"{type(sink).__name__} does not buffer events")
    return list(tail(limit))
