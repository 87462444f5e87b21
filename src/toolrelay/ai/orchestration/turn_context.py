"""Turn context for tool-call processing.

A :class:`TurnContext` is created when a model turn starts and is handed to
every component that touches that turn. It owns the turn identifier, hands
out one correlation id per tool invocation, and fans diagnostic events out
to whichever sinks subscribed for the turn. Nothing here is process-global:
two turns never share counters or subscribers.
"""

from __future__ import annotations

import itertools
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from ..services.telemetry import DiagnosticEvent, DiagnosticSink
from .types import ToolInvocation

__all__ = ["TurnContext"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class TurnContext:
    """Per-turn identity, correlation ids and diagnostic subscribers.

    Attributes:
        turn_id: Unique identifier for this turn.
        model: Model name the turn is talking to, when known.
        started_at: Timestamp when the turn started.
        metadata: Additional turn metadata (extensible).
    """

    turn_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    model: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)
    _sinks: list[DiagnosticSink] = field(default_factory=list, repr=False)
    _counter: Any = field(default_factory=lambda: itertools.count(1), repr=False)
    _correlations: dict[str, str] = field(default_factory=dict, repr=False)

    @classmethod
    def start(
        cls,
        *,
        model: str | None = None,
        sinks: Iterable[DiagnosticSink] = (),
        turn_id: str | None = None,
    ) -> "TurnContext":
        context = cls(turn_id=turn_id or str(uuid.uuid4()), model=model)
        for sink in sinks:
            context.subscribe(sink)
        return context

    def subscribe(self, sink: DiagnosticSink) -> Callable[[], None]:
        """Register ``sink`` for this turn's events and return an unsubscribe callback."""

        self._sinks.append(sink)

        def _unsubscribe() -> None:
            if sink in self._sinks:
                self._sinks.remove(sink)

        return _unsubscribe

    def correlate(self, invocation: ToolInvocation) -> str:
        """Return the correlation id for ``invocation``, allocating one on first sight.

        Invocations with a provider call id keep a stable correlation id for
        the lifetime of the turn. Anonymous invocations always get a fresh id.
        """

        key = invocation.call_id
        if key and key in self._correlations:
            return self._correlations[key]
        correlation_id = f"{self.turn_id[:8]}-{next(self._counter)}"
        if key:
            self._correlations[key] = correlation_id
        return correlation_id

    def emit(self, name: str, *, correlation_id: str | None = None, **payload: Any) -> DiagnosticEvent:
        """Publish a diagnostic event to every subscribed sink."""

        event = DiagnosticEvent(
            name=name,
            turn_id=self.turn_id,
            correlation_id=correlation_id,
            payload=payload,
        )
        for sink in tuple(self._sinks):
            try:
                sink.record(event)
            except Exception:  # pragma: no cover - sink failures must not break the turn
                LOGGER.debug("Diagnostic sink %r failed for event %s", sink, name, exc_info=True)
        return event

    def to_dict(self) -> dict[str, Any]:
        """Serialize the turn context for logging."""
        return {
            "turn_id": self.turn_id,
            "model": self.model,
            "started_at": self.started_at.isoformat(),
            "metadata": dict(self.metadata),
            "sinks": len(self._sinks),
        }
