"""Turn pipeline: extraction, validation and history recording for one model turn.

The pipeline wires the protocol components together. A streamed response
is fed fragment by fragment into a fresh :class:`FragmentAccumulator`; a
complete response goes straight to the :class:`ToolCallExtractor`. Every
candidate invocation is validated against the registry, replaced by its
repaired form when invalid (once, never in a loop), given a call id, and
handed back in a :class:`TurnResult`. Tool execution is the caller's job.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Protocol, Sequence, runtime_checkable

from ..services.telemetry import DiagnosticSink
from ..tools.registry import ToolSchemaRegistry
from ..utils.json_tools import canonical_json
from .fragment_accumulator import FragmentAccumulator, StreamFragment
from .history import ConversationHistory
from .message_builder import MessageBuilder
from .model_profiles import ModelProfile, ModelProfileRegistry
from .output_limits import CumulativeOutputTracker, ToolOutputLimits
from .tool_call_parser import ToolCallExtractor, parsed_tool_call_id
from .tool_validator import ToolCallValidator
from .turn_context import TurnContext
from .types import HistoryEntry, Issue, IssueCode, ToolInvocation, ValidationOutcome

if TYPE_CHECKING:
    from ...services.settings import Settings

__all__ = [
    "ModelClient",
    "NATIVE_STRATEGY",
    "StreamEvent",
    "ToolCallPipeline",
    "TurnResult",
]

LOGGER = logging.getLogger(__name__)

NATIVE_STRATEGY = "native"
_CONTENT_DELTA = "content.delta"


# -----------------------------------------------------------------------------
# Protocols
# -----------------------------------------------------------------------------


@runtime_checkable
class StreamEvent(Protocol):
    """Streaming event as produced by :class:`toolrelay.ai.client.AIClient`.

    ``to_fragment`` returns the tool-call fragment carried by the event, or
    ``None`` for text-only events.
    """

    type: str
    content: str | None

    def to_fragment(self) -> StreamFragment | None: ...


@runtime_checkable
class ModelClient(Protocol):
    """Anything with an ``AIClient``-compatible ``stream_chat`` method."""

    def stream_chat(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        **kwargs: Any,
    ) -> AsyncIterator[StreamEvent]: ...


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class TurnResult:
    """What one model turn asked for.

    Attributes:
        text: Display text with tool-call payloads removed.
        invocations: Calls ready to execute, each with a call id.
        outcomes: Validation outcome per candidate, in candidate order.
        issues: Parse issues plus errors that survived repair.
        strategy: Extraction stage that produced the calls, ``native`` for
            streamed tool-call fragments.
        cancelled: ``True`` when the turn was cancelled mid-stream.
    """

    text: str = ""
    invocations: list[ToolInvocation] = field(default_factory=list)
    outcomes: list[ValidationOutcome] = field(default_factory=list)
    issues: list[Issue] = field(default_factory=list)
    strategy: str | None = None
    cancelled: bool = False

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.invocations)


# -----------------------------------------------------------------------------
# Pipeline
# -----------------------------------------------------------------------------


class ToolCallPipeline:
    """Runs extraction, validation and history recording for model turns.

    Args:
        registry: Schemas of the tools the model may call.
        validator: Validator/repairer; a default one is built when omitted.
        history: Conversation the turn is recorded into.
        profile: Fixed extraction profile. When omitted the profile is
            resolved from ``context.model`` through ``profiles``.
        profiles: Registry used to resolve per-model profiles.
        output_limits: Per-tool output ceilings applied before results are
            stored; ``None`` disables limiting.
        tracker: Turn-wide output tracker; reset by :meth:`start_turn`.
    """

    def __init__(
        self,
        registry: ToolSchemaRegistry,
        *,
        validator: ToolCallValidator | None = None,
        history: ConversationHistory | None = None,
        profile: ModelProfile | None = None,
        profiles: ModelProfileRegistry | None = None,
        output_limits: ToolOutputLimits | None = None,
        tracker: CumulativeOutputTracker | None = None,
    ) -> None:
        self._registry = registry
        self._validator = validator or ToolCallValidator()
        self._history = history or ConversationHistory()
        self._profile = profile
        self._profiles = profiles or ModelProfileRegistry()
        self._output_limits = output_limits
        self._tracker = tracker or CumulativeOutputTracker()
        self._extractors: dict[str, ToolCallExtractor] = {}

    @classmethod
    def from_settings(cls, settings: "Settings", registry: ToolSchemaRegistry, **kwargs: Any) -> "ToolCallPipeline":
        kwargs.setdefault("history", ConversationHistory.from_settings(settings))
        if settings.limit_tool_output:
            kwargs.setdefault("output_limits", ToolOutputLimits(settings.tool_output_limits))
        return cls(registry, **kwargs)

    @property
    def history(self) -> ConversationHistory:
        return self._history

    @property
    def registry(self) -> ToolSchemaRegistry:
        return self._registry

    def start_turn(self, *, model: str | None = None, sinks: Iterable[DiagnosticSink] = ()) -> TurnContext:
        """Open a turn: fresh context, history events routed to it, output tracker reset."""

        context = TurnContext.start(model=model, sinks=sinks)
        self._history.set_telemetry_emitter(lambda name, payload: context.emit(name, **payload))
        self._tracker.reset()
        LOGGER.debug("Started turn %s (model=%s)", context.turn_id, model)
        return context

    def extractor_for(self, context: TurnContext | None = None) -> ToolCallExtractor:
        profile = self._profile or self._profiles.resolve(context.model if context else None)
        extractor = self._extractors.get(profile.name)
        if extractor is None:
            extractor = ToolCallExtractor(profile)
            self._extractors[profile.name] = extractor
        return extractor

    # ------------------------------------------------------------------
    # Response handling
    # ------------------------------------------------------------------
    def process_response(self, text: str | None, context: TurnContext | None = None) -> TurnResult:
        """Extract and validate the tool calls in a complete response."""

        context = context or TurnContext.start()
        parsed = self.extractor_for(context).parse(text)
        for issue in parsed.issues:
            context.emit("tool_call_skipped", code=issue.code, message=issue.message)
        return self._finalize(parsed.invocations, parsed.text, list(parsed.issues), parsed.strategy, context)

    async def consume_stream(
        self,
        events: AsyncIterable[StreamEvent | StreamFragment],
        context: TurnContext | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> TurnResult:
        """Assemble a streamed response into a :class:`TurnResult`.

        ``cancel_event`` is checked before every read; once it is set the
        partial fragments are discarded and an empty, cancelled result is
        returned. When the stream carries no native tool-call fragments the
        accumulated text is run through the extractor instead.
        """

        context = context or TurnContext.start()
        accumulator = FragmentAccumulator()
        text_parts: list[str] = []
        iterator = events.__aiter__()
        while True:
            if cancel_event is not None and cancel_event.is_set():
                stats = accumulator.stats()
                accumulator.clear()
                LOGGER.info("Turn %s cancelled; discarded %d partial call(s)", context.turn_id, stats.total)
                context.emit("turn_cancelled", **stats.as_payload())
                return TurnResult(cancelled=True)
            try:
                event = await iterator.__anext__()
            except StopAsyncIteration:
                break
            if isinstance(event, StreamFragment):
                accumulator.accumulate(event)
                continue
            if event.type == _CONTENT_DELTA and event.content:
                text_parts.append(event.content)
            accumulator.accumulate(event.to_fragment())

        accumulator.accumulate(StreamFragment(finished=True))
        native = accumulator.drain_completed()
        text = "".join(text_parts)
        if not native:
            return self.process_response(text, context)
        context.emit("stream_assembled", calls=len(native), chars=len(text))
        display = self.extractor_for(context).clean_text(text)
        return self._finalize(native, display, [], NATIVE_STRATEGY, context)

    async def request(
        self,
        client: ModelClient,
        prompt: str | None = None,
        *,
        context: TurnContext | None = None,
        cancel_event: asyncio.Event | None = None,
        **stream_kwargs: Any,
    ) -> TurnResult:
        """Send the history (plus ``prompt``) to ``client`` and record the reply."""

        context = context or self.start_turn()
        plan = MessageBuilder(self._history).build_messages(prompt)
        tools = self._registry.to_openai_tools() or None
        context.emit("request_built", messages=len(plan.messages), prompt_tokens=plan.prompt_tokens)
        events = client.stream_chat(plan.messages, tools=tools, **stream_kwargs)
        result = await self.consume_stream(events, context, cancel_event)
        if not result.cancelled:
            self.record_assistant(result)
        return result

    # ------------------------------------------------------------------
    # History recording
    # ------------------------------------------------------------------
    def record_assistant(self, result: TurnResult) -> HistoryEntry:
        return self._history.append_assistant(result.text, result.invocations)

    def record_tool_result(
        self,
        invocation: ToolInvocation,
        content: str,
        *,
        context: TurnContext | None = None,
    ) -> HistoryEntry:
        """Store the output of an executed invocation, applying output limits."""

        if invocation.call_id is None:
            raise ValueError("invocation has no call_id; record the assistant turn first")
        text = content or ""
        if self._output_limits is not None:
            base = self._output_limits.limit_for(invocation.tool_id)
            limit = self._tracker.adjusted_limit(invocation.tool_id, base)
            limited = self._output_limits.apply(invocation.tool_id, text, limit)
            self._tracker.record(invocation.tool_id, len(limited.text))
            if limited.truncated and context is not None:
                context.emit(
                    IssueCode.OUTPUT_TRUNCATED,
                    correlation_id=context.correlate(invocation),
                    tool_id=invocation.tool_id,
                    omitted_chars=limited.omitted_chars,
                    limit=limited.limit,
                )
            text = limited.text
        return self._history.append_tool_result(invocation.tool_id, invocation.call_id, text)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _finalize(
        self,
        candidates: Sequence[ToolInvocation],
        text: str,
        issues: list[Issue],
        strategy: str | None,
        context: TurnContext,
    ) -> TurnResult:
        result = TurnResult(text=text, issues=issues, strategy=strategy)
        for index, candidate in enumerate(candidates):
            invocation = _ensure_call_id(candidate, index, context.turn_id)
            outcome = self._validator.validate_with_registry(invocation, self._registry, context=context)
            result.outcomes.append(outcome)
            if IssueCode.UNKNOWN_TOOL in outcome.error_codes():
                LOGGER.warning("Skipping call to unknown tool %s", invocation.tool_id)
                result.issues.extend(outcome.errors)
                continue
            if not outcome.valid and outcome.repaired is not None:
                invocation = self._apply_repair(outcome.repaired, result, context)
            result.invocations.append(invocation)
            context.emit(
                "tool_call_ready",
                correlation_id=context.correlate(invocation),
                tool_id=invocation.tool_id,
                call_id=invocation.call_id,
                repaired=not outcome.valid,
            )
        LOGGER.debug(
            "Turn %s produced %d call(s) from %d candidate(s)",
            context.turn_id,
            len(result.invocations),
            len(candidates),
        )
        return result

    def _apply_repair(self, repaired: ToolInvocation, result: TurnResult, context: TurnContext) -> ToolInvocation:
        schema = self._registry.get(repaired.tool_id)
        remaining = self._validator.validate(repaired, schema)
        if remaining.errors:
            LOGGER.warning(
                "Repaired call to %s still has %d error(s); executing as repaired",
                repaired.tool_id,
                len(remaining.errors),
            )
            result.issues.extend(remaining.errors)
        context.emit(
            "tool_call_repaired",
            correlation_id=context.correlate(repaired),
            tool_id=repaired.tool_id,
            remaining_errors=[issue.to_dict() for issue in remaining.errors],
        )
        return repaired


def _ensure_call_id(invocation: ToolInvocation, index: int, turn_id: str) -> ToolInvocation:
    if invocation.call_id:
        return invocation
    payload = canonical_json(invocation.public_arguments())
    return invocation.with_call_id(parsed_tool_call_id(invocation.tool_id, index, payload, scope=turn_id))
