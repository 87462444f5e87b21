"""Streaming model client for OpenAI-compatible chat endpoints.

Timeouts and retries live here and nowhere else. Raw SDK stream events are
flattened into :class:`AIStreamEvent` records; the protocol layer turns the
tool-call ones into
:class:`~toolrelay.ai.orchestration.fragment_accumulator.StreamFragment`
values through :meth:`AIStreamEvent.to_fragment`.

A request is retried only while nothing has been yielded yet. Once the
first event reaches the caller, a failure propagates so the turn never sees
duplicated deltas.
"""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Mapping

import httpx
from openai import AsyncOpenAI, APIConnectionError, APIError, APIStatusError, RateLimitError
from openai.lib.streaming.chat import ChatCompletionStreamEvent
from openai.types.chat import (
    ChatCompletionMessageParam,
    ChatCompletionToolChoiceOptionParam,
    ChatCompletionToolParam,
)
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from ..services.settings import Settings
from .orchestration.fragment_accumulator import StreamFragment

__all__ = ["AIClient", "AIStreamEvent", "ChatRequest", "ClientSettings"]

LOGGER = logging.getLogger(__name__)

CONTENT_DELTA = "content.delta"
CONTENT_DONE = "content.done"
TOOL_ARGUMENTS_DELTA = "tool_calls.function.arguments.delta"
TOOL_ARGUMENTS_DONE = "tool_calls.function.arguments.done"
TOOL_CALL_STARTED = "tool_calls.started"
FINISHED = "finished"

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    APIConnectionError,
    RateLimitError,
    APIStatusError,
    APIError,
    httpx.TimeoutException,
)


@dataclass(slots=True)
class ClientSettings:
    """Connection and retry options for :class:`AIClient`."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    temperature: float | None = 0.2
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "ClientSettings":
        return cls(
            base_url=settings.base_url,
            api_key=settings.api_key,
            model=settings.model,
            organization=settings.organization,
            temperature=settings.temperature,
            request_timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            retry_min_seconds=settings.retry_min_seconds,
            retry_max_seconds=settings.retry_max_seconds,
            default_headers=dict(settings.default_headers) or None,
            debug_logging=settings.debug_logging,
        )


@dataclass(slots=True)
class AIStreamEvent:
    """One flattened streaming event.

    ``type`` is one of the module constants. Content events carry
    ``content``; tool-call events carry the provider slot in ``tool_index``
    plus whichever of name, id and argument text the provider sent.
    """

    type: str
    content: str | None = None
    tool_name: str | None = None
    tool_index: int | None = None
    tool_arguments: str | None = None
    arguments_delta: str | None = None
    tool_call_id: str | None = None
    finish_reason: str | None = None

    def to_fragment(self) -> StreamFragment | None:
        """Return the accumulator fragment this event carries, if any."""

        if self.type in (TOOL_ARGUMENTS_DELTA, TOOL_CALL_STARTED):
            return StreamFragment(
                slot_index=self.tool_index if self.tool_index is not None else 0,
                id=self.tool_call_id,
                name=self.tool_name,
                arguments_delta=self.arguments_delta,
            )
        if self.type == FINISHED:
            return StreamFragment(finished=True, finish_reason=self.finish_reason)
        return None


@dataclass(slots=True)
class ChatRequest:
    """Arguments of one ``chat.completions.stream`` call."""

    model: str
    messages: List[ChatCompletionMessageParam]
    tools: List[ChatCompletionToolParam] = field(default_factory=list)
    tool_choice: ChatCompletionToolChoiceOptionParam | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"model": self.model, "messages": list(self.messages)}
        optional = {
            "tools": self.tools or None,
            "tool_choice": self.tool_choice or None,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        payload.update(self.extra)
        return payload


def _normalize_messages(messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam]) -> List[ChatCompletionMessageParam]:
    normalized: List[ChatCompletionMessageParam] = []
    for position, message in enumerate(messages):
        if not isinstance(message, Mapping):
            raise TypeError(f"message {position} is {type(message).__name__}, expected a mapping")
        normalized.append(dict(message))  # type: ignore[arg-type]
    if not normalized:
        raise ValueError("At least one message is required to start a chat")
    return normalized


class AIClient:
    """Streams chat completions and retries transient failures before the first event."""

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client if client is not None else self._connect(settings)
        self._handlers: Dict[str, Callable[[Any], List[AIStreamEvent]]] = {
            "chunk": self._from_chunk,
            CONTENT_DELTA: self._from_content_delta,
            CONTENT_DONE: self._from_content_done,
            TOOL_ARGUMENTS_DELTA: self._from_tool_arguments,
            TOOL_ARGUMENTS_DONE: self._from_tool_arguments,
        }

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def stream_chat(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        *,
        tools: Iterable[ChatCompletionToolParam] | None = None,
        tool_choice: ChatCompletionToolChoiceOptionParam | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        **extra_params: Any,
    ) -> AsyncIterator[AIStreamEvent]:
        """Yield :class:`AIStreamEvent` records for one streamed completion.

        ``temperature`` falls back to the client settings; when both are
        ``None`` the field is left out of the request.

        Raises:
            ValueError: when ``messages`` is empty.
            TypeError: when a message is not a mapping.
        """

        request = ChatRequest(
            model=self._settings.model,
            messages=_normalize_messages(messages),
            tools=list(tools or ()),
            tool_choice=tool_choice,
            temperature=temperature if temperature is not None else self._settings.temperature,
            max_tokens=max_tokens,
            extra=dict(extra_params),
        )
        payload = request.to_payload()
        LOGGER.debug(
            "Streaming %s with %d message(s) and %d tool(s)",
            request.model,
            len(request.messages),
            len(request.tools),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        yielded = 0

        def _retryable(exc: BaseException) -> bool:
            return yielded == 0 and isinstance(exc, RETRYABLE_ERRORS)

        async for attempt in self._retrying(_retryable):
            with attempt:
                async with self._client.chat.completions.stream(**payload) as stream:
                    async for raw in stream:
                        for event in self._normalize_stream_event(raw):
                            yielded += 1
                            yield event
        LOGGER.debug("Stream for %s ended after %d event(s)", request.model, yielded)

    def _connect(self, settings: ClientSettings) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=dict(settings.default_headers or {}) or None,
        )

    def _retrying(self, predicate: Callable[[BaseException], bool]) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            retry=retry_if_exception(predicate),
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(multiplier=self._settings.retry_min_seconds, max=self._settings.retry_max_seconds),
            before_sleep=self._log_retry,
        )

    def _log_retry(self, state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome is not None else None
        LOGGER.warning(
            "Chat request to %s failed (attempt %d/%d): %s",
            self._settings.model,
            state.attempt_number,
            self._settings.max_retries,
            error,
        )

    # ------------------------------------------------------------------
    # Event normalization
    # ------------------------------------------------------------------
    def _normalize_stream_event(self, event: ChatCompletionStreamEvent[Any]) -> List[AIStreamEvent]:
        handler = self._handlers.get(getattr(event, "type", None) or "")
        return handler(event) if handler is not None else []

    @staticmethod
    def _from_content_delta(event: Any) -> List[AIStreamEvent]:
        text = getattr(event, "delta", None)
        return [AIStreamEvent(type=CONTENT_DELTA, content=str(text))] if text else []

    @staticmethod
    def _from_content_done(event: Any) -> List[AIStreamEvent]:
        return [AIStreamEvent(type=CONTENT_DONE, content=getattr(event, "content", None))]

    @staticmethod
    def _from_tool_arguments(event: Any) -> List[AIStreamEvent]:
        return [
            AIStreamEvent(
                type=event.type,
                tool_name=getattr(event, "name", None),
                tool_index=getattr(event, "index", None),
                tool_arguments=getattr(event, "arguments", None),
                arguments_delta=getattr(event, "arguments_delta", None),
                tool_call_id=getattr(event, "id", None),
            )
        ]

    @staticmethod
    def _from_chunk(event: Any) -> List[AIStreamEvent]:
        """Tool-call ids and finish reasons only appear on the raw chunks."""

        chunk = getattr(event, "chunk", None)
        events: List[AIStreamEvent] = []
        for choice in getattr(chunk, "choices", None) or ():
            delta = getattr(choice, "delta", None)
            for tool_call in getattr(delta, "tool_calls", None) or ():
                call_id = getattr(tool_call, "id", None)
                if not call_id:
                    continue
                events.append(
                    AIStreamEvent(
                        type=TOOL_CALL_STARTED,
                        tool_index=getattr(tool_call, "index", None),
                        tool_call_id=str(call_id),
                        tool_name=getattr(getattr(tool_call, "function", None), "name", None),
                    )
                )
            reason = getattr(choice, "finish_reason", None)
            if reason:
                events.append(AIStreamEvent(type=FINISHED, finish_reason=str(reason)))
        return events

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            LOGGER.debug("Chat payload for %s:\n%s", self._settings.model, json.dumps(payload, ensure_ascii=False, indent=2))
        except (TypeError, ValueError):
            LOGGER.debug("Chat payload for %s (not JSON-serializable): %r", self._settings.model, payload)

    async def aclose(self) -> None:
        """Release the underlying HTTP client."""

        closer = getattr(self._client, "close", None)
        if closer is None:
            return
        outcome = closer()
        if inspect.isawaitable(outcome):
            await outcome
