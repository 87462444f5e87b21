"""Serialization of the history request view into chat-completion messages."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence, cast

from openai.types.chat import ChatCompletionMessageParam

from ..utils.tokens import estimate_tokens
from .history import ConversationHistory
from .types import HistoryEntry

__all__ = ["MessageBuilder", "MessagePlan"]

LOGGER = logging.getLogger(__name__)
_ROLE_OVERHEAD_TOKENS = 4


@dataclass(slots=True)
class MessagePlan:
    """Messages ready for the model client plus their estimated size."""

    messages: list[ChatCompletionMessageParam] = field(default_factory=list)
    prompt_tokens: int = 0


class MessageBuilder:
    """Turns a :class:`ConversationHistory` into OpenAI chat messages.

    Assistant entries carry their tool-call descriptors (id, name and JSON
    arguments) and tool entries reference the call they answer, which is the
    shape OpenAI-compatible endpoints expect.
    """

    def __init__(self, history: ConversationHistory) -> None:
        self._history = history

    @property
    def history(self) -> ConversationHistory:
        return self._history

    def build_messages(self, prompt: str | None = None) -> MessagePlan:
        """Build the message list for the next request.

        Args:
            prompt: Optional user prompt appended to the history first.

        Returns:
            MessagePlan with the serialized messages and a token estimate.
        """
        if prompt:
            self._history.append_user(prompt)
        view = self._history.build_request_view()
        messages: list[ChatCompletionMessageParam] = []
        system_prompt = self._history.system_prompt
        if system_prompt:
            messages.append(cast(ChatCompletionMessageParam, {"role": "system", "content": system_prompt}))
        messages.extend(self.serialize_entries(view))
        prompt_tokens = sum(self.estimate_message_tokens(message) for message in messages)
        LOGGER.debug("Built %d message(s), ~%d prompt tokens", len(messages), prompt_tokens)
        return MessagePlan(messages=messages, prompt_tokens=prompt_tokens)

    def serialize_entries(self, entries: Sequence[HistoryEntry]) -> list[ChatCompletionMessageParam]:
        return [self.serialize_entry(entry) for entry in entries]

    @staticmethod
    def serialize_entry(entry: HistoryEntry) -> ChatCompletionMessageParam:
        if entry.role == "tool":
            payload: dict[str, Any] = {
                "role": "tool",
                "tool_call_id": entry.tool_call_id or "",
                "content": entry.content,
            }
        elif entry.role == "assistant":
            payload = {"role": "assistant", "content": entry.content or None}
            if entry.tool_calls:
                payload["tool_calls"] = [call.to_openai_tool_call() for call in entry.tool_calls]
            elif not entry.content:
                payload["content"] = ""
        else:
            payload = {"role": "user", "content": entry.content}
        return cast(ChatCompletionMessageParam, payload)

    @staticmethod
    def estimate_message_tokens(message: Mapping[str, Any]) -> int:
        """Estimate tokens for one serialized message including role overhead."""

        tokens = estimate_tokens(str(message.get("content") or ""))
        for call in message.get("tool_calls") or ():
            function = call.get("function", {})
            tokens += estimate_tokens(function.get("name", "")) + estimate_tokens(function.get("arguments", ""))
        if message.get("role"):
            tokens += _ROLE_OVERHEAD_TOKENS
        return tokens
