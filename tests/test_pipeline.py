"""Tests for the turn pipeline wiring extraction, validation and history."""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Iterable, Mapping, Sequence

import pytest

from toolrelay.ai.client import AIStreamEvent
from toolrelay.ai.orchestration.fragment_accumulator import StreamFragment
from toolrelay.ai.orchestration.history import ConversationHistory
from toolrelay.ai.orchestration.output_limits import ToolOutputLimits
from toolrelay.ai.orchestration.pipeline import NATIVE_STRATEGY, ToolCallPipeline
from toolrelay.ai.orchestration.tool_call_parser import parsed_tool_call_id
from toolrelay.ai.orchestration.types import IssueCode, ParameterSpec, ParameterType, ToolInvocation, ToolSchema
from toolrelay.ai.services.telemetry import InMemoryDiagnosticSink
from toolrelay.ai.tools.registry import ToolSchemaRegistry
from toolrelay.ai.utils.json_tools import canonical_json
from toolrelay.services.settings import Settings


READ_FILE = ToolSchema(
    tool_id="read_file",
    parameters=(
        ParameterSpec("file_path", required=True),
        ParameterSpec("limit", ParameterType.INTEGER, minimum=1),
    ),
)
LIST_DIRECTORY = ToolSchema(tool_id="list_directory", parameters=(ParameterSpec("path", required=True),))


@pytest.fixture
def registry() -> ToolSchemaRegistry:
    return ToolSchemaRegistry([READ_FILE, LIST_DIRECTORY])


@pytest.fixture
def sink() -> InMemoryDiagnosticSink:
    return InMemoryDiagnosticSink()


def _tagged(name: str, arguments: Mapping[str, Any], prefix: str = "") -> str:
    payload = json.dumps({"name": name, "arguments": dict(arguments)})
    return f"{prefix}<tool_call>{payload}</tool_call>"


async def _events(items: Iterable[Any]) -> AsyncIterator[Any]:
    for item in items:
        await asyncio.sleep(0)
        yield item


def _content(text: str) -> AIStreamEvent:
    return AIStreamEvent(type="content.delta", content=text)


class _FakeModelClient:
    def __init__(self, events: Sequence[Any]) -> None:
        self._events = list(events)
        self.calls: list[dict[str, Any]] = []

    def stream_chat(self, messages: Sequence[Mapping[str, Any]], *, tools=None, **kwargs: Any) -> AsyncIterator[Any]:
        self.calls.append({"messages": list(messages), "tools": tools, **kwargs})
        return _events(self._events)


# -----------------------------------------------------------------------------
# Complete responses
# -----------------------------------------------------------------------------


def test_alias_argument_is_repaired_before_handoff(
    registry: ToolSchemaRegistry, sink: InMemoryDiagnosticSink
) -> None:
    pipeline = ToolCallPipeline(registry)
    context = pipeline.start_turn(model="gpt-4o", sinks=[sink])

    result = pipeline.process_response(_tagged("read_file", {"path": "a.txt"}, "Reading. "), context)

    (invocation,) = result.invocations
    assert invocation.public_arguments() == {"file_path": "a.txt"}
    assert result.text == "Reading."
    assert result.issues == []
    assert result.has_tool_calls
    assert not result.outcomes[0].valid
    (repaired_event,) = sink.named("tool_call_repaired")
    assert repaired_event.payload["remaining_errors"] == []
    (ready,) = sink.named("tool_call_ready")
    assert ready.payload["repaired"] is True
    assert ready.correlation_id == repaired_event.correlation_id


def test_parsed_call_ids_are_scoped_to_the_turn(registry: ToolSchemaRegistry) -> None:
    pipeline = ToolCallPipeline(registry)
    text = _tagged("read_file", {"file_path": "a.txt"})
    context = pipeline.start_turn()

    first = pipeline.process_response(text, context).invocations[0]
    again = pipeline.process_response(text, context).invocations[0]
    later = pipeline.process_response(text).invocations[0]

    expected = parsed_tool_call_id("read_file", 0, canonical_json({"file_path": "a.txt"}), scope=context.turn_id)
    assert first.call_id == expected
    assert again.call_id == expected
    assert later.call_id != expected


@pytest.mark.parametrize("answer_second", [True, False])
def test_repeated_call_across_turns_stays_paired(registry: ToolSchemaRegistry, answer_second: bool) -> None:
    pipeline = ToolCallPipeline(registry)
    text = _tagged("read_file", {"file_path": "a.txt"})

    first = pipeline.process_response(text, pipeline.start_turn())
    pipeline.record_assistant(first)
    pipeline.record_tool_result(first.invocations[0], "contents")
    second = pipeline.process_response(text, pipeline.start_turn())
    pipeline.record_assistant(second)
    if answer_second:
        pipeline.record_tool_result(second.invocations[0], "contents again")

    view = pipeline.history.build_request_view()

    assert first.invocations[0].call_id != second.invocations[0].call_id
    expected = [first.invocations[0].call_id] + ([second.invocations[0].call_id] if answer_second else [])
    assert [entry.tool_call_id for entry in view if entry.role == "tool"] == expected
    assert [call_id for entry in view for call_id in entry.call_ids] == expected


def test_unknown_tool_is_skipped(registry: ToolSchemaRegistry, sink: InMemoryDiagnosticSink) -> None:
    pipeline = ToolCallPipeline(registry)
    context = pipeline.start_turn(sinks=[sink])
    text = _tagged("delete_everything", {}) + _tagged("list_directory", {"path": "."})

    result = pipeline.process_response(text, context)

    assert [call.tool_id for call in result.invocations] == ["list_directory"]
    assert [issue.code for issue in result.issues] == [IssueCode.UNKNOWN_TOOL]
    assert len(sink.named("tool_call_ready")) == 1


def test_uncoercible_optional_argument_is_dropped_by_repair(registry: ToolSchemaRegistry) -> None:
    pipeline = ToolCallPipeline(registry)

    result = pipeline.process_response(_tagged("read_file", {"file_path": "a.txt", "limit": "lots"}))

    (invocation,) = result.invocations
    assert "limit" not in invocation.arguments
    assert result.issues == []


def test_text_without_calls(registry: ToolSchemaRegistry) -> None:
    result = ToolCallPipeline(registry).process_response("Nothing to do here.")

    assert result.text == "Nothing to do here."
    assert not result.has_tool_calls
    assert result.strategy is None


# -----------------------------------------------------------------------------
# Streams
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_native_fragments_are_assembled(registry: ToolSchemaRegistry, sink: InMemoryDiagnosticSink) -> None:
    pipeline = ToolCallPipeline(registry)
    context = pipeline.start_turn(sinks=[sink])
    events = [
        _content("Reading "),
        _content("now."),
        StreamFragment(slot_index=0, id="call_1", name="read_file", arguments_delta='{"file_'),
        StreamFragment(slot_index=0, arguments_delta='path": "a.txt"}'),
        AIStreamEvent(type="tool_calls.started", tool_index=1, tool_call_id="call_2", tool_name="list_directory"),
        AIStreamEvent(type="tool_calls.function.arguments.delta", tool_index=1, arguments_delta='{"path": "."}'),
        AIStreamEvent(type="finished", finish_reason="tool_calls"),
    ]

    result = await pipeline.consume_stream(_events(events), context)

    assert result.strategy == NATIVE_STRATEGY
    assert result.text == "Reading now."
    assert [(call.tool_id, call.call_id) for call in result.invocations] == [
        ("read_file", "call_1"),
        ("list_directory", "call_2"),
    ]
    (assembled,) = sink.named("stream_assembled")
    assert assembled.payload == {"calls": 2, "chars": len("Reading now.")}


@pytest.mark.asyncio
async def test_stream_without_native_calls_falls_back_to_text(registry: ToolSchemaRegistry) -> None:
    pipeline = ToolCallPipeline(registry)
    text = _tagged("list_directory", {"path": "src"})
    events = [_content(text[:10]), _content(text[10:]), AIStreamEvent(type="finished", finish_reason="stop")]

    result = await pipeline.consume_stream(_events(events))

    (invocation,) = result.invocations
    assert invocation.tool_id == "list_directory"
    assert result.strategy == "tagged"
    assert invocation.call_id is not None and invocation.call_id.startswith("parsed_list_directory_0_")


@pytest.mark.asyncio
async def test_cancellation_discards_partial_calls(
    registry: ToolSchemaRegistry, sink: InMemoryDiagnosticSink
) -> None:
    pipeline = ToolCallPipeline(registry)
    context = pipeline.start_turn(sinks=[sink])
    cancel = asyncio.Event()

    async def _stream() -> AsyncIterator[StreamFragment]:
        yield StreamFragment(slot_index=0, id="call_1", name="read_file", arguments_delta='{"file_')
        cancel.set()
        yield StreamFragment(slot_index=0, arguments_delta='path": "a.txt"}')
        yield StreamFragment(finished=True)

    result = await pipeline.consume_stream(_stream(), context, cancel)

    assert result.cancelled
    assert result.invocations == []
    (event,) = sink.named("turn_cancelled")
    assert event.payload["total"] == 1
    assert event.payload["incomplete"] == 1


# -----------------------------------------------------------------------------
# History recording
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_request_records_prompt_and_reply(registry: ToolSchemaRegistry) -> None:
    pipeline = ToolCallPipeline(registry, history=ConversationHistory("Be brief."))
    client = _FakeModelClient([
        StreamFragment(slot_index=0, id="call_1", name="read_file", arguments_delta='{"file_path": "a.txt"}'),
    ])

    result = await pipeline.request(client, "read a.txt", temperature=0.0)

    (call,) = client.calls
    assert [message["role"] for message in call["messages"]] == ["system", "user"]
    assert [tool["function"]["name"] for tool in call["tools"]] == ["list_directory", "read_file"]
    assert call["temperature"] == 0.0
    entries = pipeline.history.entries()
    assert [entry.role for entry in entries] == ["user", "assistant"]
    assert entries[1].call_ids == ("call_1",)

    pipeline.record_tool_result(result.invocations[0], "hello")
    assert pipeline.history.entries()[-1].tool_call_id == "call_1"


@pytest.mark.asyncio
async def test_cancelled_request_records_nothing(registry: ToolSchemaRegistry) -> None:
    pipeline = ToolCallPipeline(registry)
    cancel = asyncio.Event()
    cancel.set()

    result = await pipeline.request(_FakeModelClient([_content("hi")]), "hello", cancel_event=cancel)

    assert result.cancelled
    assert [entry.role for entry in pipeline.history.entries()] == ["user"]


def test_tool_result_output_limits(registry: ToolSchemaRegistry, sink: InMemoryDiagnosticSink) -> None:
    pipeline = ToolCallPipeline(registry, output_limits=ToolOutputLimits({"read_file": 100}))
    context = pipeline.start_turn(sinks=[sink])
    invocation = ToolInvocation("read_file", {"file_path": "a.txt"}, "call_1")

    entry = pipeline.record_tool_result(invocation, "x" * 500, context=context)

    assert entry.content.startswith("x" * 100)
    assert "[Output truncated - 400 characters omitted. Tool: read_file]" in entry.content
    (event,) = sink.named(IssueCode.OUTPUT_TRUNCATED)
    assert event.payload["omitted_chars"] == 400
    assert event.payload["limit"] == 100


def test_tool_result_requires_call_id(registry: ToolSchemaRegistry) -> None:
    pipeline = ToolCallPipeline(registry)

    with pytest.raises(ValueError):
        pipeline.record_tool_result(ToolInvocation("read_file", {"file_path": "a.txt"}), "hello")


def test_history_events_are_routed_to_the_turn(registry: ToolSchemaRegistry, sink: InMemoryDiagnosticSink) -> None:
    pipeline = ToolCallPipeline(registry, history=ConversationHistory(max_tool_result_chars=10))
    context = pipeline.start_turn(sinks=[sink])

    pipeline.record_tool_result(ToolInvocation("read_file", {}, "call_1"), "y" * 25)

    (event,) = sink.named("tool_result_truncated")
    assert event.turn_id == context.turn_id
    assert event.payload["dropped_chars"] == 15


def test_from_settings(registry: ToolSchemaRegistry) -> None:
    limited = ToolCallPipeline.from_settings(
        Settings(system_prompt="sys", tool_output_limits={"read_file": 50}), registry
    )
    unlimited = ToolCallPipeline.from_settings(
        Settings(limit_tool_output=False, max_tool_result_chars=3000), registry
    )
    invocation = ToolInvocation("read_file", {}, "call_1")

    assert limited.history.system_prompt == "sys"
    assert limited.record_tool_result(invocation, "z" * 400).content.startswith("z" * 50 + "\n\n[Output truncated")
    assert unlimited.record_tool_result(invocation, "z" * 400).content == "z" * 400
