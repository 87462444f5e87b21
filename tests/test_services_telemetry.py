"""Tests for the diagnostic sinks."""

from __future__ import annotations

import logging

import pytest

from toolrelay.ai.services.telemetry import (
    DiagnosticEvent,
    InMemoryDiagnosticSink,
    LoggingDiagnosticSink,
    snapshot_events,
)


def _event(name: str, index: int = 0) -> DiagnosticEvent:
    return DiagnosticEvent(name=name, turn_id="turn", payload={"index": index})


def test_ring_buffer_keeps_most_recent_events() -> None:
    sink = InMemoryDiagnosticSink(capacity=10)
    for index in range(15):
        sink.record(_event("tick", index))

    assert len(sink) == 10
    assert [event.payload["index"] for event in sink.tail(3)] == [12, 13, 14]
    assert sink.tail()[0].payload["index"] == 5


def test_capacity_has_a_floor() -> None:
    assert InMemoryDiagnosticSink(capacity=1).capacity == 10


def test_named_filters_events() -> None:
    sink = InMemoryDiagnosticSink()
    sink.record(_event("a"))
    sink.record(_event("b"))
    sink.record(_event("a", 1))

    assert [event.payload["index"] for event in sink.named("a")] == [0, 1]


def test_event_to_dict() -> None:
    payload = _event("orphan_dropped").to_dict()

    assert payload["name"] == "orphan_dropped"
    assert payload["turn_id"] == "turn"
    assert payload["correlation_id"] is None
    assert payload["payload"] == {"index": 0}


def test_snapshot_events() -> None:
    sink = InMemoryDiagnosticSink()
    sink.record(_event("a"))
    sink.record(_event("b"))

    assert [event.name for event in snapshot_events(sink, 1)] == ["b"]

    class _WriteOnly:
        def record(self, event: DiagnosticEvent) -> None:
            pass

    with pytest.raises(TypeError):
        snapshot_events(_WriteOnly())


def test_clear_empties_the_buffer() -> None:
    sink = InMemoryDiagnosticSink()
    sink.record(_event("a"))
    sink.clear()

    assert len(sink) == 0
    assert sink.tail(5) == []


def test_logging_sink_writes_one_line_per_event(caplog: pytest.LogCaptureFixture) -> None:
    sink = LoggingDiagnosticSink(logging.getLogger("toolrelay.test.diagnostics"), level=logging.INFO)
    event = DiagnosticEvent(
        name="tool_call_repaired",
        turn_id="abcdef123456",
        correlation_id="abcdef12-1",
        payload={"tool_id": "read_file"},
    )

    with caplog.at_level(logging.INFO, logger="toolrelay.test.diagnostics"):
        sink.record(event)

    (record,) = caplog.records
    assert record.getMessage() == "[abcdef12/abcdef12-1] tool_call_repaired tool_id='read_file'"


def test_logging_sink_skips_disabled_levels(caplog: pytest.LogCaptureFixture) -> None:
    sink = LoggingDiagnosticSink(logging.getLogger("toolrelay.test.quiet"), level=logging.DEBUG)

    with caplog.at_level(logging.WARNING, logger="toolrelay.test.quiet"):
        sink.record(_event("tick"))

    assert caplog.records == []
