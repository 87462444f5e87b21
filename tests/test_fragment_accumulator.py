"""Tests for streamed tool-call reassembly."""

from __future__ import annotations

import threading

import pytest

from toolrelay.ai.orchestration.fragment_accumulator import (
    SLOT_KEY_OFFSET,
    FragmentAccumulator,
    StreamFragment,
)
from toolrelay.ai.orchestration.types import CALL_ID_KEY, RAW_ARGUMENTS_KEY


ARGUMENTS = '{"file_path": "docs/notes.txt", "limit": 20, "tags": ["a", "b"]}'


def _feed(accumulator: FragmentAccumulator, text: str, size: int, *, index: int = 0) -> None:
    for offset in range(0, len(text), size):
        accumulator.accumulate(StreamFragment(slot_index=index, arguments_delta=text[offset : offset + size]))


def test_split_arguments_reassemble_into_one_invocation() -> None:
    accumulator = FragmentAccumulator()
    accumulator.accumulate(StreamFragment(slot_index=0, id="call_1", name="read_file"))
    for piece in ('{"fi', 'le_path":', '"a.txt"}'):
        accumulator.accumulate(StreamFragment(slot_index=0, arguments_delta=piece))
    accumulator.accumulate(StreamFragment(finished=True, finish_reason="tool_calls"))

    (invocation,) = accumulator.drain_completed()

    assert invocation.tool_id == "read_file"
    assert invocation.call_id == "call_1"
    assert invocation.public_arguments() == {"file_path": "a.txt"}
    assert invocation.arguments[CALL_ID_KEY] == "call_1"
    assert len(accumulator) == 0


@pytest.mark.parametrize("size", range(1, len(ARGUMENTS) + 1))
def test_every_fragment_size_reassembles_identically(size: int) -> None:
    accumulator = FragmentAccumulator()
    accumulator.accumulate(StreamFragment(slot_index=0, name="read_file"))
    _feed(accumulator, ARGUMENTS, size)
    accumulator.accumulate(StreamFragment(finished=True))

    (invocation,) = accumulator.drain_completed()

    assert invocation.arguments == {"file_path": "docs/notes.txt", "limit": 20, "tags": ["a", "b"]}
    assert invocation.call_id is None


def test_interleaved_slots_are_kept_apart() -> None:
    accumulator = FragmentAccumulator()
    accumulator.accumulate(StreamFragment(slot_index=0, id="a", name="read_file"))
    accumulator.accumulate(StreamFragment(slot_index=1, id="b", name="list_directory"))
    accumulator.accumulate(StreamFragment(slot_index=1, arguments_delta='{"path": '))
    accumulator.accumulate(StreamFragment(slot_index=0, arguments_delta='{"file_path": '))
    accumulator.accumulate(StreamFragment(slot_index=0, arguments_delta='"x"}'))
    accumulator.accumulate(StreamFragment(slot_index=1, arguments_delta='"src"}'))
    accumulator.accumulate(StreamFragment(finished=True))

    first, second = accumulator.drain_completed()

    assert (first.tool_id, first.public_arguments()) == ("read_file", {"file_path": "x"})
    assert (second.tool_id, second.public_arguments()) == ("list_directory", {"path": "src"})


def test_slots_without_finish_are_not_drained() -> None:
    accumulator = FragmentAccumulator()
    accumulator.accumulate(StreamFragment(slot_index=0, name="read_file", arguments_delta='{"file_path": "a"}'))

    assert accumulator.drain_completed() == []
    (peeked,) = accumulator.peek_all(include_incomplete=True)
    assert peeked.public_arguments() == {"file_path": "a"}
    assert accumulator.peek_all() == []
    assert len(accumulator) == 1


def test_nameless_slot_is_never_drained() -> None:
    accumulator = FragmentAccumulator()
    accumulator.accumulate(StreamFragment(slot_index=0, arguments_delta='{"a": 1}'))
    accumulator.accumulate(StreamFragment(finished=True))

    assert accumulator.drain_completed() == []
    assert accumulator.stats().complete == 1


def test_name_change_after_complete_arguments_opens_new_slot() -> None:
    accumulator = FragmentAccumulator()
    accumulator.accumulate(StreamFragment(slot_index=0, id="first", name="read_file"))
    accumulator.accumulate(StreamFragment(slot_index=0, arguments_delta='{"file_path": "a"}'))
    accumulator.accumulate(StreamFragment(slot_index=0, id="second", name="write_file"))
    accumulator.accumulate(StreamFragment(slot_index=0, arguments_delta='{"file_path": "b", "content": "x"}'))

    assert accumulator.reassemble_text(0) == '{"file_path": "b", "content": "x"}'
    accumulator.accumulate(StreamFragment(finished=True))
    first, second = accumulator.drain_completed()

    assert (first.tool_id, first.call_id, first.public_arguments()) == ("read_file", "first", {"file_path": "a"})
    assert (second.tool_id, second.call_id) == ("write_file", "second")
    assert second.public_arguments() == {"file_path": "b", "content": "x"}


def test_name_change_with_partial_arguments_resets_buffer() -> None:
    accumulator = FragmentAccumulator()
    accumulator.accumulate(StreamFragment(slot_index=0, name="read_file", arguments_delta='{"file_pa'))
    accumulator.accumulate(StreamFragment(slot_index=0, name="write_file"))
    accumulator.accumulate(StreamFragment(slot_index=0, arguments_delta='{"content": "x"}'))
    accumulator.accumulate(StreamFragment(finished=True))

    (invocation,) = accumulator.drain_completed()

    assert invocation.tool_id == "write_file"
    assert invocation.public_arguments() == {"content": "x"}


def test_split_slot_uses_offset_key() -> None:
    accumulator = FragmentAccumulator()
    accumulator.accumulate(StreamFragment(slot_index=2, name="a", arguments_delta="{}"))
    accumulator.accumulate(StreamFragment(slot_index=2, name="b", arguments_delta="{}"))

    assert accumulator.stats().total == 2
    assert accumulator.reassemble_text(2) == "{}"
    assert SLOT_KEY_OFFSET == 1000


def test_unrecoverable_arguments_are_kept_raw() -> None:
    accumulator = FragmentAccumulator()
    accumulator.accumulate(StreamFragment(slot_index=0, name="bash", arguments_delta="[1, 2]"))
    accumulator.accumulate(StreamFragment(finished=True))

    (invocation,) = accumulator.drain_completed()

    assert invocation.arguments == {RAW_ARGUMENTS_KEY: "[1, 2]"}


def test_stats_and_clear() -> None:
    accumulator = FragmentAccumulator()
    accumulator.accumulate(StreamFragment(slot_index=0, name="a", arguments_delta="{"))
    accumulator.accumulate(StreamFragment(slot_index=0, arguments_delta="}"))
    accumulator.accumulate(StreamFragment(slot_index=1, name="b"))

    stats = accumulator.stats()
    assert (stats.total, stats.complete, stats.incomplete, stats.total_chunks) == (2, 0, 2, 3)
    assert stats.as_payload()["total"] == 2

    accumulator.clear()
    assert len(accumulator) == 0
    assert accumulator.reassemble_text(0) is None


def test_none_fragment_is_ignored() -> None:
    accumulator = FragmentAccumulator()
    accumulator.accumulate(None)

    assert len(accumulator) == 0


def test_producer_and_consumer_threads_share_accumulator() -> None:
    accumulator = FragmentAccumulator()
    drained: list = []

    def produce() -> None:
        for index in range(50):
            accumulator.accumulate(StreamFragment(slot_index=index, name=f"tool_{index}"))
            accumulator.accumulate(StreamFragment(slot_index=index, arguments_delta='{"n": %d}' % index))
        accumulator.accumulate(StreamFragment(finished=True))

    producer = threading.Thread(target=produce)
    producer.start()
    while producer.is_alive():
        accumulator.peek_all(include_incomplete=True)
    producer.join()
    drained.extend(accumulator.drain_completed())

    assert [invocation.arguments["n"] for invocation in drained] == list(range(50))
