"""Unit tests for streaming primitives."""

import asyncio

import pytest

from cadenza.errors import Cancelled, TransportError
from cadenza.events import ChunkEvent, CompleteEvent, ErrorEvent, ToolCallBatchEvent
from cadenza.message import ToolCall, ToolMetadata
from cadenza.streaming import (
    StreamHandlers,
    ToolCallAccumulator,
    ToolCallFragment,
    dispatch_events,
    iterate_until_aborted,
)


async def _events(*events):
    for event in events:
        yield event


class TestToolCallAccumulator:
    def test_single_call_with_full_arguments(self):
        acc = ToolCallAccumulator()
        acc.start("item_1", call_id="c1", name="web_fetch")
        acc.finish("item_1", arguments='{"url": "https://example.com"}')
        result = acc.finalize()

        assert result == [ToolCall(id="c1", namespaced_tool_name="web_fetch", args={"url": "https://example.com"})]

    def test_arguments_accumulated_across_deltas(self):
        acc = ToolCallAccumulator()
        acc.start("item_1", call_id="c1", name="terminal_read_file")
        acc.append("item_1", '{"pa')
        acc.append("item_1", 'th": "/tmp/a"}')
        acc.finish("item_1")

        assert acc.finalize()[0].args == {"path": "/tmp/a"}

    def test_finish_arguments_replace_deltas(self):
        acc = ToolCallAccumulator()
        acc.start("item_1", call_id="c1", name="web_search")
        acc.append("item_1", '{"query": "ca')
        acc.finish("item_1", arguments='{"query": "cats"}')

        assert acc.finalize()[0].args == {"query": "cats"}

    def test_deltas_after_finish_are_ignored(self):
        acc = ToolCallAccumulator()
        acc.start(0, call_id="c1", name="web_search")
        acc.finish(0, arguments='{"query": "cats"}')
        acc.append(0, "garbage")

        assert acc.finalize()[0].args == {"query": "cats"}

    def test_unfinished_call_is_dropped(self):
        acc = ToolCallAccumulator()
        acc.start(0, call_id="c1", name="web_search")
        acc.append(0, '{"query": "cats"}')

        assert acc.finalize() == []

    def test_invalid_json_is_dropped(self):
        acc = ToolCallAccumulator()
        acc.start(0, call_id="bad", name="web_search")
        acc.finish(0, arguments='{"query": ')
        acc.start(1, call_id="good", name="web_search")
        acc.finish(1, arguments='{"query": "dogs"}')

        result = acc.finalize()
        assert [c.id for c in result] == ["good"]

    def test_non_object_arguments_are_dropped(self):
        acc = ToolCallAccumulator()
        acc.start(0, call_id="c1", name="web_search")
        acc.finish(0, arguments='["a", "b"]')

        assert acc.finalize() == []

    def test_empty_arguments_become_empty_object(self):
        acc = ToolCallAccumulator()
        acc.start(0, call_id="c1", name="terminal_list_sessions")
        acc.finish(0)

        assert acc.finalize()[0].args == {}

    def test_missing_call_id_falls_back_to_key(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallFragment(key=3, name="web_search", arguments_delta="{}"))
        acc.finish_all()

        assert acc.finalize()[0].id == "3"

    def test_concurrent_fragments_keep_start_order(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallFragment(key=1, call_id="c2", name="b", arguments_delta='{"y":'))
        acc.feed(ToolCallFragment(key=0, call_id="c1", name="a", arguments_delta='{"x":'))
        acc.feed(ToolCallFragment(key=0, arguments_delta=" 1}"))
        acc.feed(ToolCallFragment(key=1, arguments_delta=" 2}"))
        acc.finish_all()
        result = acc.finalize()

        assert [(c.id, c.args) for c in result] == [("c2", {"y": 2}), ("c1", {"x": 1})]

    def test_fragments_without_index_keyed_by_id(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallFragment(key=None, call_id="call_a", name="web_search", arguments_delta='{"query": "a"}'))
        acc.feed(ToolCallFragment(key=None, call_id="call_b", name="web_search", arguments_delta='{"query": "b"}'))
        acc.finish_all()

        assert [(c.id, c.args) for c in acc.finalize()] == [
            ("call_a", {"query": "a"}),
            ("call_b", {"query": "b"}),
        ]

    def test_fragment_without_index_or_id_continues_last_call(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallFragment(key=None, call_id="call_a", name="web_search", arguments_delta='{"que'))
        acc.feed(ToolCallFragment(key=None, arguments_delta='ry": "a"}'))
        acc.finish_all()

        assert acc.finalize()[0].args == {"query": "a"}

    def test_orphan_fragment_is_ignored(self):
        acc = ToolCallAccumulator()
        acc.feed(ToolCallFragment(key=None, arguments_delta="{}"))
        acc.finish_all()

        assert acc.finalize() == []

    def test_append_to_unknown_key_is_ignored(self):
        acc = ToolCallAccumulator()
        acc.append("nope", "{}")
        assert acc.finalize() == []

    def test_metadata_attached_by_name(self):
        meta = ToolMetadata(description="Fetch a URL", input_schema={"type": "object"})
        acc = ToolCallAccumulator({"web_fetch": meta})
        acc.finish("i", arguments="{}", call_id="c1", name="web_fetch")

        assert acc.finalize()[0].tool_metadata == meta

    def test_empty_accumulator(self):
        assert ToolCallAccumulator().finalize() == []


class TestDispatchEvents:
    @pytest.mark.asyncio
    async def test_callbacks_receive_chunks_and_completion(self):
        chunks, completions = [], []
        call = ToolCall(id="c1", namespaced_tool_name="web_search", args={"query": "x"})
        handlers = StreamHandlers(
            on_chunk=chunks.append,
            on_complete=lambda citations, calls: completions.append((citations, calls)),
        )

        await dispatch_events(
            _events(
                ChunkEvent(text="Hel"),
                ChunkEvent(text="lo"),
                ToolCallBatchEvent(calls=[call]),
                CompleteEvent(has_tool_calls=True, citations=["https://a"]),
            ),
            handlers,
        )

        assert chunks == ["Hel", "lo"]
        assert completions == [(["https://a"], [call])]

    @pytest.mark.asyncio
    async def test_complete_without_tools_passes_none(self):
        completions = []
        handlers = StreamHandlers(on_chunk=lambda _: None, on_complete=lambda *a: completions.append(a))

        await dispatch_events(_events(CompleteEvent()), handlers)

        assert completions == [(None, None)]

    @pytest.mark.asyncio
    async def test_async_callbacks_are_awaited(self):
        seen = []

        async def on_chunk(text):
            await asyncio.sleep(0)
            seen.append(text)

        handlers = StreamHandlers(on_chunk=on_chunk, on_complete=lambda *a: None)
        await dispatch_events(_events(ChunkEvent(text="a"), CompleteEvent()), handlers)

        assert seen == ["a"]

    @pytest.mark.asyncio
    async def test_error_without_handler_raises(self):
        handlers = StreamHandlers(on_chunk=lambda _: None, on_complete=lambda *a: None)

        with pytest.raises(TransportError, match="boom"):
            await dispatch_events(_events(ErrorEvent(message="boom")), handlers)

    @pytest.mark.asyncio
    async def test_error_handler_stops_dispatch(self):
        errors, chunks = [], []
        handlers = StreamHandlers(on_chunk=chunks.append, on_complete=lambda *a: None, on_error=errors.append)

        await dispatch_events(_events(ErrorEvent(message="boom"), ChunkEvent(text="late")), handlers)

        assert errors == ["boom"]
        assert chunks == []


class TestIterateUntilAborted:
    @pytest.mark.asyncio
    async def test_passes_through_without_abort(self):
        events = [e async for e in iterate_until_aborted(_events(ChunkEvent(text="a")), None)]
        assert events == [ChunkEvent(text="a")]

    @pytest.mark.asyncio
    async def test_abort_interrupts_pending_read(self):
        abort = asyncio.Event()
        closed = asyncio.Event()

        async def slow():
            try:
                yield ChunkEvent(text="first")
                await asyncio.Event().wait()
            finally:
                closed.set()

        received = []

        async def consume():
            async for event in iterate_until_aborted(slow(), abort):
                received.append(event)
                abort.set()

        with pytest.raises(Cancelled):
            await consume()
        assert received == [ChunkEvent(text="first")]
        assert closed.is_set()

    @pytest.mark.asyncio
    async def test_already_aborted_yields_nothing(self):
        abort = asyncio.Event()
        abort.set()

        with pytest.raises(Cancelled):
            async for _ in iterate_until_aborted(_events(ChunkEvent(text="a")), abort):
                pass
