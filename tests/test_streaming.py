"""Tests for SSE decoding, canonical events, delta batching and StreamChannel."""

from __future__ import annotations

import json

import pytest

from writeflow.agent.events import AIResponseMessage, CharacterDelta, SystemMessage
from writeflow.agent.streaming import (
    DeltaBatcher,
    SSEDecoder,
    StopReason,
    StreamChannel,
    StreamError,
    TextDelta,
    ToolCallAccumulator,
    ToolCallDelta,
    UsageUpdate,
    collect_stream,
    decode_anthropic_event,
    decode_openai_chunk,
    iter_sse_events,
)
from writeflow.infra.errors import StreamDecodeError


async def _aiter(items):
    for item in items:
        yield item


def _openai_frame(payload: dict) -> bytes:
    return f"data: {json.dumps(payload)}\n\n".encode()


class TestSSEDecoder:
    def test_single_frame(self) -> None:
        frames = SSEDecoder().feed(b'data: {"a": 1}\n\n')
        assert len(frames) == 1
        assert frames[0].data == '{"a": 1}'
        assert frames[0].event is None

    def test_partial_lines_buffered_across_chunks(self) -> None:
        decoder = SSEDecoder()
        assert decoder.feed(b'data: {"te') == []
        assert decoder.feed(b'xt": "hi"}') == []
        frames = decoder.feed(b"\n\n")
        assert [f.data for f in frames] == ['{"text": "hi"}']

    def test_multibyte_split_across_chunks(self) -> None:
        raw = 'data: {"t": "你好"}\n\n'.encode()
        split = raw.index("好".encode()) + 1  # inside the 3-byte sequence
        decoder = SSEDecoder()
        frames = decoder.feed(raw[:split]) + decoder.feed(raw[split:])
        assert json.loads(frames[0].data) == {"t": "你好"}

    def test_multiline_data_joined(self) -> None:
        frames = SSEDecoder().feed(b"data: line1\ndata: line2\n\n")
        assert frames[0].data == "line1\nline2"

    def test_comments_ignored_and_event_name_kept(self) -> None:
        frames = SSEDecoder().feed(b": keep-alive\nevent: message_start\ndata: {}\n\n")
        assert len(frames) == 1
        assert frames[0].event == "message_start"
        assert frames[0].data == "{}"

    def test_crlf_lines(self) -> None:
        frames = SSEDecoder().feed(b"data: x\r\n\r\n")
        assert frames[0].data == "x"

    def test_done_sentinel(self) -> None:
        frames = SSEDecoder().feed(b"data: [DONE]\n\n")
        assert frames[0].is_done

    def test_close_flushes_unterminated_frame(self) -> None:
        decoder = SSEDecoder()
        assert decoder.feed(b"data: tail") == []
        frames = decoder.close()
        assert [f.data for f in frames] == ["tail"]


class TestOpenAIChunks:
    def test_text_and_finish(self) -> None:
        events = decode_openai_chunk(
            {"choices": [{"delta": {"content": "Hi"}, "finish_reason": "stop"}]}
        )
        assert events == [TextDelta("Hi"), StopReason("stop")]

    def test_tool_call_fragment(self) -> None:
        events = decode_openai_chunk({"choices": [{"delta": {"tool_calls": [
            {"index": 0, "id": "call_1", "function": {"name": "Read", "arguments": '{"fi'}},
        ]}}]})
        assert events == [ToolCallDelta(index=0, id="call_1", name="Read", arguments='{"fi')]

    def test_usage(self) -> None:
        events = decode_openai_chunk(
            {"choices": [], "usage": {"prompt_tokens": 7, "completion_tokens": 3}}
        )
        assert events == [UsageUpdate(input_tokens=7, output_tokens=3)]

    def test_error_payload(self) -> None:
        events = decode_openai_chunk({"error": {"message": "overloaded"}})
        assert events == [StreamError("overloaded")]


class TestAnthropicEvents:
    def test_message_start_usage(self) -> None:
        events = decode_anthropic_event({
            "type": "message_start",
            "message": {"usage": {"input_tokens": 12, "output_tokens": 1}},
        })
        assert events == [UsageUpdate(input_tokens=12, output_tokens=1)]

    def test_text_delta(self) -> None:
        events = decode_anthropic_event({
            "type": "content_block_delta", "index": 0,
            "delta": {"type": "text_delta", "text": "Hello"},
        })
        assert events == [TextDelta("Hello")]

    def test_tool_use_start_and_json_delta(self) -> None:
        start = decode_anthropic_event({
            "type": "content_block_start", "index": 1,
            "content_block": {"type": "tool_use", "id": "toolu_1", "name": "Read", "input": {}},
        })
        delta = decode_anthropic_event({
            "type": "content_block_delta", "index": 1,
            "delta": {"type": "input_json_delta", "partial_json": '{"file_path":'},
        })
        assert start == [ToolCallDelta(index=1, id="toolu_1", name="Read")]
        assert delta == [ToolCallDelta(index=1, arguments='{"file_path":')]

    def test_message_delta_stop_and_usage(self) -> None:
        events = decode_anthropic_event({
            "type": "message_delta",
            "delta": {"stop_reason": "end_turn"},
            "usage": {"output_tokens": 42},
        })
        assert events == [StopReason("end_turn"), UsageUpdate(input_tokens=None, output_tokens=42)]

    def test_ping_and_stop_are_silent(self) -> None:
        assert decode_anthropic_event({"type": "ping"}) == []
        assert decode_anthropic_event({"type": "message_stop"}) == []
        assert decode_anthropic_event({"type": "content_block_stop", "index": 0}) == []

    def test_error_event(self) -> None:
        events = decode_anthropic_event(
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}
        )
        assert events == [StreamError("Overloaded")]


class TestIterSSEEvents:
    @pytest.mark.asyncio()
    async def test_hi_scenario(self) -> None:
        chunks = [
            _openai_frame({"choices": [{"delta": {"content": "H"}}]}),
            _openai_frame({"choices": [{"delta": {"content": "i"}}]}),
            b"data: [DONE]\n\n",
        ]
        deltas: list[str] = []
        turn = await collect_stream(
            iter_sse_events(_aiter(chunks), decode_openai_chunk),
            model="gpt-4o", on_delta=deltas.append,
        )
        assert deltas == ["H", "i"]
        assert turn.content == "Hi"
        assert turn.model == "gpt-4o"

    @pytest.mark.asyncio()
    async def test_stops_at_done(self) -> None:
        chunks = [
            _openai_frame({"choices": [{"delta": {"content": "a"}}]})
            + b"data: [DONE]\n\n"
            + _openai_frame({"choices": [{"delta": {"content": "ignored"}}]}),
        ]
        events = [e async for e in iter_sse_events(_aiter(chunks), decode_openai_chunk)]
        assert events == [TextDelta("a")]

    @pytest.mark.asyncio()
    async def test_non_json_frame_skipped(self) -> None:
        chunks = [b"data: not-json\n\n", _openai_frame({"choices": [{"delta": {"content": "ok"}}]})]
        events = [e async for e in iter_sse_events(_aiter(chunks), decode_openai_chunk)]
        assert events == [TextDelta("ok")]

    @pytest.mark.asyncio()
    async def test_stream_error_raises(self) -> None:
        with pytest.raises(StreamDecodeError, match="boom"):
            await collect_stream(_aiter([StreamError("boom")]), model="m")

    @pytest.mark.asyncio()
    async def test_collect_usage_and_tool_calls(self) -> None:
        events = [
            UsageUpdate(input_tokens=10),
            ToolCallDelta(index=0, id="call_a", name="Grep", arguments='{"pattern":'),
            ToolCallDelta(index=0, arguments=' "x"}'),
            UsageUpdate(output_tokens=4),
            StopReason("tool_calls"),
        ]
        turn = await collect_stream(_aiter(events), model="m")
        assert turn.usage.input_tokens == 10
        assert turn.usage.output_tokens == 4
        assert turn.stop_reason == "tool_calls"
        assert len(turn.tool_calls) == 1
        assert turn.tool_calls[0].call_id == "call_a"
        assert turn.tool_calls[0].parameters == '{"pattern": "x"}'


class TestToolCallAccumulator:
    def test_index_fragments_accumulate(self) -> None:
        acc = ToolCallAccumulator()
        acc.add(ToolCallDelta(index=0, id="call_1", name="Read", arguments='{"file_path":"'))
        acc.add(ToolCallDelta(index=1, id="call_2", name="Glob", arguments='{"pattern":"*"}'))
        acc.add(ToolCallDelta(index=0, arguments='a.md"}'))
        calls = acc.tool_calls()
        assert [c.call_id for c in calls] == ["call_1", "call_2"]
        assert calls[0].parameters == '{"file_path":"a.md"}'

    def test_null_index_new_id_opens_slot(self) -> None:
        acc = ToolCallAccumulator()
        acc.add(ToolCallDelta(index=None, id="fc-1", name="Read", arguments='{"file_path":"a"}'))
        acc.add(ToolCallDelta(index=None, id="fc-2", name="Read", arguments='{"file_path":"b"}'))
        calls = acc.tool_calls()
        assert len(calls) == 2
        assert calls[1].parameters == '{"file_path":"b"}'

    def test_missing_id_and_args_defaulted(self) -> None:
        acc = ToolCallAccumulator()
        acc.add(ToolCallDelta(index=0, name="todo_read"))
        [call] = acc.tool_calls()
        assert call.call_id == "call_0"
        assert call.parameters == "{}"
        assert acc


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestDeltaBatcher:
    def test_flushes_at_max_pieces(self) -> None:
        out: list[str] = []
        clock = _FakeClock()
        batcher = DeltaBatcher(out.append, flush_interval_ms=8, max_pieces=5, clock=clock)
        for ch in "abcd":
            batcher.push(ch)
        assert out == []
        assert batcher.pending == 4
        batcher.push("e")
        assert out == ["abcde"]
        assert batcher.pending == 0

    def test_flushes_after_interval(self) -> None:
        out: list[str] = []
        clock = _FakeClock()
        batcher = DeltaBatcher(out.append, flush_interval_ms=8, max_pieces=5, clock=clock)
        batcher.push("a")
        clock.now = 0.004
        batcher.push("b")
        assert out == []
        clock.now = 0.009
        batcher.push("c")
        assert out == ["abc"]

    def test_final_flush_and_empty_pushes(self) -> None:
        out: list[str] = []
        batcher = DeltaBatcher(out.append, clock=_FakeClock())
        batcher.push("")
        batcher.flush()
        assert out == []
        batcher.push("x")
        batcher.flush()
        assert out == ["x"]


class TestStreamChannel:
    @pytest.mark.asyncio()
    async def test_order_preserved_and_deltas_flushed_before_emit(self) -> None:
        channel = StreamChannel(max_pieces=100, flush_interval_ms=10_000)
        channel.emit(SystemMessage("start"))
        channel.push_text("Hel")
        channel.push_text("lo")
        channel.emit(AIResponseMessage(content="Hello"))
        channel.close()

        messages = [m async for m in channel]
        assert [m.type for m in messages] == ["system", "character_delta", "ai_response"]
        assert messages[1] == CharacterDelta("Hello")

    @pytest.mark.asyncio()
    async def test_token_callback_sees_same_text(self) -> None:
        tokens: list[str] = []
        channel = StreamChannel(on_token=tokens.append, max_pieces=2)
        for piece in ["a", "b", "c", "d", "e"]:
            channel.push_text(piece)
        channel.close()

        deltas = [m.text async for m in channel if m.type == "character_delta"]
        assert "".join(deltas) == "abcde"
        assert "".join(tokens) == "abcde"
        assert channel.delivered_text == "abcde"

    @pytest.mark.asyncio()
    async def test_failing_token_callback_does_not_break_stream(self) -> None:
        def explode(_text: str) -> None:
            raise RuntimeError("ui gone")

        channel = StreamChannel(on_token=explode, max_pieces=1)
        channel.push_text("x")
        channel.close()
        assert [m.text async for m in channel] == ["x"]

    @pytest.mark.asyncio()
    async def test_push_after_close_ignored(self) -> None:
        channel = StreamChannel()
        channel.close()
        channel.push_text("late")
        channel.emit(SystemMessage("late"))
        assert channel.closed
        assert [m async for m in channel] == []
