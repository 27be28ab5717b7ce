"""SSE decoding, canonical stream events, delta batching and the stream channel.

Byte flow: HTTP body chunks → SSEDecoder (frames) → provider-specific
decode_* (canonical events) → collect_stream (ProviderTurn) while text
deltas fan out to a StreamChannel that batches them for consumers.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

import structlog

from writeflow.agent.events import CharacterDelta, StreamMessage
from writeflow.agent.models import ProviderTurn, TokenUsage, ToolCall
from writeflow.infra.errors import StreamDecodeError

logger = structlog.get_logger()

DONE_SENTINEL = "[DONE]"


# ── SSE framing ──


@dataclass
class SSEFrame:
    """One dispatched SSE event: optional event name plus joined data lines."""

    data: str
    event: str | None = None

    @property
    def is_done(self) -> bool:
        return self.data.strip() == DONE_SENTINEL


class SSEDecoder:
    """Incremental SSE decoder.

    Decodes UTF-8 incrementally (multibyte characters may straddle chunks),
    buffers partial lines across chunk boundaries and dispatches a frame on
    each blank line.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._event: str | None = None
        self._data: list[str] = []

    def feed(self, chunk: bytes) -> list[SSEFrame]:
        return self._consume(self._decoder.decode(chunk))

    def close(self) -> list[SSEFrame]:
        """Flush the decoder and any unterminated trailing frame."""
        frames = self._consume(self._decoder.decode(b"", final=True))
        if self._buffer:
            frames.extend(self._process_line(self._buffer.rstrip("\r")))
            self._buffer = ""
        frames.extend(self._dispatch())
        return frames

    def _consume(self, text: str) -> list[SSEFrame]:
        self._buffer += text
        frames: list[SSEFrame] = []
        while True:
            idx = self._buffer.find("\n")
            if idx < 0:
                break
            line = self._buffer[:idx].rstrip("\r")
            self._buffer = self._buffer[idx + 1:]
            frames.extend(self._process_line(line))
        return frames

    def _process_line(self, line: str) -> list[SSEFrame]:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return []
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value
        return []

    def _dispatch(self) -> list[SSEFrame]:
        if not self._data:
            self._event = None
            return []
        frame = SSEFrame(data="\n".join(self._data), event=self._event)
        self._data = []
        self._event = None
        return [frame]


# ── Canonical events ──


@dataclass
class TextDelta:
    text: str


@dataclass
class ToolCallDelta:
    """Fragment of a streamed tool call. arguments is a partial JSON string."""

    index: int | None
    id: str | None = None
    name: str | None = None
    arguments: str = ""


@dataclass
class UsageUpdate:
    """Token counts reported mid-stream. None means "not reported in this event"."""

    input_tokens: int | None = None
    output_tokens: int | None = None


@dataclass
class StopReason:
    reason: str


@dataclass
class StreamError:
    message: str


StreamEvent = TextDelta | ToolCallDelta | UsageUpdate | StopReason | StreamError


def decode_openai_chunk(payload: dict) -> list[StreamEvent]:
    """Map one Chat Completions chunk to canonical events."""
    events: list[StreamEvent] = []
    if payload.get("error"):
        err = payload["error"]
        message = err.get("message", str(err)) if isinstance(err, dict) else str(err)
        return [StreamError(message=message)]

    choices = payload.get("choices") or []
    if choices:
        choice = choices[0]
        delta = choice.get("delta") or {}
        if delta.get("content"):
            events.append(TextDelta(text=delta["content"]))
        for tc in delta.get("tool_calls") or []:
            fn = tc.get("function") or {}
            events.append(ToolCallDelta(
                index=tc.get("index"),
                id=tc.get("id"),
                name=fn.get("name"),
                arguments=fn.get("arguments") or "",
            ))
        if choice.get("finish_reason"):
            events.append(StopReason(reason=choice["finish_reason"]))

    usage = payload.get("usage")
    if usage:
        events.append(UsageUpdate(
            input_tokens=usage.get("prompt_tokens"),
            output_tokens=usage.get("completion_tokens"),
        ))
    return events


def decode_anthropic_event(payload: dict) -> list[StreamEvent]:
    """Map one Messages API stream event to canonical events.

    message_start / message_delta carry usage; content_block_* carry text and
    tool_use input fragments; ping / *_stop carry nothing.
    """
    event_type = payload.get("type")

    if event_type == "message_start":
        usage = (payload.get("message") or {}).get("usage") or {}
        if usage:
            return [UsageUpdate(
                input_tokens=usage.get("input_tokens"),
                output_tokens=usage.get("output_tokens"),
            )]
        return []

    if event_type == "content_block_start":
        block = payload.get("content_block") or {}
        if block.get("type") == "tool_use":
            return [ToolCallDelta(
                index=payload.get("index"),
                id=block.get("id"),
                name=block.get("name"),
            )]
        if block.get("type") == "text" and block.get("text"):
            return [TextDelta(text=block["text"])]
        return []

    if event_type == "content_block_delta":
        delta = payload.get("delta") or {}
        if delta.get("type") == "text_delta" and delta.get("text"):
            return [TextDelta(text=delta["text"])]
        if delta.get("type") == "input_json_delta":
            return [ToolCallDelta(
                index=payload.get("index"),
                arguments=delta.get("partial_json") or "",
            )]
        return []

    if event_type == "message_delta":
        events: list[StreamEvent] = []
        stop = (payload.get("delta") or {}).get("stop_reason")
        if stop:
            events.append(StopReason(reason=stop))
        usage = payload.get("usage") or {}
        if usage:
            events.append(UsageUpdate(
                input_tokens=usage.get("input_tokens"),
                output_tokens=usage.get("output_tokens"),
            ))
        return events

    if event_type == "error":
        err = payload.get("error") or {}
        return [StreamError(message=err.get("message", "Unknown stream error"))]

    return []


async def iter_sse_events(
    chunks: AsyncIterator[bytes],
    decode: Callable[[dict], list[StreamEvent]],
) -> AsyncIterator[StreamEvent]:
    """Decode an SSE byte stream into canonical events, stopping at [DONE]."""
    decoder = SSEDecoder()
    async for chunk in chunks:
        for frame in decoder.feed(chunk):
            if frame.is_done:
                return
            for event in _decode_frame(frame, decode):
                yield event
    for frame in decoder.close():
        if frame.is_done:
            return
        for event in _decode_frame(frame, decode):
            yield event


def _decode_frame(
    frame: SSEFrame, decode: Callable[[dict], list[StreamEvent]]
) -> list[StreamEvent]:
    try:
        payload = json.loads(frame.data)
    except json.JSONDecodeError:
        logger.warning("sse_frame_not_json", sse_event=frame.event, data=frame.data[:200])
        return []
    if not isinstance(payload, dict):
        return []
    return decode(payload)


# ── Aggregation ──


class ToolCallAccumulator:
    """Merge streamed tool-call fragments, keyed by index.

    Some OpenAI-compatible backends send index=None for every call; a new id
    then opens a new slot, and id-less fragments extend the latest one.
    """

    def __init__(self) -> None:
        self._pending: dict[int, dict[str, str]] = {}
        self._last_index: int | None = None

    def add(self, delta: ToolCallDelta) -> None:
        idx = delta.index
        if idx is None:
            if delta.id or self._last_index is None:
                idx = len(self._pending)
            else:
                idx = self._last_index
        entry = self._pending.setdefault(idx, {"id": "", "name": "", "arguments": ""})
        if delta.id:
            entry["id"] = delta.id
        if delta.name:
            entry["name"] = delta.name
        if delta.arguments:
            entry["arguments"] += delta.arguments
        self._last_index = idx

    def __bool__(self) -> bool:
        return bool(self._pending)

    def tool_calls(self) -> list[ToolCall]:
        return [
            ToolCall(
                tool_name=entry["name"],
                parameters=entry["arguments"] or "{}",
                call_id=entry["id"] or f"call_{i}",
            )
            for i, entry in sorted(self._pending.items())
        ]


async def collect_stream(
    events: AsyncIterator[StreamEvent],
    *,
    model: str,
    on_delta: Callable[[str], None] | None = None,
) -> ProviderTurn:
    """Drain canonical events into a ProviderTurn, forwarding text in arrival order.

    Raises StreamDecodeError on an in-band error event.
    """
    parts: list[str] = []
    usage = TokenUsage()
    accumulator = ToolCallAccumulator()
    stop_reason: str | None = None

    async for event in events:
        if isinstance(event, TextDelta):
            parts.append(event.text)
            if on_delta is not None:
                on_delta(event.text)
        elif isinstance(event, ToolCallDelta):
            accumulator.add(event)
        elif isinstance(event, UsageUpdate):
            if event.input_tokens is not None:
                usage.input_tokens = event.input_tokens
            if event.output_tokens is not None:
                usage.output_tokens = event.output_tokens
        elif isinstance(event, StopReason):
            stop_reason = event.reason
        elif isinstance(event, StreamError):
            raise StreamDecodeError(event.message)

    return ProviderTurn(
        content="".join(parts),
        model=model,
        tool_calls=accumulator.tool_calls(),
        usage=usage,
        stop_reason=stop_reason,
    )


# ── Delivery ──


class DeltaBatcher:
    """Coalesce text deltas before invoking a consumer callback.

    Flushes once flush_interval_ms have elapsed since the previous flush or
    max_pieces are buffered. Throughput smoothing only: nothing signals back
    to the producer.
    """

    def __init__(
        self,
        callback: Callable[[str], None],
        *,
        flush_interval_ms: float = 8.0,
        max_pieces: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._callback = callback
        self._interval_s = flush_interval_ms / 1000.0
        self._max_pieces = max_pieces
        self._clock = clock
        self._pieces: list[str] = []
        self._last_flush = clock()

    def push(self, text: str) -> None:
        if not text:
            return
        self._pieces.append(text)
        elapsed = self._clock() - self._last_flush
        if len(self._pieces) >= self._max_pieces or elapsed >= self._interval_s:
            self.flush()

    def flush(self) -> None:
        if not self._pieces:
            return
        text = "".join(self._pieces)
        self._pieces.clear()
        self._last_flush = self._clock()
        self._callback(text)

    @property
    def pending(self) -> int:
        return len(self._pieces)


class StreamChannel:
    """Single delivery path for StreamMessages.

    The coordinator writes: push_text() for raw deltas, emit() for everything
    else. Consumers read with ``async for`` and/or receive batched text via
    on_token. Pending deltas are flushed before any non-delta message, so
    emission order is preserved on both paths.
    """

    def __init__(
        self,
        *,
        on_token: Callable[[str], None] | None = None,
        flush_interval_ms: float = 8.0,
        max_pieces: int = 5,
    ) -> None:
        self._queue: asyncio.Queue[StreamMessage | None] = asyncio.Queue()
        self._on_token = on_token
        self._batcher = DeltaBatcher(
            self._deliver_text,
            flush_interval_ms=flush_interval_ms,
            max_pieces=max_pieces,
        )
        self._delivered: list[str] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def delivered_text(self) -> str:
        """All text handed to consumers so far."""
        return "".join(self._delivered)

    def push_text(self, text: str) -> None:
        if self._closed:
            logger.warning("stream_channel_closed_push", chars=len(text))
            return
        self._batcher.push(text)

    def emit(self, message: StreamMessage) -> None:
        if self._closed:
            logger.warning("stream_channel_closed_emit", message_type=message.type)
            return
        self._batcher.flush()
        self._queue.put_nowait(message)

    def close(self) -> None:
        if self._closed:
            return
        self._batcher.flush()
        self._closed = True
        self._queue.put_nowait(None)

    def _deliver_text(self, text: str) -> None:
        self._delivered.append(text)
        self._queue.put_nowait(CharacterDelta(text=text))
        if self._on_token is not None:
            try:
                self._on_token(text)
            except Exception:
                logger.exception("token_callback_failed")

    async def __aiter__(self) -> AsyncIterator[StreamMessage]:
        while True:
            message = await self._queue.get()
            if message is None:
                return
            yield message
