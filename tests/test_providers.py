"""Tests for provider adapters against httpx.MockTransport backends."""

from __future__ import annotations

import json

import httpx
import pytest

from writeflow.agent.models import AIRequest, ConversationMessage, ToolCall
from writeflow.infra.errors import ProviderHTTPError, ProviderTransportError
from writeflow.providers.anthropic import AnthropicAdapter
from writeflow.providers.base import ModelProfile, ProviderId
from writeflow.providers.deepseek import DeepSeekAdapter
from writeflow.providers.openai_compat import OpenAICompatAdapter

READ_TOOL_SCHEMA = {
    "type": "function",
    "function": {
        "name": "Read",
        "description": "Read a file",
        "parameters": {"type": "object", "properties": {"file_path": {"type": "string"}}},
    },
}


def _profile(provider: ProviderId, name: str, base_url: str) -> ModelProfile:
    return ModelProfile(name=name, provider=provider, base_url=base_url, api_key="sk-test")


def _sse(*payloads: dict, done: bool = True) -> bytes:
    body = b"".join(f"data: {json.dumps(p)}\n\n".encode() for p in payloads)
    if done:
        body += b"data: [DONE]\n\n"
    return body


class _Recorder:
    """MockTransport handler that records requests and replays one response."""

    def __init__(self, response: httpx.Response) -> None:
        self.response = response
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.response

    @property
    def last_json(self) -> dict:
        return json.loads(self.requests[-1].content)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestAnthropicAdapter:
    PROFILE = _profile(ProviderId.anthropic, "claude-3-haiku", "https://api.anthropic.com")

    @pytest.mark.asyncio()
    async def test_non_streaming_request(self) -> None:
        recorder = _Recorder(httpx.Response(200, json={
            "model": "claude-3-haiku",
            "content": [{"type": "text", "text": "Hello there"}],
            "usage": {"input_tokens": 11, "output_tokens": 3},
            "stop_reason": "end_turn",
        }))
        async with _client(recorder) as http:
            adapter = AnthropicAdapter(http_client=http)
            turn = await adapter.process_request(
                AIRequest(prompt="hi", system_prompt="Be brief."),
                self.PROFILE,
                [ConversationMessage(role="user", content="hi")],
            )

        request = recorder.requests[0]
        assert str(request.url) == "https://api.anthropic.com/v1/messages"
        assert request.headers["x-api-key"] == "sk-test"
        assert request.headers["anthropic-version"] == "2023-06-01"
        body = recorder.last_json
        assert body["system"] == "Be brief."
        assert body["messages"] == [{"role": "user", "content": "hi"}]
        assert body["max_tokens"] == 4000
        assert "tools" not in body
        assert turn.content == "Hello there"
        assert (turn.usage.input_tokens, turn.usage.output_tokens) == (11, 3)
        assert turn.stop_reason == "end_turn"

    @pytest.mark.asyncio()
    async def test_tool_use_blocks_become_calls(self) -> None:
        recorder = _Recorder(httpx.Response(200, json={
            "content": [{
                "type": "tool_use", "id": "toolu_1", "name": "Read",
                "input": {"file_path": "draft.md"},
            }],
            "usage": {"input_tokens": 5, "output_tokens": 5},
            "stop_reason": "tool_use",
        }))
        async with _client(recorder) as http:
            turn = await AnthropicAdapter(http_client=http).process_request(
                AIRequest(prompt="read"), self.PROFILE,
                [ConversationMessage(role="user", content="read")],
                tools=[READ_TOOL_SCHEMA],
            )

        assert recorder.last_json["tools"][0]["name"] == "Read"
        assert recorder.last_json["tools"][0]["input_schema"]["type"] == "object"
        assert turn.content == ""
        assert turn.tool_calls == [
            ToolCall(tool_name="Read", parameters={"file_path": "draft.md"}, call_id="toolu_1")
        ]

    @pytest.mark.asyncio()
    async def test_empty_content_placeholder(self) -> None:
        recorder = _Recorder(httpx.Response(200, json={"content": [], "usage": {}}))
        async with _client(recorder) as http:
            turn = await AnthropicAdapter(http_client=http).process_request(
                AIRequest(prompt="x"), self.PROFILE, [ConversationMessage(role="user", content="x")],
            )
        assert turn.content == "No response content"

    @pytest.mark.asyncio()
    async def test_http_error_carries_status_and_body(self) -> None:
        recorder = _Recorder(httpx.Response(401, text='{"error":"invalid x-api-key"}'))
        async with _client(recorder) as http:
            with pytest.raises(ProviderHTTPError) as exc_info:
                await AnthropicAdapter(http_client=http).process_request(
                    AIRequest(prompt="x"), self.PROFILE,
                    [ConversationMessage(role="user", content="x")],
                )
        assert exc_info.value.status == 401
        assert "invalid x-api-key" in str(exc_info.value)
        assert str(exc_info.value).startswith("Anthropic API error: 401")

    @pytest.mark.asyncio()
    async def test_transport_error(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(refuse) as http:
            with pytest.raises(ProviderTransportError):
                await AnthropicAdapter(http_client=http).process_request(
                    AIRequest(prompt="x"), self.PROFILE,
                    [ConversationMessage(role="user", content="x")],
                )

    @pytest.mark.asyncio()
    async def test_streaming_deltas_in_order(self) -> None:
        body = b"".join([
            b"event: message_start\n",
            b'data: {"type":"message_start","message":{"usage":{"input_tokens":9,"output_tokens":1}}}\n\n',
            b"event: content_block_delta\n",
            b'data: {"type":"content_block_delta","index":0,"delta":{"type":"text_delta","text":"Hel"}}\n\n',
            b"event: ping\n",
            b'data: {"type":"ping"}\n\n',
            b"event: content_block_delta\n",
            b'data: {"type":"content_block_delta","index":0,"delta":{"type":"text_delta","text":"lo"}}\n\n',
            b"event: message_delta\n",
            b'data: {"type":"message_delta","delta":{"stop_reason":"end_turn"},"usage":{"output_tokens":2}}\n\n',
            b"event: message_stop\n",
            b'data: {"type":"message_stop"}\n\n',
        ])
        recorder = _Recorder(httpx.Response(
            200, content=body, headers={"content-type": "text/event-stream"},
        ))
        deltas: list[str] = []
        async with _client(recorder) as http:
            turn = await AnthropicAdapter(http_client=http).process_streaming_request(
                AIRequest(prompt="hi", stream=True), self.PROFILE,
                [ConversationMessage(role="user", content="hi")],
                on_delta=deltas.append,
            )

        assert recorder.last_json["stream"] is True
        assert deltas == ["Hel", "lo"]
        assert turn.content == "Hello"
        assert (turn.usage.input_tokens, turn.usage.output_tokens) == (9, 2)
        assert turn.stop_reason == "end_turn"

    @pytest.mark.asyncio()
    async def test_streaming_http_error(self) -> None:
        recorder = _Recorder(httpx.Response(529, text="overloaded"))
        async with _client(recorder) as http:
            with pytest.raises(ProviderHTTPError) as exc_info:
                await AnthropicAdapter(http_client=http).process_streaming_request(
                    AIRequest(prompt="x"), self.PROFILE,
                    [ConversationMessage(role="user", content="x")],
                    on_delta=lambda _t: None,
                )
        assert exc_info.value.status == 529
        assert exc_info.value.body == "overloaded"

    def test_tool_history_replayed_as_blocks(self) -> None:
        conversation = [
            ConversationMessage(role="user", content="read it"),
            ConversationMessage(
                role="assistant", content="Reading.",
                tool_calls=[ToolCall("Read", '{"file_path": "a.md"}', "toolu_1")],
            ),
            ConversationMessage(role="tool", content="text", tool_call_id="toolu_1"),
            ConversationMessage(role="tool", content="boom", tool_call_id="toolu_2", is_error=True),
        ]
        payload = AnthropicAdapter().build_payload(
            AIRequest(prompt="read it"), self.PROFILE, conversation,
        )
        messages = payload["messages"]
        assert messages[1]["content"][1] == {
            "type": "tool_use", "id": "toolu_1", "name": "Read", "input": {"file_path": "a.md"},
        }
        assert len(messages) == 3
        assert [b["tool_use_id"] for b in messages[2]["content"]] == ["toolu_1", "toolu_2"]
        assert messages[2]["content"][1]["is_error"] is True


class TestOpenAICompatAdapter:
    PROFILE = _profile(ProviderId.openai, "gpt-4o", "https://api.openai.test/v1")

    @pytest.mark.asyncio()
    async def test_non_streaming_request(self) -> None:
        recorder = _Recorder(httpx.Response(200, json={
            "model": "gpt-4o",
            "choices": [{
                "index": 0,
                "message": {"role": "assistant", "content": "Hi!"},
                "finish_reason": "stop",
            }],
            "usage": {"prompt_tokens": 4, "completion_tokens": 2},
        }))
        async with _client(recorder) as http:
            adapter = OpenAICompatAdapter(http_client=http)
            turn = await adapter.process_request(
                AIRequest(prompt="hello", system_prompt="sys"), self.PROFILE,
                [ConversationMessage(role="user", content="hello")],
            )

        request = recorder.requests[0]
        assert str(request.url) == "https://api.openai.test/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test"
        body = recorder.last_json
        assert body["messages"][0] == {"role": "system", "content": "sys"}
        assert body["stream"] is False
        assert "tools" not in body
        assert turn.content == "Hi!"
        assert (turn.usage.input_tokens, turn.usage.output_tokens) == (4, 2)

    @pytest.mark.asyncio()
    async def test_tools_attached_with_auto_choice(self) -> None:
        recorder = _Recorder(httpx.Response(200, json={
            "choices": [{
                "message": {
                    "role": "assistant", "content": None,
                    "tool_calls": [{
                        "id": "call_9", "type": "function",
                        "function": {"name": "Read", "arguments": '{"file_path":"draft.md"}'},
                    }],
                },
                "finish_reason": "tool_calls",
            }],
        }))
        async with _client(recorder) as http:
            turn = await OpenAICompatAdapter(http_client=http).process_request(
                AIRequest(prompt="x"), self.PROFILE,
                [ConversationMessage(role="user", content="x")],
                tools=[READ_TOOL_SCHEMA],
            )

        assert recorder.last_json["tools"] == [READ_TOOL_SCHEMA]
        assert recorder.last_json["tool_choice"] == "auto"
        assert turn.content == ""
        assert turn.tool_calls[0].call_id == "call_9"
        assert turn.tool_calls[0].parameters == '{"file_path":"draft.md"}'

    @pytest.mark.asyncio()
    async def test_tool_choice_none_omits_tools(self) -> None:
        recorder = _Recorder(httpx.Response(200, json={
            "choices": [{"message": {"content": "done"}, "finish_reason": "stop"}],
        }))
        async with _client(recorder) as http:
            await OpenAICompatAdapter(http_client=http).process_request(
                AIRequest(prompt="x"), self.PROFILE,
                [ConversationMessage(role="user", content="x")],
                tools=[READ_TOOL_SCHEMA], tool_choice="none",
            )
        assert "tools" not in recorder.last_json
        assert "tool_choice" not in recorder.last_json

    @pytest.mark.asyncio()
    async def test_sse_body_for_non_stream_request(self) -> None:
        body = _sse(
            {"choices": [{"delta": {"content": "Hel"}}]},
            {"choices": [{"delta": {"content": "lo"}}]},
        )
        recorder = _Recorder(httpx.Response(200, content=body))
        async with _client(recorder) as http:
            turn = await OpenAICompatAdapter(http_client=http).process_request(
                AIRequest(prompt="x"), self.PROFILE,
                [ConversationMessage(role="user", content="x")],
            )
        assert turn.content == "Hello"

    @pytest.mark.asyncio()
    async def test_status_error_mapped(self) -> None:
        recorder = _Recorder(httpx.Response(429, json={"error": {"message": "rate limited"}}))
        async with _client(recorder) as http:
            with pytest.raises(ProviderHTTPError) as exc_info:
                await OpenAICompatAdapter(http_client=http).process_request(
                    AIRequest(prompt="x"), self.PROFILE,
                    [ConversationMessage(role="user", content="x")],
                )
        assert exc_info.value.status == 429
        assert "rate limited" in str(exc_info.value)
        assert len(recorder.requests) == 1  # no retries

    @pytest.mark.asyncio()
    async def test_streaming_hi(self) -> None:
        body = _sse(
            {"choices": [{"delta": {"content": "H"}}]},
            {"choices": [{"delta": {"content": "i"}, "finish_reason": "stop"}]},
        )
        recorder = _Recorder(httpx.Response(
            200, content=body, headers={"content-type": "text/event-stream"},
        ))
        deltas: list[str] = []
        async with _client(recorder) as http:
            turn = await OpenAICompatAdapter(http_client=http).process_streaming_request(
                AIRequest(prompt="x", stream=True), self.PROFILE,
                [ConversationMessage(role="user", content="x")],
                on_delta=deltas.append,
            )
        assert recorder.last_json["stream"] is True
        assert deltas == ["H", "i"]
        assert turn.content == "Hi"
        assert turn.stop_reason == "stop"

    @pytest.mark.asyncio()
    async def test_streaming_tool_call_fragments(self) -> None:
        body = _sse(
            {"choices": [{"delta": {"tool_calls": [{
                "index": 0, "id": "call_1", "type": "function",
                "function": {"name": "Glob", "arguments": '{"pat'},
            }]}}]},
            {"choices": [{"delta": {"tool_calls": [{
                "index": 0, "function": {"arguments": 'tern": "*.md"}'},
            }]}, "finish_reason": "tool_calls"}]},
        )
        recorder = _Recorder(httpx.Response(
            200, content=body, headers={"content-type": "text/event-stream"},
        ))
        async with _client(recorder) as http:
            turn = await OpenAICompatAdapter(http_client=http).process_streaming_request(
                AIRequest(prompt="x", stream=True), self.PROFILE,
                [ConversationMessage(role="user", content="x")],
                on_delta=lambda _t: None, tools=[READ_TOOL_SCHEMA],
            )
        assert turn.tool_calls == [
            ToolCall(tool_name="Glob", parameters='{"pattern": "*.md"}', call_id="call_1")
        ]

    def test_tool_history_replayed(self) -> None:
        conversation = [
            ConversationMessage(role="user", content="go"),
            ConversationMessage(
                role="assistant",
                tool_calls=[ToolCall("Read", {"file_path": "草稿.md"}, "call_1")],
            ),
            ConversationMessage(role="tool", content="text", tool_call_id="call_1"),
        ]
        payload = OpenAICompatAdapter().build_payload(
            AIRequest(prompt="go"), self.PROFILE, conversation,
        )
        assistant = payload["messages"][1]
        assert assistant["tool_calls"][0]["function"]["arguments"] == '{"file_path": "草稿.md"}'
        assert payload["messages"][2] == {"role": "tool", "tool_call_id": "call_1", "content": "text"}


class TestDeepSeekAdapter:
    PROFILE = _profile(ProviderId.deepseek, "deepseek-chat", "https://api.deepseek.test")

    def test_no_tools_payload_has_no_tools_key(self) -> None:
        payload = DeepSeekAdapter().build_payload(
            AIRequest(prompt="写一首诗"), self.PROFILE,
            [ConversationMessage(role="user", content="写一首诗")],
        )
        assert "tools" not in payload
        assert "tool_choice" not in payload

    def test_streaming_tools_unsupported(self) -> None:
        assert DeepSeekAdapter().supports_streaming_tools is False
        assert OpenAICompatAdapter().supports_streaming_tools is True

    @pytest.mark.asyncio()
    async def test_stream_with_tools_falls_back_to_single_call(self) -> None:
        recorder = _Recorder(httpx.Response(200, json={
            "choices": [{"message": {"content": "whole reply"}, "finish_reason": "stop"}],
        }))
        deltas: list[str] = []
        async with _client(recorder) as http:
            turn = await DeepSeekAdapter(http_client=http).process_streaming_request(
                AIRequest(prompt="x", stream=True), self.PROFILE,
                [ConversationMessage(role="user", content="x")],
                on_delta=deltas.append, tools=[READ_TOOL_SCHEMA],
            )
        assert recorder.last_json["stream"] is False
        assert deltas == ["whole reply"]
        assert turn.content == "whole reply"

    def test_sanitize_is_identity_without_markers(self) -> None:
        text = "Plain text with | bars and <tags>\n\n\n\nand blank lines"
        assert DeepSeekAdapter().sanitize_text(text) == text

    def test_sanitize_strips_tool_blocks(self) -> None:
        text = (
            "Let me check.\n"
            "<｜tool▁calls▁begin｜><｜tool▁call▁begin｜>Read<｜tool▁sep｜>"
            '{"file_path": "a.md"}<｜tool▁call▁end｜><｜tool▁calls▁end｜>\n\n\n\nDone.'
        )
        cleaned = DeepSeekAdapter().sanitize_text(text)
        assert "tool▁" not in cleaned
        assert cleaned == "Let me check.\n\nDone."

    def test_extract_block_calls(self) -> None:
        text = (
            "<｜tool▁calls▁begin｜>"
            '<｜tool▁call▁begin｜>Read<｜tool▁sep｜>{"file_path": "a.md"}<｜tool▁call▁end｜>'
            "<｜tool▁call▁begin｜>Glob<｜tool▁sep｜>```json\n{\"pattern\": \"*.md\"}\n```"
            "<｜tool▁call▁end｜>"
            "<｜tool▁calls▁end｜>"
        )
        calls = DeepSeekAdapter().extract_inline_tool_calls(text)
        assert calls == [
            ToolCall("Read", {"file_path": "a.md"}, "inline_0"),
            ToolCall("Glob", {"pattern": "*.md"}, "inline_1"),
        ]

    def test_extract_simple_form(self) -> None:
        calls = DeepSeekAdapter().extract_inline_tool_calls('tool▁todo_read▁{}')
        assert calls == [ToolCall("todo_read", {}, "inline_0")]

    def test_extract_nothing_from_plain_text(self) -> None:
        assert DeepSeekAdapter().extract_inline_tool_calls("just prose") == []
