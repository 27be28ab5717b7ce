from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import httpx
import structlog
from openai import APIConnectionError, APIStatusError, AsyncOpenAI

from writeflow.agent.models import (
    AIRequest,
    ConversationMessage,
    ProviderTurn,
    TokenUsage,
    ToolCall,
)
from writeflow.agent.streaming import (
    SSEDecoder,
    StreamEvent,
    TextDelta,
    ToolCallAccumulator,
    ToolCallDelta,
    UsageUpdate,
    decode_openai_chunk,
    iter_sse_events,
)
from writeflow.infra.errors import ProviderError, ProviderHTTPError, ProviderTransportError
from writeflow.providers.base import (
    DEFAULT_TEMPERATURE,
    EMPTY_RESPONSE_TEXT,
    ModelProfile,
    ProviderAdapter,
    ProviderId,
)

logger = structlog.get_logger()


def _to_openai_messages(
    system_prompt: str | None, conversation: list[ConversationMessage]
) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    for msg in conversation:
        if msg.role == "assistant" and msg.tool_calls:
            messages.append({
                "role": "assistant",
                "content": msg.content or "",
                "tool_calls": [
                    {
                        "id": call.call_id,
                        "type": "function",
                        "function": {
                            "name": call.tool_name,
                            "arguments": (
                                json.dumps(call.parameters, ensure_ascii=False)
                                if isinstance(call.parameters, dict)
                                else call.parameters
                            ),
                        },
                    }
                    for call in msg.tool_calls
                ],
            })
        elif msg.role == "tool":
            messages.append({
                "role": "tool",
                "tool_call_id": msg.tool_call_id or "",
                "content": msg.content,
            })
        else:
            messages.append({"role": msg.role, "content": msg.content})
    return messages


def _turn_from_sse_body(body: str, model: str) -> ProviderTurn:
    """Rebuild a turn from an SSE body some gateways return even for stream=false."""
    decoder = SSEDecoder()
    frames = decoder.feed(body.encode("utf-8")) + decoder.close()
    parts: list[str] = []
    usage = TokenUsage()
    accumulator = ToolCallAccumulator()
    for frame in frames:
        if frame.is_done:
            break
        try:
            payload = json.loads(frame.data)
        except json.JSONDecodeError:
            continue
        for event in decode_openai_chunk(payload):
            if isinstance(event, TextDelta):
                parts.append(event.text)
            elif isinstance(event, ToolCallDelta):
                accumulator.add(event)
            elif isinstance(event, UsageUpdate):
                usage.input_tokens = event.input_tokens or usage.input_tokens
                usage.output_tokens = event.output_tokens or usage.output_tokens
    return ProviderTurn(
        content="".join(parts), model=model,
        tool_calls=accumulator.tool_calls(), usage=usage,
    )


def _turn_from_completion(data: dict, model: str) -> ProviderTurn:
    choices = data.get("choices") or []
    if not choices:
        raise ProviderError(f"Empty choices from provider ({model})")
    choice = choices[0]
    message = choice.get("message") or {}
    tool_calls = [
        ToolCall(
            tool_name=(tc.get("function") or {}).get("name", ""),
            parameters=(tc.get("function") or {}).get("arguments") or "{}",
            call_id=tc.get("id") or f"call_{i}",
        )
        for i, tc in enumerate(message.get("tool_calls") or [])
    ]
    usage = data.get("usage") or {}
    return ProviderTurn(
        content=message.get("content") or "",
        model=data.get("model", model),
        tool_calls=tool_calls,
        usage=TokenUsage(
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
        ),
        stop_reason=choice.get("finish_reason"),
    )


def _status_error(e: APIStatusError, provider: ProviderId) -> ProviderHTTPError:
    try:
        body = e.response.text
    except httpx.ResponseNotRead:
        body = e.message
    return ProviderHTTPError(e.status_code, body, provider=provider.value)


class OpenAICompatAdapter(ProviderAdapter):
    """Chat Completions adapter built on the OpenAI SDK.

    Serves OpenAI, Kimi and generic OpenAI-compatible backends (Qwen, GLM);
    base URL and key come from the ModelProfile. SDK retries are disabled:
    this layer never retries.

    Bodies are read raw and parsed here rather than through the SDK's typed
    models, so the SSE path shares the same decoder as every other backend.
    """

    def __init__(
        self,
        provider_id: ProviderId = ProviderId.openai,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: httpx.Timeout | None = None,
    ) -> None:
        super().__init__(provider_id)
        self._http_client = http_client
        self._timeout = timeout or httpx.Timeout(300.0, connect=10.0)
        self._clients: dict[tuple[str, str], AsyncOpenAI] = {}

    def _client(self, profile: ModelProfile) -> AsyncOpenAI:
        key = (profile.base_url, profile.api_key)
        client = self._clients.get(key)
        if client is None:
            client = AsyncOpenAI(
                api_key=profile.api_key,
                base_url=profile.base_url,
                max_retries=0,
                timeout=self._timeout,
                http_client=self._http_client,
            )
            self._clients[key] = client
        return client

    def build_payload(
        self,
        request: AIRequest,
        profile: ModelProfile,
        conversation: list[ConversationMessage],
        *,
        tools: list[dict] | None = None,
        tool_choice: str | None = None,
        stream: bool = False,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": profile.name,
            "messages": _to_openai_messages(request.system_prompt, conversation),
            "max_tokens": request.max_tokens or profile.max_tokens,
            "temperature": (
                request.temperature if request.temperature is not None
                else DEFAULT_TEMPERATURE
            ),
            "stream": stream,
        }
        if tools and tool_choice != "none":
            payload["tools"] = tools
            payload["tool_choice"] = tool_choice or "auto"
        return payload

    async def process_request(
        self,
        request: AIRequest,
        profile: ModelProfile,
        conversation: list[ConversationMessage],
        *,
        tools: list[dict] | None = None,
        tool_choice: str | None = None,
    ) -> ProviderTurn:
        payload = self.build_payload(
            request, profile, conversation, tools=tools, tool_choice=tool_choice,
        )
        logger.debug(
            "chat_completion_request",
            provider=self.provider_id.value,
            model=profile.name,
            message_count=len(payload["messages"]),
            tool_count=len(payload.get("tools", [])),
        )
        client = self._client(profile)
        try:
            raw = await client.chat.completions.with_raw_response.create(**payload)
        except APIStatusError as e:
            raise _status_error(e, self.provider_id) from e
        except APIConnectionError as e:
            raise ProviderTransportError(
                f"{self.provider_id.value} request failed: {e}"
            ) from e

        body = raw.http_response.text
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            logger.warning(
                "completion_body_not_json", provider=self.provider_id.value, chars=len(body),
            )
            turn = _turn_from_sse_body(body, profile.name)
        else:
            turn = _turn_from_completion(data, profile.name)

        if not turn.content and not turn.tool_calls:
            turn.content = EMPTY_RESPONSE_TEXT
        logger.debug(
            "chat_completion_response",
            has_content=bool(turn.content),
            tool_calls=len(turn.tool_calls),
        )
        return turn

    async def stream_events(
        self,
        request: AIRequest,
        profile: ModelProfile,
        conversation: list[ConversationMessage],
        *,
        tools: list[dict] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        payload = self.build_payload(request, profile, conversation, tools=tools, stream=True)
        logger.debug(
            "chat_stream_request", provider=self.provider_id.value, model=profile.name,
        )
        client = self._client(profile)
        try:
            async with client.chat.completions.with_streaming_response.create(
                **payload
            ) as response:
                async for event in iter_sse_events(response.iter_bytes(), decode_openai_chunk):
                    yield event
        except APIStatusError as e:
            raise _status_error(e, self.provider_id) from e
        except APIConnectionError as e:
            raise ProviderTransportError(
                f"{self.provider_id.value} stream failed: {e}"
            ) from e

    async def aclose(self) -> None:
        # A caller-supplied http_client is shared; its owner closes it
        if self._http_client is None:
            for client in self._clients.values():
                await client.close()
        self._clients.clear()
