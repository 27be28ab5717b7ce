"""Anthropic Messages API adapter over raw httpx.

Handles both non-streaming and SSE streaming calls. The system prompt goes
in the top-level ``system`` field; tool results are replayed as
``tool_result`` blocks inside a user message.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import httpx
import structlog

from writeflow.agent.models import (
    AIRequest,
    ConversationMessage,
    ProviderTurn,
    TokenUsage,
    ToolCall,
)
from writeflow.agent.streaming import StreamEvent, decode_anthropic_event, iter_sse_events
from writeflow.infra.errors import ProviderHTTPError, ProviderTransportError
from writeflow.providers.base import (
    DEFAULT_TEMPERATURE,
    EMPTY_RESPONSE_TEXT,
    ModelProfile,
    ProviderAdapter,
    ProviderId,
    tool_arguments_as_dict,
)

logger = structlog.get_logger()

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_BASE_URL = "https://api.anthropic.com"


def _to_anthropic_tools(tools: list[dict]) -> list[dict]:
    """Convert OpenAI function schemas to Anthropic tool definitions."""
    converted = []
    for tool in tools:
        fn = tool.get("function", tool)
        converted.append({
            "name": fn["name"],
            "description": fn.get("description", ""),
            "input_schema": fn.get("parameters") or {"type": "object", "properties": {}},
        })
    return converted


def _to_anthropic_messages(conversation: list[ConversationMessage]) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    for msg in conversation:
        if msg.role == "tool":
            block = {
                "type": "tool_result",
                "tool_use_id": msg.tool_call_id or "",
                "content": msg.content,
            }
            if msg.is_error:
                block["is_error"] = True
            # Consecutive tool results share one user turn
            last = messages[-1] if messages else None
            if (
                last is not None
                and last["role"] == "user"
                and isinstance(last["content"], list)
                and all(b.get("type") == "tool_result" for b in last["content"])
            ):
                last["content"].append(block)
            else:
                messages.append({"role": "user", "content": [block]})
        elif msg.role == "assistant" and msg.tool_calls:
            blocks: list[dict[str, Any]] = []
            if msg.content:
                blocks.append({"type": "text", "text": msg.content})
            for call in msg.tool_calls:
                blocks.append({
                    "type": "tool_use",
                    "id": call.call_id,
                    "name": call.tool_name,
                    "input": tool_arguments_as_dict(call),
                })
            messages.append({"role": "assistant", "content": blocks})
        else:
            messages.append({"role": msg.role, "content": msg.content})
    return messages


class AnthropicAdapter(ProviderAdapter):
    """Adapter for the Anthropic Messages API (x-api-key + anthropic-version)."""

    def __init__(
        self,
        provider_id: ProviderId = ProviderId.anthropic,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: httpx.Timeout | None = None,
    ) -> None:
        super().__init__(provider_id)
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=timeout or httpx.Timeout(300.0, connect=10.0)
        )

    @staticmethod
    def _endpoint(profile: ModelProfile) -> str:
        base = (profile.base_url or DEFAULT_BASE_URL).rstrip("/")
        if base.endswith("/messages"):
            return base
        if base.endswith("/v1"):
            return f"{base}/messages"
        return f"{base}/v1/messages"

    @staticmethod
    def _headers(profile: ModelProfile) -> dict[str, str]:
        return {
            "x-api-key": profile.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

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
            "max_tokens": request.max_tokens or profile.max_tokens,
            "messages": _to_anthropic_messages(conversation),
            "temperature": (
                request.temperature if request.temperature is not None
                else DEFAULT_TEMPERATURE
            ),
        }
        if request.system_prompt:
            payload["system"] = request.system_prompt
        if tools and tool_choice != "none":
            payload["tools"] = _to_anthropic_tools(tools)
        if stream:
            payload["stream"] = True
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
            "anthropic_request",
            model=profile.name,
            message_count=len(payload["messages"]),
            tool_count=len(payload.get("tools", [])),
        )
        try:
            response = await self._http.post(
                self._endpoint(profile), headers=self._headers(profile), json=payload,
            )
        except httpx.RequestError as e:
            raise ProviderTransportError(f"Anthropic request failed: {e}") from e

        if not response.is_success:
            raise ProviderHTTPError(response.status_code, response.text, provider="Anthropic")

        data = response.json()
        texts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in data.get("content") or []:
            if block.get("type") == "text":
                texts.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                tool_calls.append(ToolCall(
                    tool_name=block.get("name", ""),
                    parameters=block.get("input") or {},
                    call_id=block.get("id", ""),
                ))

        usage = data.get("usage") or {}
        content = "".join(texts)
        if not content and not tool_calls:
            content = EMPTY_RESPONSE_TEXT
        return ProviderTurn(
            content=content,
            model=data.get("model", profile.name),
            tool_calls=tool_calls,
            usage=TokenUsage(
                input_tokens=usage.get("input_tokens", 0),
                output_tokens=usage.get("output_tokens", 0),
            ),
            stop_reason=data.get("stop_reason"),
        )

    async def stream_events(
        self,
        request: AIRequest,
        profile: ModelProfile,
        conversation: list[ConversationMessage],
        *,
        tools: list[dict] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        payload = self.build_payload(request, profile, conversation, tools=tools, stream=True)
        logger.debug("anthropic_stream_request", model=profile.name)
        try:
            async with self._http.stream(
                "POST", self._endpoint(profile), headers=self._headers(profile), json=payload,
            ) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise ProviderHTTPError(response.status_code, body, provider="Anthropic")
                async for event in iter_sse_events(response.aiter_bytes(), decode_anthropic_event):
                    yield event
        except httpx.RequestError as e:
            raise ProviderTransportError(f"Anthropic stream failed: {e}") from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()
