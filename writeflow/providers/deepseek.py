from __future__ import annotations

import json
import re
from collections.abc import Callable

import structlog

from writeflow.agent.models import AIRequest, ConversationMessage, ProviderTurn, ToolCall
from writeflow.providers.base import ModelProfile, ProviderId
from writeflow.providers.openai_compat import OpenAICompatAdapter

logger = structlog.get_logger()

# DeepSeek sometimes leaks its internal tool-call tokens into plain text.
# Bars may be ASCII "|" or fullwidth "｜"; "▁" is U+2581.
_BAR = r"\s*[|｜]"
_CALLS_BLOCK = re.compile(
    rf"<{_BAR}tool▁calls▁begin{_BAR}>(.*?)<{_BAR}tool▁calls▁end{_BAR}>", re.DOTALL,
)
_CALL = re.compile(
    rf"<{_BAR}tool▁call▁begin{_BAR}>\s*([\w.\-]+)\s*<{_BAR}tool▁sep{_BAR}>"
    rf"(.*?)<{_BAR}tool▁call▁end{_BAR}>",
    re.DOTALL,
)
_SIMPLE_CALL = re.compile(r"tool▁(\w+)▁(\{[^}]*\})")
_STRAY_TAG = re.compile(rf"<{_BAR}tool[^>]*?[|｜]\s*>")
_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")
_EXCESS_BLANK_LINES = re.compile(r"\n{3,}")


def _clean_arguments(raw: str) -> dict | str:
    raw = _CODE_FENCE.sub("", raw.strip())
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        # Left raw; the executor's argument repair gets a chance at it
        return raw
    return parsed if isinstance(parsed, dict) else raw


class DeepSeekAdapter(OpenAICompatAdapter):
    """DeepSeek Chat Completions adapter.

    DeepSeek's tool-call SSE framing is not reliably parseable, so streaming
    is disabled whenever tools are attached: process_streaming_request then
    falls back to a single non-streaming call and forwards the whole text as
    one delta.
    """

    def __init__(self, provider_id: ProviderId = ProviderId.deepseek, **kwargs) -> None:
        super().__init__(provider_id, **kwargs)

    @property
    def supports_streaming_tools(self) -> bool:
        return False

    async def process_streaming_request(
        self,
        request: AIRequest,
        profile: ModelProfile,
        conversation: list[ConversationMessage],
        *,
        on_delta: Callable[[str], None],
        tools: list[dict] | None = None,
    ) -> ProviderTurn:
        if tools:
            logger.info("deepseek_stream_disabled_for_tools", tool_count=len(tools))
            turn = await self.process_request(request, profile, conversation, tools=tools)
            if turn.content:
                on_delta(turn.content)
            return turn
        return await super().process_streaming_request(
            request, profile, conversation, on_delta=on_delta,
        )

    def extract_inline_tool_calls(self, text: str) -> list[ToolCall]:
        """Recover tool calls from leaked ``<｜tool▁calls▁begin｜>`` blocks and
        the compact ``tool▁name▁{...}`` form."""
        if "tool▁" not in text:
            return []
        calls: list[ToolCall] = []
        for block in _CALLS_BLOCK.finditer(text):
            for match in _CALL.finditer(block.group(1)):
                calls.append(ToolCall(
                    tool_name=match.group(1),
                    parameters=_clean_arguments(match.group(2)),
                    call_id=f"inline_{len(calls)}",
                ))
        for match in _SIMPLE_CALL.finditer(text):
            calls.append(ToolCall(
                tool_name=match.group(1),
                parameters=_clean_arguments(match.group(2)),
                call_id=f"inline_{len(calls)}",
            ))
        if calls:
            logger.info("inline_tool_calls_extracted", count=len(calls))
        return calls

    def sanitize_text(self, text: str) -> str:
        """Remove leaked tool-call tokens. Text without them is returned untouched."""
        if "tool▁" not in text:
            return text
        text = _CALLS_BLOCK.sub("", text)
        text = _SIMPLE_CALL.sub("", text)
        text = _CALL.sub("", text)
        text = _STRAY_TAG.sub("", text)
        return _EXCESS_BLANK_LINES.sub("\n\n", text)
