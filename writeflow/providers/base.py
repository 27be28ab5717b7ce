from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from writeflow.agent.models import (
    AIRequest,
    ConversationMessage,
    ProviderTurn,
    TokenUsage,
    ToolCall,
)
from writeflow.agent.streaming import StreamEvent, collect_stream

DEFAULT_MAX_TOKENS = 4000
DEFAULT_TEMPERATURE = 0.3
EMPTY_RESPONSE_TEXT = "No response content"


class ProviderId(StrEnum):
    """Closed set of supported upstream backends."""

    anthropic = "anthropic"
    deepseek = "deepseek"
    openai = "openai"
    kimi = "kimi"
    openai_compatible = "openai_compatible"


# Ordered: first matching substring wins ("deepseek-coder-gpt" → deepseek)
_MODEL_MARKERS: tuple[tuple[tuple[str, ...], ProviderId], ...] = (
    (("deepseek",), ProviderId.deepseek),
    (("claude", "anthropic"), ProviderId.anthropic),
    (("gpt", "openai"), ProviderId.openai),
    (("moonshot", "kimi"), ProviderId.kimi),
    (("qwen", "glm"), ProviderId.openai_compatible),
)

# Per-token USD rates (input, output)
COST_RATES: dict[ProviderId, tuple[float, float]] = {
    ProviderId.anthropic: (3e-6, 1.5e-5),
    ProviderId.deepseek: (2.7e-7, 1.1e-6),
    ProviderId.openai: (2.5e-6, 1e-5),
    ProviderId.kimi: (1e-6, 2e-6),
}


def infer_provider_from_model(
    model: str, default: ProviderId = ProviderId.deepseek
) -> ProviderId:
    """Map a model name to its provider by case-insensitive substring match.

    Pure: depends only on its arguments. Names matching no marker get *default*.
    """
    lowered = model.lower()
    for markers, provider in _MODEL_MARKERS:
        if any(marker in lowered for marker in markers):
            return provider
    return default


def calculate_cost(provider: ProviderId, usage: TokenUsage) -> float:
    input_rate, output_rate = COST_RATES.get(provider, (0.0, 0.0))
    return usage.input_tokens * input_rate + usage.output_tokens * output_rate


@dataclass(frozen=True)
class ModelProfile:
    """Model registry entry: where and how to reach one model."""

    name: str
    provider: ProviderId
    base_url: str
    api_key: str
    max_tokens: int = DEFAULT_MAX_TOKENS
    context_window: int = 128_000


def tool_arguments_as_dict(call: ToolCall) -> dict[str, Any]:
    """Best-effort dict view of a call's parameters for wire replay."""
    if isinstance(call.parameters, dict):
        return call.parameters
    try:
        parsed = json.loads(call.parameters or "{}")
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


class ProviderAdapter(ABC):
    """Abstract base class for provider wire adapters.

    An adapter translates the provider-neutral conversation into its backend's
    payload, performs the HTTP call and normalizes the reply into a
    ProviderTurn. Adapters never retry; errors surface as ProviderError
    subclasses.
    """

    def __init__(self, provider_id: ProviderId) -> None:
        self.provider_id = provider_id

    @property
    def supports_streaming_tools(self) -> bool:
        """Whether streaming may be used while tool calling is active."""
        return True

    @abstractmethod
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
        """Build the JSON body for this backend."""
        ...

    @abstractmethod
    async def process_request(
        self,
        request: AIRequest,
        profile: ModelProfile,
        conversation: list[ConversationMessage],
        *,
        tools: list[dict] | None = None,
        tool_choice: str | None = None,
    ) -> ProviderTurn:
        """Non-streaming call returning the complete assistant turn."""
        ...

    @abstractmethod
    def stream_events(
        self,
        request: AIRequest,
        profile: ModelProfile,
        conversation: list[ConversationMessage],
        *,
        tools: list[dict] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Streaming call yielding canonical events in arrival order."""
        ...

    async def process_streaming_request(
        self,
        request: AIRequest,
        profile: ModelProfile,
        conversation: list[ConversationMessage],
        *,
        on_delta: Callable[[str], None],
        tools: list[dict] | None = None,
    ) -> ProviderTurn:
        """Stream a turn, forwarding each text delta to on_delta."""
        return await collect_stream(
            self.stream_events(request, profile, conversation, tools=tools),
            model=profile.name,
            on_delta=on_delta,
        )

    def sanitize_text(self, text: str) -> str:
        """Strip backend-specific pseudo tool-call tokens. Identity by default."""
        return text

    def extract_inline_tool_calls(self, text: str) -> list[ToolCall]:
        """Recover tool calls leaked inline into plain text. None by default."""
        return []

    async def aclose(self) -> None:
        """Release HTTP resources owned by the adapter."""
        return None
