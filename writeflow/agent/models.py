from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from writeflow.content.blocks import ContentBlock


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, other: TokenUsage) -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens


@dataclass
class StreamingStats:
    """Throughput numbers for a streamed response. Times are epoch seconds."""

    start_time: float
    end_time: float = 0.0
    token_count: int = 0

    @property
    def duration(self) -> float:
        return max(self.end_time - self.start_time, 0.0)

    @property
    def tokens_per_second(self) -> float:
        if self.duration <= 0:
            return 0.0
        return self.token_count / self.duration

    def finish(self, token_count: int, end_time: float | None = None) -> StreamingStats:
        self.token_count = token_count
        self.end_time = end_time if end_time is not None else time.time()
        return self


@dataclass
class ToolCall:
    """A model-issued request to run a named tool.

    parameters is a dict when the provider already decoded it, or the raw
    JSON string the model emitted (repaired later by safe_parse_arguments).
    """

    tool_name: str
    parameters: dict[str, Any] | str = field(default_factory=dict)
    call_id: str = ""


@dataclass(frozen=True)
class AIRequest:
    """An inbound request. Frozen once dispatched; enhancement uses dataclasses.replace."""

    prompt: str
    system_prompt: str | None = None
    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    stream: bool = False
    on_token: Callable[[str], None] | None = None
    allowed_tools: tuple[str, ...] = ()
    enable_tool_calls: bool = False
    task_context: str | None = None
    session_id: str | None = None

    @property
    def tools_enabled(self) -> bool:
        return self.enable_tool_calls and bool(self.allowed_tools)


@dataclass
class AIResponse:
    content: str
    model: str
    content_blocks: list[ContentBlock] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    cost: float = 0.0
    duration: float = 0.0
    tool_calls: list[ToolCall] = field(default_factory=list)
    has_tool_interaction: bool = False
    streaming_stats: StreamingStats | None = None


@dataclass
class ConversationMessage:
    """Provider-neutral conversation entry. Adapters translate to their wire shape."""

    role: str  # "user" | "assistant" | "tool"
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None
    tool_name: str | None = None
    is_error: bool = False


@dataclass
class ProviderTurn:
    """One assistant turn as returned by an adapter."""

    content: str
    model: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    stop_reason: str | None = None
