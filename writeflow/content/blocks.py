from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class TextBlock:
    text: str
    type: str = field(default="text", init=False)


@dataclass
class ThinkingBlock:
    thinking: str
    type: str = field(default="thinking", init=False)


@dataclass
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    type: str = field(default="tool_use", init=False)


@dataclass
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False
    type: str = field(default="tool_result", init=False)


@dataclass
class CollapsibleState:
    id: str
    collapsed: bool
    auto_collapse: bool
    max_lines: int


@dataclass
class RenderMetadata:
    estimated_lines: int
    has_long_content: bool
    content_type: str


@dataclass
class LongContentBlock:
    """Text the renderer may fold behind a one-line title."""

    content: str
    content_type: str
    collapsible: CollapsibleState
    render_metadata: RenderMetadata
    title: str | None = None
    type: str = field(default="long_content", init=False)


ContentBlock = TextBlock | ThinkingBlock | ToolUseBlock | ToolResultBlock | LongContentBlock
