from __future__ import annotations

import itertools
import re
from dataclasses import dataclass
from typing import Any

from writeflow.config.settings import ContentSettings
from writeflow.content.blocks import (
    CollapsibleState,
    ContentBlock,
    LongContentBlock,
    RenderMetadata,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from writeflow.content.classifier import (
    CREATIVE_LABELS,
    classify,
    collapse_line_limit,
    line_count,
    should_auto_collapse,
)
from writeflow.tools.executor import ToolExecutionResult, format_result

SHORT_CONTENT_CHARS = 500
SHORT_PARAGRAPH_CHARS = 200
LONG_LINE_CHARS = 120

_THINKING = re.compile(r"<thinking>(.*?)</thinking>", re.DOTALL)
_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")
_CODE_BLOCK = re.compile(r"```[\s\S]*?```")
_TABLE_ROW = re.compile(r"\|.*\|")
_LINK = re.compile(r"\[.*\]\(.*\)")
_EXCESS_BLANK_LINES = re.compile(r"\n{3,}")
_TRAILING_SPACE = re.compile(r"[ \t]+$", re.MULTILINE)


@dataclass
class ContentStats:
    lines: int
    characters: int
    words: int
    code_blocks: int
    has_long_lines: bool
    complexity: str
    content_type: str


class ContentProcessor:
    """Turns response text into renderable content blocks.

    Long output gets a LongContentBlock with collapse state; creative writing
    always stays expanded.
    """

    def __init__(self, thresholds: ContentSettings | None = None) -> None:
        self._thresholds = thresholds or ContentSettings()
        self._ids = itertools.count(1)

    def process(self, text: str) -> list[ContentBlock]:
        """Split <thinking> sections into ThinkingBlocks; the rest goes through create_smart_blocks."""
        blocks: list[ContentBlock] = []
        pos = 0
        for match in _THINKING.finditer(text):
            before = text[pos:match.start()].strip()
            if before:
                blocks.extend(self.create_smart_blocks(before))
            blocks.append(ThinkingBlock(thinking=match.group(1).strip()))
            pos = match.end()
        rest = text[pos:].strip() if pos else text
        if rest:
            blocks.extend(self.create_smart_blocks(rest))
        return blocks

    def create_long_content_block(
        self,
        text: str,
        title: str | None = None,
        content_type: str | None = None,
    ) -> LongContentBlock:
        content_type = content_type or classify(text)
        auto = should_auto_collapse(text, content_type, self._thresholds)
        lines = line_count(text)
        return LongContentBlock(
            content=text,
            content_type=content_type,
            title=title,
            collapsible=CollapsibleState(
                id=f"content_{next(self._ids)}",
                collapsed=auto,
                auto_collapse=content_type not in CREATIVE_LABELS,
                max_lines=collapse_line_limit(content_type, self._thresholds),
            ),
            render_metadata=RenderMetadata(
                estimated_lines=lines,
                has_long_content=auto or lines > self._thresholds.lines,
                content_type=content_type,
            ),
        )

    def create_smart_blocks(self, text: str) -> list[ContentBlock]:
        if len(text) < SHORT_CONTENT_CHARS:
            return [TextBlock(text=text)]

        paragraphs = [p.strip() for p in _PARAGRAPH_SPLIT.split(text) if p.strip()]
        if len(paragraphs) <= 1:
            return [self.create_long_content_block(text)]

        blocks: list[ContentBlock] = []
        for paragraph in paragraphs:
            if len(paragraph) < SHORT_PARAGRAPH_CHARS:
                blocks.append(TextBlock(text=paragraph))
            else:
                blocks.append(self.create_long_content_block(paragraph))
        return blocks

    def create_tool_blocks(self, results: list[ToolExecutionResult]) -> list[ContentBlock]:
        blocks: list[ContentBlock] = []
        for r in results:
            use_id = r.call_id or r.execution_id
            blocks.append(ToolUseBlock(id=use_id, name=r.tool_name, input=dict(r.arguments)))
            if r.succeeded:
                content = format_result(r.tool_name, r.result)
            else:
                content = r.error or "Tool execution failed"
            blocks.append(ToolResultBlock(
                tool_use_id=use_id, content=content, is_error=not r.succeeded,
            ))
        return blocks

    def analyze(self, text: str) -> ContentStats:
        lines = text.split("\n")
        code_blocks = len(_CODE_BLOCK.findall(text))
        has_long_lines = any(len(line) > LONG_LINE_CHARS for line in lines)

        score = 0.0
        if len(lines) > 50:
            score += 2
        elif len(lines) > 20:
            score += 1
        if code_blocks:
            score += 2
        if has_long_lines:
            score += 1
        if _TABLE_ROW.search(text):
            score += 1
        if _LINK.search(text):
            score += 0.5
        complexity = "complex" if score >= 4 else "medium" if score >= 2 else "simple"

        return ContentStats(
            lines=len(lines),
            characters=len(text),
            words=len(text.split()),
            code_blocks=code_blocks,
            has_long_lines=has_long_lines,
            complexity=complexity,
            content_type=classify(text),
        )

    def recommend_collapse(self, text: str) -> dict[str, Any]:
        content_type = classify(text)
        if content_type in CREATIVE_LABELS:
            return {
                "should_collapse": False,
                "reason": "Creative content stays expanded for reading",
                "content_type": content_type,
            }
        if should_auto_collapse(text, content_type, self._thresholds):
            lines = line_count(text)
            reason = f"Long content ({lines} lines, {len(text)} characters)"
            return {"should_collapse": True, "reason": reason, "content_type": content_type}
        return {
            "should_collapse": False,
            "reason": "Content length is moderate",
            "content_type": content_type,
        }

    def format_content(self, text: str, content_type: str | None = None) -> str:
        content_type = content_type or classify(text)
        formatted = _TRAILING_SPACE.sub("", text)
        if content_type != "code-block":
            formatted = _EXCESS_BLANK_LINES.sub("\n\n", formatted)
        return formatted.strip("\n")
