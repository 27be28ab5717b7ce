"""Content-type detection and auto-collapse policy.

Rules are evaluated in order and the first match wins, except that any
creative label overrides an earlier non-creative match. Creative writing is
never collapsed, whatever its length.
"""

from __future__ import annotations

import re

from writeflow.config.settings import ContentSettings

LONG_TEXT = "long-text"

CLASSIFICATION_RULES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("tool-execution", re.compile(r"^(🔧|⚡|📖|🔍|✏️|✂️)")),
    ("code-block", re.compile(r"^```|\n.*?```", re.DOTALL)),
    ("file-content", re.compile(r"^(📄|File:|文件:)")),
    ("error-message", re.compile(r"^(❌|Error:|错误:|Exception)")),
    ("analysis-result", re.compile(r"^(📊|分析|Analysis|Summary)|项目分析")),
    (
        "creative-content",
        re.compile(
            r"^(📝|✍️|🎭|📖|📚)|(写作|创作|小说|文章|故事|散文|诗歌|剧本)"
            r"|\b(stories|story|essay|poem|poetry|screenplay)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "creative-writing",
        re.compile(
            r"(创意写作|文学创作|自由写作|想象力|灵感|创造性)"
            r"|\b(creative writing|free writing|imagination)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "article",
        re.compile(
            r"(文章|论文|评论|报告|专栏|博客|教程|指南)"
            r"|\b(article|blog post|tutorial)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "novel",
        re.compile(
            r"(小说|故事|情节|角色|对话|章节|续写|创作小说)"
            r"|\b(novel|chapter|protagonist)\b",
            re.IGNORECASE,
        ),
    ),
)

CREATIVE_LABELS = frozenset({"creative-content", "creative-writing", "article", "novel"})
ALL_LABELS = tuple(label for label, _ in CLASSIFICATION_RULES) + (LONG_TEXT,)

_ELEVATED_LINE_LIMIT = 15


def classify(text: str) -> str:
    matched: str | None = None
    for label, pattern in CLASSIFICATION_RULES:
        if not pattern.search(text):
            continue
        if label in CREATIVE_LABELS:
            return label
        if matched is None:
            matched = label
    return matched or LONG_TEXT


def is_creative(text: str) -> bool:
    return classify(text) in CREATIVE_LABELS


def line_count(text: str) -> int:
    return len(text.split("\n"))


def collapse_line_limit(content_type: str, thresholds: ContentSettings | None = None) -> int:
    """Display height a collapsed block of this type keeps."""
    t = thresholds or ContentSettings()
    return {
        "code-block": t.code_block_lines,
        "tool-execution": t.tool_output_lines,
        "error-message": t.error_message_lines,
        "file-content": _ELEVATED_LINE_LIMIT,
        "analysis-result": _ELEVATED_LINE_LIMIT,
    }.get(content_type, t.lines)


def should_auto_collapse(
    text: str,
    content_type: str | None = None,
    thresholds: ContentSettings | None = None,
) -> bool:
    content_type = content_type or classify(text)
    if content_type in CREATIVE_LABELS:
        return False
    t = thresholds or ContentSettings()
    lines = line_count(text)
    if content_type in ("code-block", "tool-execution", "error-message",
                        "file-content", "analysis-result"):
        return lines > collapse_line_limit(content_type, t)
    return lines > t.lines or len(text) > t.characters
