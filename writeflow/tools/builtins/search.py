from __future__ import annotations

import re
from pathlib import Path
from typing import TYPE_CHECKING

from writeflow.tools.base import BaseTool
from writeflow.tools.builtins.workspace import relative_display, resolve_in_workspace

if TYPE_CHECKING:
    from writeflow.tools.context import ToolContext

MAX_GLOB_RESULTS = 200
MAX_GREP_MATCHES = 100


class GlobTool(BaseTool):
    """Find workspace files by glob pattern."""

    def __init__(self, workspace_dir: Path) -> None:
        self._workspace_dir = workspace_dir.resolve()

    @property
    def name(self) -> str:
        return "Glob"

    @property
    def description(self) -> str:
        return "List workspace files matching a glob pattern such as '**/*.md'."

    @property
    def is_read_only(self) -> bool:
        return True

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "Glob pattern."},
                "path": {"type": "string", "description": "Directory to search (default: workspace root)."},
            },
            "required": ["pattern"],
        }

    def summarize(self, arguments: dict) -> str:
        return f"Find files: {arguments.get('pattern', '')}"

    async def execute(self, arguments: dict, context: ToolContext | None = None) -> dict:
        pattern = arguments.get("pattern")
        if not isinstance(pattern, str) or not pattern:
            return {"error_code": "INVALID_ARGS", "message": "pattern is required."}
        base = resolve_in_workspace(self._workspace_dir, arguments.get("path") or ".")
        if isinstance(base, dict):
            return base

        matches = sorted(
            relative_display(self._workspace_dir, p)
            for p in base.glob(pattern)
            if p.is_file() and p.resolve().is_relative_to(self._workspace_dir)
        )
        return {
            "files": matches[:MAX_GLOB_RESULTS],
            "total": len(matches),
            "truncated": len(matches) > MAX_GLOB_RESULTS,
        }


class GrepTool(BaseTool):
    """Search workspace file contents with a regular expression."""

    def __init__(self, workspace_dir: Path) -> None:
        self._workspace_dir = workspace_dir.resolve()

    @property
    def name(self) -> str:
        return "Grep"

    @property
    def description(self) -> str:
        return (
            "Search file contents in the workspace with a regular expression. "
            "Returns 'path:line: text' matches."
        )

    @property
    def is_read_only(self) -> bool:
        return True

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "Regular expression."},
                "glob": {"type": "string", "description": "File filter, default '**/*'."},
                "case_insensitive": {"type": "boolean"},
            },
            "required": ["pattern"],
        }

    def summarize(self, arguments: dict) -> str:
        return f"Search content: {arguments.get('pattern', '')}"

    async def execute(self, arguments: dict, context: ToolContext | None = None) -> dict:
        try:
            regex = re.compile(
                arguments.get("pattern", ""),
                re.IGNORECASE if arguments.get("case_insensitive") else 0,
            )
        except re.error as e:
            return {"error_code": "INVALID_ARGS", "message": f"Invalid regex: {e}"}

        matches: list[str] = []
        for path in sorted(self._workspace_dir.glob(arguments.get("glob") or "**/*")):
            if context is not None and context.aborted:
                break
            if not path.is_file():
                continue
            try:
                lines = path.read_text(encoding="utf-8").splitlines()
            except (OSError, UnicodeDecodeError):
                continue
            rel = relative_display(self._workspace_dir, path)
            for lineno, line in enumerate(lines, start=1):
                if regex.search(line):
                    matches.append(f"{rel}:{lineno}: {line.strip()}")
                    if len(matches) >= MAX_GREP_MATCHES:
                        return {"matches": matches, "truncated": True}
        return {"matches": matches, "truncated": False}
