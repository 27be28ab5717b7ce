from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from writeflow.tools.base import BaseTool
from writeflow.tools.builtins.workspace import relative_display, resolve_in_workspace

if TYPE_CHECKING:
    from writeflow.tools.context import ToolContext

logger = structlog.get_logger()


class ReadFileTool(BaseTool):
    """Read a file from the workspace directory with path safety enforcement."""

    def __init__(self, workspace_dir: Path) -> None:
        self._workspace_dir = workspace_dir.resolve()

    @property
    def name(self) -> str:
        return "Read"

    @property
    def description(self) -> str:
        return (
            "Read a text file within the workspace. Optionally pass offset "
            "(1-based line) and limit to read a slice of a long file."
        )

    @property
    def is_read_only(self) -> bool:
        return True

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "file_path": {
                    "type": "string",
                    "description": "Path relative to the workspace, e.g. 'drafts/chapter1.md'.",
                },
                "offset": {"type": "integer", "description": "First line to read (1-based)."},
                "limit": {"type": "integer", "description": "Maximum number of lines."},
            },
            "required": ["file_path"],
        }

    def summarize(self, arguments: dict) -> str:
        return f"Read file: {arguments.get('file_path', '')}"

    async def execute(self, arguments: dict, context: ToolContext | None = None) -> dict:
        raw_path = arguments.get("file_path") or arguments.get("path", "")
        target = resolve_in_workspace(self._workspace_dir, raw_path)
        if isinstance(target, dict):
            return target

        if not target.is_file():
            return {
                "error_code": "FILE_NOT_FOUND",
                "message": f"File not found: {raw_path}",
            }

        try:
            content = target.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.exception("read_file_failed", path=str(target))
            return {
                "error_code": "READ_ERROR",
                "message": f"Failed to read file: {e}",
            }

        offset = arguments.get("offset")
        limit = arguments.get("limit")
        if offset or limit:
            lines = content.splitlines(keepends=True)
            start = max(int(offset or 1) - 1, 0)
            end = start + int(limit) if limit else None
            content = "".join(lines[start:end])

        return {
            "content": content,
            "path": relative_display(self._workspace_dir, target),
            "size": len(content),
        }
