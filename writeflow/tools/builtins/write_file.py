from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from writeflow.tools.base import BaseTool, PermissionLevel, RiskLevel
from writeflow.tools.builtins.workspace import relative_display, resolve_in_workspace

if TYPE_CHECKING:
    from writeflow.tools.context import ToolContext

logger = structlog.get_logger()


class WriteFileTool(BaseTool):
    """Create or overwrite a workspace file."""

    def __init__(self, workspace_dir: Path) -> None:
        self._workspace_dir = workspace_dir.resolve()

    @property
    def name(self) -> str:
        return "Write"

    @property
    def description(self) -> str:
        return (
            "Write content to a file within the workspace, creating parent "
            "directories as needed. Overwrites existing files."
        )

    @property
    def risk_level(self) -> RiskLevel:
        return RiskLevel.medium

    @property
    def permission_level(self) -> PermissionLevel:
        return PermissionLevel.safe_write

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "Path relative to the workspace."},
                "content": {"type": "string", "description": "Full file content."},
            },
            "required": ["file_path", "content"],
        }

    def summarize(self, arguments: dict) -> str:
        return f"Write file: {arguments.get('file_path', '')}"

    async def execute(self, arguments: dict, context: ToolContext | None = None) -> dict:
        raw_path = arguments.get("file_path") or arguments.get("path", "")
        content = arguments.get("content")
        if not isinstance(content, str):
            return {"error_code": "INVALID_ARGS", "message": "content must be a string."}

        target = resolve_in_workspace(self._workspace_dir, raw_path)
        if isinstance(target, dict):
            return target

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            data = content.encode("utf-8")
            target.write_bytes(data)
        except OSError as e:
            logger.exception("write_file_failed", path=str(target))
            return {"error_code": "WRITE_ERROR", "message": f"Failed to write file: {e}"}

        return {"path": relative_display(self._workspace_dir, target), "bytes": len(data)}
