from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from writeflow.tools.base import BaseTool, PermissionLevel, RiskLevel
from writeflow.tools.builtins.workspace import relative_display, resolve_in_workspace

if TYPE_CHECKING:
    from writeflow.tools.context import ToolContext

logger = structlog.get_logger()


class EditFileTool(BaseTool):
    """Exact string replacement in an existing workspace file."""

    def __init__(self, workspace_dir: Path) -> None:
        self._workspace_dir = workspace_dir.resolve()

    @property
    def name(self) -> str:
        return "Edit"

    @property
    def description(self) -> str:
        return (
            "Replace old_string with new_string in a workspace file. old_string "
            "must occur exactly once unless replace_all is true."
        )

    @property
    def risk_level(self) -> RiskLevel:
        return RiskLevel.medium

    @property
    def permission_level(self) -> PermissionLevel:
        return PermissionLevel.system_modify

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "Path relative to the workspace."},
                "old_string": {"type": "string", "description": "Exact text to replace."},
                "new_string": {"type": "string", "description": "Replacement text."},
                "replace_all": {"type": "boolean", "description": "Replace every occurrence."},
            },
            "required": ["file_path", "old_string", "new_string"],
        }

    def summarize(self, arguments: dict) -> str:
        return f"Edit file: {arguments.get('file_path', '')}"

    async def execute(self, arguments: dict, context: ToolContext | None = None) -> dict:
        raw_path = arguments.get("file_path") or arguments.get("path", "")
        old = arguments.get("old_string")
        new = arguments.get("new_string")
        if not isinstance(old, str) or not isinstance(new, str) or not old:
            return {
                "error_code": "INVALID_ARGS",
                "message": "old_string (non-empty) and new_string must be strings.",
            }

        target = resolve_in_workspace(self._workspace_dir, raw_path)
        if isinstance(target, dict):
            return target
        if not target.is_file():
            return {"error_code": "FILE_NOT_FOUND", "message": f"File not found: {raw_path}"}

        try:
            text = target.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            return {"error_code": "READ_ERROR", "message": f"Failed to read file: {e}"}

        count = text.count(old)
        if count == 0:
            return {"error_code": "NO_MATCH", "message": "old_string not found in file."}
        if count > 1 and not arguments.get("replace_all"):
            return {
                "error_code": "AMBIGUOUS_MATCH",
                "message": f"old_string occurs {count} times; pass replace_all or add context.",
            }

        updated = text.replace(old, new) if arguments.get("replace_all") else text.replace(old, new, 1)
        try:
            target.write_text(updated, encoding="utf-8")
        except OSError as e:
            logger.exception("edit_file_failed", path=str(target))
            return {"error_code": "WRITE_ERROR", "message": f"Failed to write file: {e}"}

        return {
            "path": relative_display(self._workspace_dir, target),
            "replacements": count if arguments.get("replace_all") else 1,
        }
