from __future__ import annotations

from pathlib import Path

import structlog

logger = structlog.get_logger()


def resolve_in_workspace(workspace_dir: Path, raw_path: str) -> Path | dict:
    """Resolve *raw_path* inside the workspace.

    Returns the resolved Path, or an error dict when the path is empty or
    escapes the workspace (via "..", an absolute path, or a symlink).
    """
    if not raw_path or not raw_path.strip():
        return {"error_code": "INVALID_ARGS", "message": "A file path is required."}

    target = (workspace_dir / raw_path).resolve()
    if not target.is_relative_to(workspace_dir):
        logger.warning("path_escape_blocked", raw_path=raw_path, target=str(target))
        return {
            "error_code": "ACCESS_DENIED",
            "message": "Path escapes workspace boundary.",
        }
    return target


def relative_display(workspace_dir: Path, path: Path) -> str:
    try:
        return str(path.relative_to(workspace_dir))
    except ValueError:
        return str(path)
