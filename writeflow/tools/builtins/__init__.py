from __future__ import annotations

from pathlib import Path

from writeflow.tools.builtins.bash import BashTool
from writeflow.tools.builtins.edit_file import EditFileTool
from writeflow.tools.builtins.read_file import ReadFileTool
from writeflow.tools.builtins.search import GlobTool, GrepTool
from writeflow.tools.builtins.todos import ExitPlanModeTool, TodoReadTool, TodoWriteTool
from writeflow.tools.builtins.write_file import WriteFileTool
from writeflow.tools.registry import ToolRegistry


def register_builtins(
    registry: ToolRegistry,
    workspace_dir: Path,
    *,
    enable_bash: bool = True,
) -> None:
    """Register all built-in tools with the registry.

    File and search tools are sandboxed to workspace_dir. Task-list tools
    operate on the session passed through ToolContext.
    """
    registry.register(ReadFileTool(workspace_dir))
    registry.register(WriteFileTool(workspace_dir))
    registry.register(EditFileTool(workspace_dir))
    registry.register(GlobTool(workspace_dir))
    registry.register(GrepTool(workspace_dir))
    registry.register(TodoReadTool())
    registry.register(TodoWriteTool())
    registry.register(ExitPlanModeTool())

    if enable_bash:
        registry.register(BashTool(workspace_dir))
