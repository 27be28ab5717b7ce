from __future__ import annotations

from typing import TYPE_CHECKING

from writeflow.session.todos import Todo, TodoPriority, TodoStatus
from writeflow.tools.base import BaseTool, PermissionLevel, RiskLevel
from writeflow.tools.permissions import PermissionMode

if TYPE_CHECKING:
    from writeflow.tools.context import ToolContext

_NO_SESSION = {
    "error_code": "NO_SESSION",
    "message": "Todo tools need a session context.",
}


class TodoReadTool(BaseTool):
    """Return the session task list."""

    @property
    def name(self) -> str:
        return "todo_read"

    @property
    def description(self) -> str:
        return "Read the current task list for this writing session."

    @property
    def is_read_only(self) -> bool:
        return True

    @property
    def parameters(self) -> dict:
        return {"type": "object", "properties": {}, "required": []}

    def summarize(self, arguments: dict) -> str:
        return "Read task list"

    async def execute(self, arguments: dict, context: ToolContext | None = None) -> dict:
        if context is None or context.session is None:
            return dict(_NO_SESSION)
        manager = context.session.todos
        stats = manager.stats()
        return {
            "todos": [t.to_dict() for t in manager.sorted_todos()],
            "total": stats.total,
            "completed": stats.completed,
        }


class TodoWriteTool(BaseTool):
    """Replace the session task list."""

    @property
    def name(self) -> str:
        return "todo_write"

    @property
    def description(self) -> str:
        return (
            "Replace the task list for this writing session. Keep at most one "
            "task in_progress. Use it to plan multi-step writing work "
            "(outline, characters, draft, polish)."
        )

    @property
    def risk_level(self) -> RiskLevel:
        return RiskLevel.low

    @property
    def permission_level(self) -> PermissionLevel:
        return PermissionLevel.safe_write

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "todos": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "id": {"type": "string"},
                            "content": {"type": "string"},
                            "activeForm": {"type": "string"},
                            "status": {"type": "string", "enum": [s.value for s in TodoStatus]},
                            "priority": {"type": "string", "enum": [p.value for p in TodoPriority]},
                        },
                        "required": ["content", "status"],
                    },
                },
            },
            "required": ["todos"],
        }

    def summarize(self, arguments: dict) -> str:
        return f"Update task list ({len(arguments.get('todos') or [])} items)"

    async def execute(self, arguments: dict, context: ToolContext | None = None) -> dict | str:
        if context is None or context.session is None:
            return dict(_NO_SESSION)
        raw_todos = arguments.get("todos")
        if not isinstance(raw_todos, list):
            return {"error_code": "INVALID_ARGS", "message": "todos must be an array."}

        try:
            todos = [
                Todo(
                    id=str(item.get("id") or f"todo_{i}"),
                    content=str(item.get("content", "")),
                    active_form=str(
                        item.get("activeForm") or item.get("active_form") or item.get("content", "")
                    ),
                    status=TodoStatus(item.get("status", "pending")),
                    priority=TodoPriority(item.get("priority", "medium")),
                )
                for i, item in enumerate(raw_todos, start=1)
            ]
            context.session.todos.replace_todos(todos)
        except (ValueError, AttributeError) as e:
            return {"error_code": "INVALID_ARGS", "message": f"Invalid todos: {e}"}

        stats = context.session.todos.stats()
        return (
            f"Task list updated: {stats.total} tasks "
            f"({stats.completed} completed, {stats.in_progress} in progress, "
            f"{stats.pending} pending)"
        )


class ExitPlanModeTool(BaseTool):
    """Leave plan mode after presenting a plan; edits become possible again."""

    @property
    def name(self) -> str:
        return "exit_plan_mode"

    @property
    def description(self) -> str:
        return "Present the finished plan and leave read-only plan mode."

    @property
    def is_read_only(self) -> bool:
        return True

    @property
    def is_concurrency_safe(self) -> bool:
        # Switches the session permission mode
        return False

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {"plan": {"type": "string", "description": "The plan to present."}},
            "required": ["plan"],
        }

    def summarize(self, arguments: dict) -> str:
        return "Exit plan mode"

    async def execute(self, arguments: dict, context: ToolContext | None = None) -> dict | str:
        if context is None or context.session is None:
            return dict(_NO_SESSION)
        context.session.permissions.set_mode(PermissionMode.default)
        return f"Plan accepted. Leaving plan mode.\n\n{arguments.get('plan', '')}".rstrip()
