from __future__ import annotations

import itertools
import time
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any

import structlog

logger = structlog.get_logger()


class TodoStatus(StrEnum):
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"


class TodoPriority(StrEnum):
    high = "high"
    medium = "medium"
    low = "low"


# Display order: completed first, then in-progress, then pending
STATUS_ORDER = {TodoStatus.completed: 0, TodoStatus.in_progress: 1, TodoStatus.pending: 2}
PRIORITY_ORDER = {TodoPriority.high: 0, TodoPriority.medium: 1, TodoPriority.low: 2}


@dataclass
class Todo:
    id: str
    content: str
    active_form: str
    status: TodoStatus = TodoStatus.pending
    priority: TodoPriority = TodoPriority.medium
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TodoStats:
    total: int
    pending: int
    in_progress: int
    completed: int

    @property
    def completion_rate(self) -> float:
        return self.completed / self.total if self.total else 0.0


class TodoManager:
    """In-memory, session-scoped task list.

    Shared by the coordinator (task-order advisory) and the todo tools.
    Not locked: every access runs on the single event loop thread.
    """

    def __init__(self) -> None:
        self._todos: list[Todo] = []
        self._ids = itertools.count(1)

    def get_todos(self) -> list[Todo]:
        return list(self._todos)

    def sorted_todos(self) -> list[Todo]:
        return sorted(
            self._todos,
            key=lambda t: (STATUS_ORDER[t.status], PRIORITY_ORDER[t.priority]),
        )

    def get(self, todo_id: str) -> Todo | None:
        return next((t for t in self._todos if t.id == todo_id), None)

    def add(
        self,
        content: str,
        active_form: str | None = None,
        priority: TodoPriority = TodoPriority.medium,
    ) -> Todo:
        todo = Todo(
            id=f"todo_{next(self._ids)}",
            content=content,
            active_form=active_form or content,
            priority=priority,
        )
        self._todos.append(todo)
        return todo

    def replace_todos(self, todos: list[Todo]) -> None:
        """Replace the whole list. Raises ValueError if the list is invalid."""
        error = validate_todos(todos)
        if error:
            raise ValueError(error)
        self._todos = list(todos)
        logger.debug("todos_replaced", count=len(todos))

    def update_status(self, todo_id: str, status: TodoStatus) -> Todo | None:
        """Set a todo's status. Starting a task demotes any other in-progress task."""
        todo = self.get(todo_id)
        if todo is None:
            return None
        if status is TodoStatus.in_progress:
            for other in self._todos:
                if other is not todo and other.status is TodoStatus.in_progress:
                    other.status = TodoStatus.pending
                    other.updated_at = time.time()
        todo.status = status
        todo.updated_at = time.time()
        return todo

    def current_task(self) -> Todo | None:
        return next((t for t in self._todos if t.status is TodoStatus.in_progress), None)

    def stats(self) -> TodoStats:
        counts = {s: 0 for s in TodoStatus}
        for todo in self._todos:
            counts[todo.status] += 1
        return TodoStats(
            total=len(self._todos),
            pending=counts[TodoStatus.pending],
            in_progress=counts[TodoStatus.in_progress],
            completed=counts[TodoStatus.completed],
        )

    def clear(self) -> None:
        self._todos.clear()


def validate_todos(todos: list[Todo]) -> str | None:
    """Return an error message, or None if the list is acceptable."""
    ids = [t.id for t in todos]
    if len(ids) != len(set(ids)):
        return "Duplicate todo ids"
    if sum(1 for t in todos if t.status is TodoStatus.in_progress) > 1:
        return "Only one todo may be in_progress at a time"
    for todo in todos:
        if not todo.content.strip():
            return f"Todo '{todo.id}' has empty content"
        if not todo.active_form.strip():
            return f"Todo '{todo.id}' has empty active_form"
    return None
