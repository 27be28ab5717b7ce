"""Tests for the creative-writing task-order advisory."""

from __future__ import annotations

from writeflow.agent.task_guidance import (
    find_order_violations,
    is_creative_task,
    phase_of,
    task_order_advisory,
)
from writeflow.session.todos import Todo, TodoStatus


def _todo(todo_id: str, content: str, status: TodoStatus = TodoStatus.pending) -> Todo:
    return Todo(id=todo_id, content=content, active_form=content, status=status)


class TestPhases:
    def test_phase_of(self) -> None:
        assert phase_of(_todo("1", "Outline the plot")) == 0
        assert phase_of(_todo("2", "设计人物小传")) == 1
        assert phase_of(_todo("3", "Draft chapter one")) == 2
        assert phase_of(_todo("4", "润色全文")) == 3
        assert phase_of(_todo("5", "Buy coffee")) is None

    def test_creative_detection(self) -> None:
        assert is_creative_task("帮我写一篇科幻小说")
        assert is_creative_task("Continue the novel from chapter 3")
        assert not is_creative_task("Fix the failing unit test")


class TestViolations:
    def test_draft_before_outline_flagged(self) -> None:
        todos = [
            _todo("1", "Outline the plot", TodoStatus.pending),
            _todo("2", "Draft chapter one", TodoStatus.in_progress),
        ]
        [violation] = find_order_violations(todos)
        assert violation.phase == "draft"
        assert violation.blocked_by == "outline"
        assert violation.todo.id == "2"

    def test_in_order_progress_clean(self) -> None:
        todos = [
            _todo("1", "Outline the plot", TodoStatus.completed),
            _todo("2", "Define the main character", TodoStatus.completed),
            _todo("3", "Draft chapter one", TodoStatus.in_progress),
            _todo("4", "Polish the prose"),
        ]
        assert find_order_violations(todos) == []

    def test_unphased_todos_ignored(self) -> None:
        todos = [_todo("1", "Buy coffee"), _todo("2", "Polish", TodoStatus.in_progress)]
        assert find_order_violations(todos) == []


class TestAdvisory:
    def test_note_for_creative_prompt(self) -> None:
        todos = [
            _todo("1", "Outline the plot"),
            _todo("2", "Polish the ending", TodoStatus.in_progress),
        ]
        note = task_order_advisory("Keep working on my story", todos)
        assert note is not None
        assert note.startswith(
            "Task order note: creative writing usually proceeds "
            "outline → characters → draft → polish."
        )
        assert "'Polish the ending' (polish) started before outline is complete" in note

    def test_no_note_for_non_creative_prompt(self) -> None:
        todos = [
            _todo("1", "Outline the plot"),
            _todo("2", "Polish the ending", TodoStatus.in_progress),
        ]
        assert task_order_advisory("Summarize this spreadsheet", todos) is None

    def test_no_note_without_todos(self) -> None:
        assert task_order_advisory("Write a story", []) is None
