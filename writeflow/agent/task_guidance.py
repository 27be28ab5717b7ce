"""Advisory task-order check for creative writing sessions.

Creative work is expected to move outline → characters → draft → polish.
When the session task list shows a later phase started before an earlier
one is finished, a short note is appended to the system prompt. The check
never blocks a request.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from writeflow.session.todos import Todo, TodoStatus

CREATIVE_TASK = re.compile(
    r"(小说|故事|创作|写作|剧本|诗歌|散文|续写|章节)"
    r"|\b(novel|story|stories|fiction|screenplay|poem|creative writing|chapter)\b",
    re.IGNORECASE,
)

PHASES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("outline", re.compile(r"(大纲|构思|结构|outline|structure|plan the plot)", re.IGNORECASE)),
    ("characters", re.compile(r"(角色|人物|character)", re.IGNORECASE)),
    ("draft", re.compile(r"(草稿|初稿|撰写|正文|draft|write (the )?chapter)", re.IGNORECASE)),
    ("polish", re.compile(r"(润色|校对|修改|终稿|polish|proofread|revise|edit)", re.IGNORECASE)),
)

_STARTED = frozenset({TodoStatus.in_progress, TodoStatus.completed})


@dataclass
class PhaseViolation:
    phase: str
    blocked_by: str
    todo: Todo


def is_creative_task(prompt: str) -> bool:
    return bool(CREATIVE_TASK.search(prompt))


def phase_of(todo: Todo) -> int | None:
    """Index into PHASES of the first phase the todo mentions, or None."""
    text = f"{todo.content} {todo.active_form}"
    for index, (_, pattern) in enumerate(PHASES):
        if pattern.search(text):
            return index
    return None


def find_order_violations(todos: list[Todo]) -> list[PhaseViolation]:
    phased = [(phase_of(t), t) for t in todos]
    unfinished = {
        index for index, t in phased
        if index is not None and t.status is not TodoStatus.completed
    }
    violations: list[PhaseViolation] = []
    for index, todo in phased:
        if index is None or todo.status not in _STARTED:
            continue
        earlier = sorted(i for i in unfinished if i < index)
        if earlier:
            violations.append(PhaseViolation(
                phase=PHASES[index][0],
                blocked_by=PHASES[earlier[0]][0],
                todo=todo,
            ))
    return violations


def task_order_advisory(prompt: str, todos: list[Todo]) -> str | None:
    if not todos or not is_creative_task(prompt):
        return None
    violations = find_order_violations(todos)
    if not violations:
        return None
    details = "; ".join(
        f"'{v.todo.content}' ({v.phase}) started before {v.blocked_by} is complete"
        for v in violations
    )
    order = " → ".join(name for name, _ in PHASES)
    return (
        f"Task order note: creative writing usually proceeds {order}. "
        f"Current task list: {details}. "
        "Consider finishing the earlier phase first; continue if the user asked otherwise."
    )
