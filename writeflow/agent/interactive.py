"""Plan → confirm → execute → review state machine for tool-call batches.

Each tool-calling round becomes an ExecutionPlan (risk and time annotated)
run through an ExecutionSession. Tools execute strictly in plan order;
failures may be retried, skipped or used to cancel the rest of the plan.
"""

from __future__ import annotations

import inspect
import itertools
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog

from writeflow.agent.models import ToolCall
from writeflow.infra.errors import ExecutionStateError
from writeflow.tools.base import RISK_ORDER, RiskLevel
from writeflow.tools.executor import ToolExecutionResult, ToolExecutor

logger = structlog.get_logger()

SESSION_TTL_HOURS = 24.0


class ExecutionStage(StrEnum):
    PLANNING = "planning"
    CONFIRMING = "confirming"
    EXECUTING = "executing"
    REVIEWING = "reviewing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class UserChoice(StrEnum):
    CONTINUE = "continue"
    PAUSE = "pause"
    CANCEL = "cancel"
    SKIP = "skip"
    RETRY = "retry"
    PREVIEW = "preview"
    MODIFY = "modify"


_FORWARD_ORDER = (
    ExecutionStage.PLANNING,
    ExecutionStage.CONFIRMING,
    ExecutionStage.EXECUTING,
    ExecutionStage.REVIEWING,
    ExecutionStage.COMPLETED,
)
TERMINAL_STAGES = frozenset({ExecutionStage.COMPLETED, ExecutionStage.CANCELLED})

TOOL_RISK: dict[str, RiskLevel] = {
    "Read": RiskLevel.low,
    "Grep": RiskLevel.low,
    "Glob": RiskLevel.low,
    "Write": RiskLevel.medium,
    "Edit": RiskLevel.medium,
    "Bash": RiskLevel.high,
}

# Milliseconds
TOOL_ESTIMATED_TIME: dict[str, int] = {
    "Read": 50,
    "Write": 100,
    "Edit": 80,
    "Grep": 200,
    "Bash": 500,
    "Glob": 150,
}
DEFAULT_ESTIMATED_TIME = 100

IRREVERSIBLE_TOOLS = frozenset({"Write", "Edit", "Bash"})
PREVIEWABLE_TOOLS = frozenset({"Read", "Grep", "Glob"})
DEPENDS_ON_READS = frozenset({"Write", "Edit"})


@dataclass
class PlannedTool:
    id: str
    tool_name: str
    parameters: dict[str, Any] | str
    description: str
    estimated_time: int
    risk_level: RiskLevel
    call_id: str = ""
    dependencies: list[str] = field(default_factory=list)
    preview_available: bool = False


@dataclass
class ExecutionPlan:
    id: str
    title: str
    tools: list[PlannedTool]
    estimated_time: int
    risk_level: RiskLevel
    reversible: bool
    created_at: float = field(default_factory=time.time)


@dataclass
class ChoiceRecord:
    tool_index: int
    choice: UserChoice
    at: float = field(default_factory=time.time)


@dataclass
class ExecutionSession:
    id: str
    plan: ExecutionPlan
    stage: ExecutionStage = ExecutionStage.PLANNING
    current_tool_index: int = 0
    results: list[ToolExecutionResult] = field(default_factory=list)
    user_choices: list[ChoiceRecord] = field(default_factory=list)
    start_time: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    end_time: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    @property
    def failed_results(self) -> list[ToolExecutionResult]:
        return [r for r in self.results if not r.succeeded]


ConfirmCallback = Callable[[ExecutionPlan], "UserChoice | Awaitable[UserChoice]"]
FailureCallback = Callable[
    [PlannedTool, ToolExecutionResult], "UserChoice | Awaitable[UserChoice]"
]
ProgressCallback = Callable[[ExecutionSession, PlannedTool, ToolExecutionResult], None]


@dataclass
class InteractionOptions:
    """How a plan runs.

    confirm and on_failure may be plain or async callables. Without a confirm
    callback, a plan that requires confirmation is cancelled.
    """

    require_confirmation: bool = True
    allow_interruption: bool = False
    confirm: ConfirmCallback | None = None
    on_failure: FailureCallback | None = None
    on_progress: ProgressCallback | None = None
    max_retries_per_tool: int = 2


def can_transition(current: ExecutionStage, target: ExecutionStage) -> bool:
    """Forward-only; CANCELLED reachable from any non-terminal stage."""
    if current in TERMINAL_STAGES:
        return False
    if target is ExecutionStage.CANCELLED:
        return True
    return _FORWARD_ORDER.index(target) > _FORWARD_ORDER.index(current)


def describe_tool_call(tool_name: str, parameters: dict[str, Any]) -> str:
    path = parameters.get("file_path") or parameters.get("path") or ""
    if tool_name == "Read":
        return f"Read file: {path}"
    if tool_name == "Write":
        return f"Write file: {path}"
    if tool_name == "Edit":
        return f"Edit file: {path}"
    if tool_name == "Bash":
        return f"Execute command: {parameters.get('command', '')}"
    if tool_name == "Grep":
        return f"Search content: {parameters.get('pattern', '')}"
    if tool_name == "Glob":
        return f"Find files: {parameters.get('pattern', '')}"
    return f"Run {tool_name}"


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class InteractiveExecutionManager:
    """Builds execution plans and drives ExecutionSessions through their stages.

    Sessions live in memory. Each new execution first reaps sessions idle for
    longer than the TTL (cleanup_expired_sessions()).
    """

    def __init__(
        self,
        executor: ToolExecutor,
        *,
        ttl_hours: float = SESSION_TTL_HOURS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._executor = executor
        self._ttl_s = ttl_hours * 3600
        self._clock = clock
        self._sessions: dict[str, ExecutionSession] = {}
        self._plan_ids = itertools.count(1)
        self._session_ids = itertools.count(1)

    # ── Planning ──

    def create_execution_plan(
        self, calls: list[ToolCall], title: str | None = None
    ) -> ExecutionPlan:
        planned: list[PlannedTool] = []
        read_ids: list[str] = []
        for index, call in enumerate(calls):
            params = call.parameters if isinstance(call.parameters, dict) else {}
            tool_id = f"tool_{index}"
            tool = self._executor.registry.get(call.tool_name)
            risk = TOOL_RISK.get(call.tool_name)
            if risk is None:
                risk = tool.risk_level if tool is not None else RiskLevel.medium
            description = (
                tool.summarize(params) if tool is not None
                else describe_tool_call(call.tool_name, params)
            )
            planned.append(PlannedTool(
                id=tool_id,
                tool_name=call.tool_name,
                parameters=call.parameters,
                description=description,
                estimated_time=TOOL_ESTIMATED_TIME.get(call.tool_name, DEFAULT_ESTIMATED_TIME),
                risk_level=risk,
                call_id=call.call_id,
                dependencies=list(read_ids) if call.tool_name in DEPENDS_ON_READS else [],
                preview_available=call.tool_name in PREVIEWABLE_TOOLS,
            ))
            if call.tool_name == "Read":
                read_ids.append(tool_id)

        now_ms = int(self._clock() * 1000)
        plan = ExecutionPlan(
            id=f"plan_{next(self._plan_ids)}_{now_ms}",
            title=title or f"Execute {len(planned)} tool call(s)",
            tools=planned,
            estimated_time=sum(t.estimated_time for t in planned),
            risk_level=max(
                (t.risk_level for t in planned),
                key=RISK_ORDER.__getitem__,
                default=RiskLevel.low,
            ),
            reversible=not any(t.tool_name in IRREVERSIBLE_TOOLS for t in planned),
            created_at=self._clock(),
        )
        logger.debug(
            "execution_plan_created",
            plan_id=plan.id,
            tools=len(planned),
            risk_level=plan.risk_level.value,
        )
        return plan

    # ── Execution ──

    async def start_interactive_execution(
        self, plan: ExecutionPlan, options: InteractionOptions | None = None
    ) -> ExecutionSession:
        options = options or InteractionOptions()
        self.cleanup_expired_sessions()
        now = self._clock()
        session = ExecutionSession(
            id=f"exec_session_{next(self._session_ids)}_{int(now * 1000)}",
            plan=plan,
            start_time=now,
            last_activity=now,
        )
        self._sessions[session.id] = session

        if options.require_confirmation:
            self._advance(session, ExecutionStage.CONFIRMING)
            choice = await self._confirm(plan, options)
            self._record(session, -1, choice)
            if choice is UserChoice.CANCEL:
                self._advance(session, ExecutionStage.CANCELLED)
                return session

        self._advance(session, ExecutionStage.EXECUTING)
        await self._execute_plan(session, options)
        if session.stage is ExecutionStage.CANCELLED:
            return session

        self._advance(session, ExecutionStage.REVIEWING)
        self._advance(session, ExecutionStage.COMPLETED)
        logger.info(
            "execution_session_completed",
            session_id=session.id,
            tools=len(plan.tools),
            failed=len(session.failed_results),
        )
        return session

    async def _confirm(self, plan: ExecutionPlan, options: InteractionOptions) -> UserChoice:
        if options.confirm is None:
            logger.warning("confirmation_unavailable", plan_id=plan.id)
            return UserChoice.CANCEL
        choice = UserChoice(await _resolve(options.confirm(plan)))
        # Anything but an explicit cancel proceeds
        return UserChoice.CANCEL if choice is UserChoice.CANCEL else UserChoice.CONTINUE

    async def _execute_plan(self, session: ExecutionSession, options: InteractionOptions) -> None:
        for index, planned in enumerate(session.plan.tools):
            if session.stage is ExecutionStage.CANCELLED:
                return
            session.current_tool_index = index
            retries = 0
            while True:
                result = await self._executor.execute_tool(ToolCall(
                    tool_name=planned.tool_name,
                    parameters=planned.parameters,
                    call_id=planned.call_id,
                ))
                session.last_activity = self._clock()
                if session.stage is ExecutionStage.CANCELLED:
                    session.results.append(result)
                    return
                if result.succeeded or not options.allow_interruption or options.on_failure is None:
                    break
                choice = UserChoice(await _resolve(options.on_failure(planned, result)))
                self._record(session, index, choice)
                if choice is UserChoice.RETRY and retries < options.max_retries_per_tool:
                    retries += 1
                    logger.info("tool_retry", tool_name=planned.tool_name, attempt=retries)
                    continue
                if choice is UserChoice.CANCEL:
                    session.results.append(result)
                    if options.on_progress is not None:
                        options.on_progress(session, planned, result)
                    self._advance(session, ExecutionStage.CANCELLED)
                    return
                break

            session.results.append(result)
            if options.on_progress is not None:
                options.on_progress(session, planned, result)

    # ── Session management ──

    def get_session(self, session_id: str) -> ExecutionSession | None:
        return self._sessions.get(session_id)

    def active_sessions(self) -> list[ExecutionSession]:
        return [s for s in self._sessions.values() if not s.is_terminal]

    def cancel_session(self, session_id: str) -> bool:
        """Cancel a non-terminal session and abort its in-flight tool."""
        session = self._sessions.get(session_id)
        if session is None or session.is_terminal:
            return False
        self._advance(session, ExecutionStage.CANCELLED)
        self._record(session, session.current_tool_index, UserChoice.CANCEL)
        self._executor.cancel_all()
        return True

    def cleanup_expired_sessions(self, now: float | None = None) -> int:
        now = self._clock() if now is None else now
        expired = [
            sid for sid, s in self._sessions.items()
            if now - s.last_activity > self._ttl_s
        ]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.info("execution_sessions_reaped", count=len(expired))
        return len(expired)

    def clear(self) -> None:
        self._sessions.clear()

    def _advance(self, session: ExecutionSession, stage: ExecutionStage) -> None:
        if not can_transition(session.stage, stage):
            raise ExecutionStateError(
                f"Illegal stage transition {session.stage.value} -> {stage.value} "
                f"(session {session.id})"
            )
        session.stage = stage
        session.last_activity = self._clock()
        if stage in TERMINAL_STAGES:
            session.end_time = session.last_activity

    def _record(self, session: ExecutionSession, index: int, choice: UserChoice) -> None:
        session.user_choices.append(ChoiceRecord(tool_index=index, choice=choice, at=self._clock()))


def format_plan(plan: ExecutionPlan) -> str:
    """Plain-text plan summary for display before confirmation."""
    lines = [
        f"{plan.title}",
        f"Risk: {plan.risk_level.value} | Estimated: {plan.estimated_time}ms | "
        f"{'reversible' if plan.reversible else 'irreversible'}",
    ]
    for i, tool in enumerate(plan.tools, start=1):
        deps = f" (after {', '.join(tool.dependencies)})" if tool.dependencies else ""
        lines.append(f"  {i}. [{tool.risk_level.value}] {tool.description}{deps}")
    return "\n".join(lines)
