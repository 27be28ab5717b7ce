from __future__ import annotations

import asyncio
import itertools
import json
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from writeflow.agent.models import ToolCall
from writeflow.infra.errors import (
    ExecutionStateError,
    PermissionDeniedError,
    ToolArgumentError,
)
from writeflow.tools.arguments import safe_parse_arguments
from writeflow.tools.context import ToolContext
from writeflow.tools.registry import ToolRegistry

if TYPE_CHECKING:
    from writeflow.session.context import SessionContext

logger = structlog.get_logger()

DEFAULT_TOOL_TIMEOUT_S = 120.0


class ToolExecutionStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    ToolExecutionStatus.COMPLETED,
    ToolExecutionStatus.FAILED,
    ToolExecutionStatus.CANCELLED,
})

_ALLOWED_TRANSITIONS: dict[ToolExecutionStatus, frozenset[ToolExecutionStatus]] = {
    ToolExecutionStatus.PENDING: frozenset({
        ToolExecutionStatus.RUNNING,
        ToolExecutionStatus.FAILED,
        ToolExecutionStatus.CANCELLED,
    }),
    ToolExecutionStatus.RUNNING: TERMINAL_STATUSES,
}


@dataclass
class ToolExecutionResult:
    """Tracked outcome of one tool call. Terminal statuses are final."""

    tool_name: str
    execution_id: str
    call_id: str = ""
    status: ToolExecutionStatus = ToolExecutionStatus.PENDING
    arguments: dict[str, Any] = field(default_factory=dict)
    result: Any = None
    error: str | None = None
    start_time: float = field(default_factory=time.time)
    end_time: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def succeeded(self) -> bool:
        return self.status is ToolExecutionStatus.COMPLETED

    @property
    def duration(self) -> float:
        return (self.end_time or time.time()) - self.start_time

    def transition(self, status: ToolExecutionStatus) -> None:
        allowed = _ALLOWED_TRANSITIONS.get(self.status, frozenset())
        if status not in allowed:
            raise ExecutionStateError(
                f"Illegal tool status transition {self.status.value} -> {status.value} "
                f"({self.tool_name}/{self.execution_id})"
            )
        self.status = status
        if status in TERMINAL_STATUSES:
            self.end_time = time.time()

    def complete(self, result: Any) -> None:
        self.transition(ToolExecutionStatus.COMPLETED)
        self.result = result

    def fail(self, error: str) -> None:
        self.transition(ToolExecutionStatus.FAILED)
        self.error = error

    def cancel(self, reason: str = "Cancelled") -> None:
        self.transition(ToolExecutionStatus.CANCELLED)
        self.error = reason


def format_result(tool_name: str, result: Any) -> str:
    """Render a tool result as text for the conversation transcript."""
    if isinstance(result, str):
        return result
    if isinstance(result, dict):
        if tool_name == "Write" and "path" in result:
            return f"File written to {result['path']} ({result.get('bytes', 0)} bytes)"
        if tool_name == "Read" and "content" in result:
            return str(result["content"])
        if tool_name == "Bash" and ("stdout" in result or "output" in result):
            return str(result.get("stdout", result.get("output", "")))
    return json.dumps(result, ensure_ascii=False, default=str)


class ToolExecutor:
    """Runs tool calls through lookup → argument repair → permission → execution.

    Every outcome is encoded on the returned ToolExecutionResult; nothing is
    raised to the caller for ordinary tool failures.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        session: SessionContext | None = None,
        timeout_s: float = DEFAULT_TOOL_TIMEOUT_S,
    ) -> None:
        self._registry = registry
        self._session = session
        self._timeout_s = timeout_s
        self._ids = itertools.count(1)
        self._running: dict[str, asyncio.Event] = {}

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def cancel(self, execution_id: str) -> bool:
        """Signal abort to a running execution. Returns False if it is not running."""
        signal = self._running.get(execution_id)
        if signal is None:
            return False
        signal.set()
        logger.info("tool_cancel_requested", execution_id=execution_id)
        return True

    def cancel_all(self) -> int:
        for signal in self._running.values():
            signal.set()
        return len(self._running)

    async def execute_tool(self, call: ToolCall) -> ToolExecutionResult:
        execution = ToolExecutionResult(
            tool_name=call.tool_name,
            execution_id=f"exec_{next(self._ids)}_{int(time.time() * 1000)}",
            call_id=call.call_id,
        )

        tool = self._registry.get(call.tool_name)
        if tool is None:
            logger.warning("unknown_tool", tool_name=call.tool_name)
            execution.fail(f"Tool '{call.tool_name}' not found")
            return execution

        try:
            arguments = safe_parse_arguments(call.parameters)
        except ToolArgumentError as e:
            execution.fail(str(e))
            return execution
        execution.arguments = arguments

        if self._session is not None:
            try:
                self._session.permissions.require(tool, arguments)
            except PermissionDeniedError as e:
                execution.fail(f"Permission denied: {e}")
                return execution

        signal = asyncio.Event()
        context = ToolContext(
            execution_id=execution.execution_id,
            session=self._session,
            abort_signal=signal,
        )
        execution.transition(ToolExecutionStatus.RUNNING)
        self._running[execution.execution_id] = signal
        try:
            await self._run(tool.execute(arguments, context), execution, signal)
        finally:
            self._running.pop(execution.execution_id, None)

        logger.info(
            "tool_executed",
            tool_name=call.tool_name,
            status=execution.status.value,
            duration_ms=round(execution.duration * 1000),
        )
        return execution

    async def _run(
        self,
        coro: Any,
        execution: ToolExecutionResult,
        signal: asyncio.Event,
    ) -> None:
        task = asyncio.ensure_future(coro)
        abort_wait = asyncio.ensure_future(signal.wait())
        try:
            done, _ = await asyncio.wait(
                {task, abort_wait},
                timeout=self._timeout_s,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            # Caller went away: the tool must not outlive it
            signal.set()
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, Exception):
                logger.debug("tool_task_unwound", tool_name=execution.tool_name)
            execution.cancel("Tool execution cancelled")
            raise
        finally:
            abort_wait.cancel()

        if task not in done:
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, Exception):
                logger.debug("tool_task_unwound", tool_name=execution.tool_name)
            if signal.is_set():
                execution.cancel("Tool execution cancelled")
            else:
                execution.fail(f"Tool timed out after {self._timeout_s:g}s")
            return

        try:
            result = task.result()
        except Exception as e:
            logger.exception("tool_execution_failed", tool_name=execution.tool_name)
            execution.fail(f"{type(e).__name__}: {e}")
            return

        if isinstance(result, dict) and result.get("error_code"):
            execution.fail(str(result.get("message") or result["error_code"]))
            execution.result = result
        else:
            execution.complete(result)
