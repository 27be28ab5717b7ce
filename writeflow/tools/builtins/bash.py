from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from writeflow.tools.base import BaseTool, PermissionLevel, RiskLevel

if TYPE_CHECKING:
    from writeflow.tools.context import ToolContext

logger = structlog.get_logger()

MAX_OUTPUT_CHARS = 30_000
DEFAULT_COMMAND_TIMEOUT_S = 60.0


class BashTool(BaseTool):
    """Run a shell command in the workspace directory.

    The subprocess is killed when the execution's abort signal fires or the
    per-command timeout elapses.
    """

    def __init__(self, workspace_dir: Path) -> None:
        self._workspace_dir = workspace_dir.resolve()

    @property
    def name(self) -> str:
        return "Bash"

    @property
    def description(self) -> str:
        return "Execute a shell command with the workspace as working directory."

    @property
    def risk_level(self) -> RiskLevel:
        return RiskLevel.high

    @property
    def permission_level(self) -> PermissionLevel:
        return PermissionLevel.dangerous

    @property
    def parameters(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "Shell command to run."},
                "timeout": {
                    "type": "number",
                    "description": f"Seconds before the command is killed (default {DEFAULT_COMMAND_TIMEOUT_S:g}).",
                },
            },
            "required": ["command"],
        }

    def summarize(self, arguments: dict) -> str:
        return f"Execute command: {arguments.get('command', '')}"

    async def execute(self, arguments: dict, context: ToolContext | None = None) -> dict:
        command = arguments.get("command")
        if not isinstance(command, str) or not command.strip():
            return {"error_code": "INVALID_ARGS", "message": "command must be a non-empty string."}
        timeout = float(arguments.get("timeout") or DEFAULT_COMMAND_TIMEOUT_S)

        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=self._workspace_dir,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        communicate = asyncio.ensure_future(proc.communicate())
        waiters: set[asyncio.Future] = {communicate}
        abort_wait = None
        if context is not None:
            abort_wait = asyncio.ensure_future(context.abort_signal.wait())
            waiters.add(abort_wait)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if abort_wait is not None:
                abort_wait.cancel()

        if communicate not in done:
            proc.kill()
            await communicate
            aborted = context is not None and context.aborted
            logger.warning("bash_killed", command=command[:200], aborted=aborted)
            return {
                "error_code": "ABORTED" if aborted else "TIMEOUT",
                "message": "Command aborted." if aborted else f"Command timed out after {timeout:g}s.",
            }

        stdout_b, stderr_b = communicate.result()
        stdout = stdout_b.decode("utf-8", errors="replace")[:MAX_OUTPUT_CHARS]
        stderr = stderr_b.decode("utf-8", errors="replace")[:MAX_OUTPUT_CHARS]
        if proc.returncode != 0:
            return {
                "error_code": "COMMAND_FAILED",
                "message": f"Exit code {proc.returncode}: {stderr.strip() or stdout.strip()}",
                "stdout": stdout,
                "stderr": stderr,
                "exit_code": proc.returncode,
            }
        return {"stdout": stdout, "stderr": stderr, "exit_code": 0}
