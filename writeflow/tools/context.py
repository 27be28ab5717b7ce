from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from writeflow.session.context import SessionContext


@dataclass(frozen=True)
class ToolContext:
    """Runtime context injected into one tool execution by the executor.

    abort_signal is set when the execution is cancelled; long-running tools
    poll ``aborted`` or await ``abort_signal.wait()``.
    session carries the shared task list and workspace. Tools MUST reach
    session state through it, never through module globals.
    """

    execution_id: str
    session: SessionContext | None = None
    abort_signal: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def aborted(self) -> bool:
        return self.abort_signal.is_set()

    @property
    def session_id(self) -> str:
        return self.session.session_id if self.session else "main"

    @property
    def workspace_dir(self) -> Path | None:
        return self.session.workspace_dir if self.session else None
