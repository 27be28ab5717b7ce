from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from writeflow.session.todos import TodoManager
from writeflow.tools.permissions import AskCallback, PermissionGate, PermissionMode

if TYPE_CHECKING:
    from writeflow.agent.interactive import InteractiveExecutionManager

logger = structlog.get_logger()


@dataclass
class SessionContext:
    """Explicit per-session state, passed by reference into the coordinator and tools.

    Created at session start via create(), released via dispose(). Holds the
    shared task list, the permission gate (with its session grants) and,
    once attached, the interactive execution manager.
    """

    session_id: str
    workspace_dir: Path
    todos: TodoManager = field(default_factory=TodoManager)
    permissions: PermissionGate = field(default_factory=PermissionGate)
    interactive: InteractiveExecutionManager | None = None
    disposed: bool = False

    @classmethod
    def create(
        cls,
        workspace_dir: Path,
        *,
        session_id: str | None = None,
        mode: PermissionMode = PermissionMode.default,
        ask: AskCallback | None = None,
    ) -> SessionContext:
        workspace_dir = workspace_dir.resolve()
        session = cls(
            session_id=session_id or f"session_{uuid.uuid4().hex[:12]}",
            workspace_dir=workspace_dir,
            permissions=PermissionGate(mode=mode, ask=ask, workspace_dir=workspace_dir),
        )
        logger.info("session_created", session_id=session.session_id)
        return session

    def dispose(self) -> None:
        if self.disposed:
            return
        self.todos.clear()
        self.permissions.revoke_session_grants()
        if self.interactive is not None:
            self.interactive.clear()
        self.disposed = True
        logger.info("session_disposed", session_id=self.session_id)
