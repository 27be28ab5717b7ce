from __future__ import annotations

import itertools
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

import structlog

from writeflow.infra.errors import PermissionDeniedError
from writeflow.tools.base import BaseTool, PermissionLevel

logger = structlog.get_logger()


class PermissionMode(StrEnum):
    default = "default"
    plan = "plan"  # read-only tools only
    accept_edits = "accept_edits"  # file edits allowed without asking
    bypass_permissions = "bypass_permissions"


class GrantType(StrEnum):
    always_allow = "always_allow"
    session_grant = "session_grant"
    one_time_grant = "one_time_grant"
    always_deny = "always_deny"


class PermissionDecision(StrEnum):
    allow = "allow"
    allow_session = "allow-session"
    deny = "deny"


@dataclass(frozen=True)
class ToolPolicy:
    permission_level: PermissionLevel
    grant_type: GrantType
    max_usage: int | None = None
    auto_allow_in_workspace: bool = False


DEFAULT_POLICIES: dict[str, ToolPolicy] = {
    "Read": ToolPolicy(PermissionLevel.read_only, GrantType.always_allow),
    "Glob": ToolPolicy(PermissionLevel.read_only, GrantType.always_allow),
    "Grep": ToolPolicy(PermissionLevel.read_only, GrantType.always_allow),
    "todo_read": ToolPolicy(PermissionLevel.read_only, GrantType.always_allow),
    "todo_write": ToolPolicy(PermissionLevel.safe_write, GrantType.always_allow),
    "exit_plan_mode": ToolPolicy(PermissionLevel.read_only, GrantType.always_allow),
    "Write": ToolPolicy(
        PermissionLevel.safe_write, GrantType.session_grant,
        max_usage=50, auto_allow_in_workspace=True,
    ),
    "Edit": ToolPolicy(PermissionLevel.system_modify, GrantType.one_time_grant),
    "Bash": ToolPolicy(PermissionLevel.dangerous, GrantType.one_time_grant),
}

FILE_EDIT_TOOLS = frozenset({"Write", "Edit"})


@dataclass(frozen=True)
class PermissionRequest:
    id: str
    tool_name: str
    file_path: str | None
    description: str
    args: dict[str, Any]


@dataclass(frozen=True)
class PermissionResponse:
    request_id: str
    decision: PermissionDecision


@dataclass
class PermissionResult:
    """Outcome of a gate check. reason is user-facing on denial."""

    allowed: bool
    reason: str = ""


@dataclass
class SessionGrant:
    tool_name: str
    granted_at: float = field(default_factory=time.time)
    usage_count: int = 0
    max_usage: int | None = None

    @property
    def exhausted(self) -> bool:
        return self.max_usage is not None and self.usage_count >= self.max_usage


AskCallback = Callable[[PermissionRequest], PermissionResponse]


class PermissionGate:
    """Synchronous allow/deny decision for tool calls.

    Order: bypass mode → policy deny → read-only tools → plan mode →
    policy allow → accept_edits → workspace auto-allow → session grant →
    ask callback. Without an ask callback, undecided calls are denied.
    """

    def __init__(
        self,
        *,
        mode: PermissionMode = PermissionMode.default,
        ask: AskCallback | None = None,
        workspace_dir: Path | None = None,
        policies: dict[str, ToolPolicy] | None = None,
    ) -> None:
        self.mode = mode
        self._ask = ask
        self._workspace_dir = workspace_dir.resolve() if workspace_dir else None
        self._policies = dict(DEFAULT_POLICIES if policies is None else policies)
        self._session_grants: dict[str, SessionGrant] = {}
        self._ids = itertools.count(1)
        self._allowed = 0
        self._denied = 0

    def set_mode(self, mode: PermissionMode) -> None:
        logger.info("permission_mode_changed", old=self.mode.value, new=mode.value)
        self.mode = mode

    def set_ask_callback(self, ask: AskCallback | None) -> None:
        self._ask = ask

    def policy_for(self, tool: BaseTool) -> ToolPolicy:
        policy = self._policies.get(tool.name)
        if policy is not None:
            return policy
        if tool.is_read_only:
            return ToolPolicy(PermissionLevel.read_only, GrantType.always_allow)
        return ToolPolicy(tool.permission_level, GrantType.one_time_grant)

    def grant_session(self, tool_name: str, *, max_usage: int | None = None) -> None:
        self._session_grants[tool_name] = SessionGrant(tool_name=tool_name, max_usage=max_usage)

    def revoke_session_grants(self) -> None:
        self._session_grants.clear()

    def check(self, tool: BaseTool, arguments: dict[str, Any]) -> PermissionResult:
        result = self._decide(tool, arguments)
        if result.allowed:
            self._allowed += 1
        else:
            self._denied += 1
            logger.warning(
                "permission_denied", tool_name=tool.name, mode=self.mode.value,
                reason=result.reason,
            )
        return result

    def require(self, tool: BaseTool, arguments: dict[str, Any]) -> None:
        """Like check(), but raises PermissionDeniedError on denial."""
        result = self.check(tool, arguments)
        if not result.allowed:
            raise PermissionDeniedError(result.reason)

    def _decide(self, tool: BaseTool, arguments: dict[str, Any]) -> PermissionResult:
        if self.mode is PermissionMode.bypass_permissions:
            return PermissionResult(allowed=True)

        policy = self.policy_for(tool)
        if policy.grant_type is GrantType.always_deny:
            return PermissionResult(False, f"{tool.name} is always denied by policy")
        if tool.is_read_only or policy.permission_level is PermissionLevel.read_only:
            return PermissionResult(allowed=True)
        if self.mode is PermissionMode.plan:
            return PermissionResult(
                False, f"{tool.name} is not available in plan mode (read-only tools only)",
            )
        if policy.grant_type is GrantType.always_allow:
            return PermissionResult(allowed=True)
        if self.mode is PermissionMode.accept_edits and tool.name in FILE_EDIT_TOOLS:
            return PermissionResult(allowed=True)

        file_path = _file_path_of(arguments)
        if policy.auto_allow_in_workspace and self._inside_workspace(file_path):
            return PermissionResult(allowed=True)

        grant = self._session_grants.get(tool.name)
        if grant is not None:
            if not grant.exhausted:
                grant.usage_count += 1
                return PermissionResult(allowed=True)
            del self._session_grants[tool.name]
            logger.info("session_grant_exhausted", tool_name=tool.name)

        return self._ask_user(tool, policy, arguments, file_path)

    def _ask_user(
        self,
        tool: BaseTool,
        policy: ToolPolicy,
        arguments: dict[str, Any],
        file_path: str | None,
    ) -> PermissionResult:
        if self._ask is None:
            return PermissionResult(
                False, f"{tool.name} requires confirmation and no permission handler is set",
            )
        request = PermissionRequest(
            id=f"perm_{next(self._ids)}",
            tool_name=tool.name,
            file_path=file_path,
            description=tool.summarize(arguments),
            args=arguments,
        )
        response = self._ask(request)
        if response.decision == PermissionDecision.allow:
            return PermissionResult(allowed=True)
        if response.decision == PermissionDecision.allow_session:
            self._session_grants[tool.name] = SessionGrant(
                tool_name=tool.name, usage_count=1, max_usage=policy.max_usage,
            )
            return PermissionResult(allowed=True)
        return PermissionResult(False, f"User denied {tool.name}")

    def _inside_workspace(self, file_path: str | None) -> bool:
        if not file_path or self._workspace_dir is None:
            return False
        target = (self._workspace_dir / file_path).resolve()
        return target.is_relative_to(self._workspace_dir)

    def stats(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "allowed": self._allowed,
            "denied": self._denied,
            "session_grants": sorted(self._session_grants),
        }


def _file_path_of(arguments: dict[str, Any]) -> str | None:
    value = arguments.get("file_path") or arguments.get("path")
    return value if isinstance(value, str) else None
