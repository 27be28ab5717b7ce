from __future__ import annotations

from abc import ABC, abstractmethod
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from writeflow.tools.context import ToolContext


class RiskLevel(StrEnum):
    """Planner-facing risk classification.

    Undeclared tools default to 'medium'; read-only tools declare 'low',
    shell access declares 'high'.
    """

    low = "low"
    medium = "medium"
    high = "high"


class PermissionLevel(StrEnum):
    """What a tool may touch. Consumed by the permission gate."""

    read_only = "read_only"
    safe_write = "safe_write"
    system_modify = "system_modify"
    network_access = "network_access"
    dangerous = "dangerous"


RISK_ORDER = {RiskLevel.low: 0, RiskLevel.medium: 1, RiskLevel.high: 2}


class BaseTool(ABC):
    """Abstract base class for tools callable by the model."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique tool name used in function calling."""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable description of what the tool does."""
        ...

    @property
    @abstractmethod
    def parameters(self) -> dict:
        """JSON Schema describing the tool's input parameters."""
        ...

    @property
    def is_read_only(self) -> bool:
        """True if the tool has no side effects. Fail-closed default: False."""
        return False

    @property
    def is_concurrency_safe(self) -> bool:
        """True if calls may overlap with other tool calls. Defaults to is_read_only."""
        return self.is_read_only

    @property
    def risk_level(self) -> RiskLevel:
        return RiskLevel.low if self.is_read_only else RiskLevel.medium

    @property
    def permission_level(self) -> PermissionLevel:
        return PermissionLevel.read_only if self.is_read_only else PermissionLevel.system_modify

    def summarize(self, arguments: dict) -> str:
        """One-line description of a concrete call, for plans and permission prompts."""
        return f"Run {self.name}"

    @abstractmethod
    async def execute(
        self, arguments: dict, context: ToolContext | None = None
    ) -> dict | str:
        """Execute the tool with parsed arguments and the runtime context.

        Failures are reported as a dict carrying ``error_code`` and ``message``
        rather than raised.
        """
        ...
