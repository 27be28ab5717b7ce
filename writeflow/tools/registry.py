from __future__ import annotations

from collections.abc import Iterable

import structlog

from writeflow.tools.base import BaseTool

logger = structlog.get_logger()


class ToolRegistry:
    """Single registry for tools; every tool is first-class."""

    def __init__(self) -> None:
        self._tools: dict[str, BaseTool] = {}

    def register(self, tool: BaseTool) -> None:
        """Register a tool. Raises ValueError if name already registered."""
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool
        logger.debug("tool_registered", tool_name=tool.name)

    def get(self, name: str) -> BaseTool | None:
        """Get a tool by name. Returns None if not found."""
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> list[str]:
        return list(self._tools)

    def list_tools(self, names: Iterable[str] | None = None) -> list[BaseTool]:
        """Return registered tools, optionally restricted to *names* (order kept).

        Unknown names are skipped.
        """
        if names is None:
            return list(self._tools.values())
        return [self._tools[n] for n in names if n in self._tools]

    def get_tools_schema(self, names: Iterable[str] | None = None) -> list[dict]:
        """Return tools in OpenAI function calling format.

        Output format:
        [{"type": "function", "function": {"name": ..., "description": ..., "parameters": ...}}]
        """
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                },
            }
            for tool in self.list_tools(names)
        ]
