from __future__ import annotations

import logging

from parley.models import Tool
from parley.tools.base import ToolHandler

logger = logging.getLogger(__name__)


class ToolRegistry:
    def __init__(self, tools: list[ToolHandler] | None = None) -> None:
        self._tools: dict[str, ToolHandler] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: ToolHandler) -> None:
        """Add a tool. A later tool with the same name replaces the earlier one."""
        if tool.name in self._tools:
            logger.debug("Replacing tool '%s'", tool.name)
        self._tools[tool.name] = tool

    def execute(self, name: str, arguments: str) -> str:
        """Run a tool by name. Failures come back as text for the model to read."""
        tool = self._tools.get(name)
        if tool is None:
            logger.warning("Model requested unknown tool '%s'", name)
            return f"Error: Tool '{name}' not found"
        try:
            result = tool.execute(arguments)
        except Exception as e:
            logger.debug("Tool '%s' failed", name, exc_info=True)
            return f"Error executing tool '{name}': {e}"
        return result if isinstance(result, str) else str(result)

    def close(self) -> None:
        for tool in self._tools.values():
            tool.close()

    def list_schemas(self) -> list[Tool]:
        return [tool.definition() for tool in self._tools.values()]

    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
