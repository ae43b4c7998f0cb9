from __future__ import annotations

from typing import Any

from parley.tools.base import ToolHandler
from parley.tools.calculator import CalculatorTool
from parley.tools.registry import ToolRegistry
from parley.tools.web_fetch import WebFetchTool
from parley.tools.web_search import WebSearchTool

__all__ = ["ToolHandler", "ToolRegistry", "default_registry"]


def default_registry(config: dict[str, Any]) -> ToolRegistry:
    """Registry with the built-in tools, configured from the loaded config dict."""
    search = config.get("web_search", {})
    return ToolRegistry([
        WebSearchTool(
            google_api_key=search.get("google_api_key", ""),
            google_engine_id=search.get("google_engine_id", ""),
        ),
        WebFetchTool(),
        CalculatorTool(),
    ])
