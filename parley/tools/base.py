from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any

from parley.models import Tool


class ToolHandler(ABC):
    """
    A callable tool. Subclasses set ``name``, ``description`` and ``parameters``
    (a JSON Schema object) and implement ``run`` with keyword arguments matching
    the schema properties.
    """

    name: str
    description: str
    parameters: dict[str, Any] = {"type": "object", "properties": {}, "required": []}

    def definition(self) -> Tool:
        return Tool(name=self.name, description=self.description, parameters=self.parameters)

    def execute(self, arguments: str) -> str:
        """Parse raw JSON arguments from the model and run the tool."""
        return self.run(**parse_arguments(arguments))

    def close(self) -> None:
        """Release network clients held by the tool. Safe to call more than once."""

    @abstractmethod
    def run(self, **kwargs: Any) -> str:
        ...


def parse_arguments(arguments: str) -> dict[str, Any]:
    """Decode a tool-call argument string. Empty means no arguments."""
    if not arguments or not arguments.strip():
        return {}
    try:
        parsed = json.loads(arguments)
    except ValueError as e:
        raise ValueError(f"arguments are not valid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise ValueError(f"arguments must be a JSON object, got {type(parsed).__name__}")
    return parsed
