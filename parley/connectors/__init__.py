from __future__ import annotations

import importlib
from typing import Any

from parley.connectors.base import LLMConnector
from parley.errors import ConfigError

CONNECTOR_MAP: dict[str, str] = {
    "openai": "parley.connectors.openai.OpenAIConnector",
    "ollama": "parley.connectors.ollama.OllamaConnector",
}


def get_connector(name: str, api: dict[str, Any], model: str | None = None) -> LLMConnector:
    """Factory: resolve connector name to class and instantiate from the [api] config table."""
    if name not in CONNECTOR_MAP:
        raise ConfigError(f"Unknown connector '{name}'. Available: {list(CONNECTOR_MAP)}")
    module_path, class_name = CONNECTOR_MAP[name].rsplit(".", 1)
    module = importlib.import_module(module_path)
    cls = getattr(module, class_name)
    return cls(
        model=model or api["model"],
        base_url=api["base_url"],
        api_key=api.get("api_key", ""),
        timeout=float(api.get("timeout", 120.0)),
    )
