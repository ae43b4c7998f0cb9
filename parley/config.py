from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any

from parley.errors import ConfigError
from parley.models import ModelSettings

CONFIG_DIR = Path("~/.parley").expanduser()
CONFIG_FILE = CONFIG_DIR / "config.toml"

API_KEY_ENV = "PARLEY_API_KEY"

DEFAULTS: dict[str, Any] = {
    "api": {
        "connector": "openai",
        "base_url": "http://localhost:1234/v1",
        "api_key": "",
        "model": "local-model",
        "max_tokens": 1000,
        "temperature": 0.7,
        "timeout": 120.0,
        "tool_rounds": 1,
    },
    "web_search": {
        "google_api_key": "",
        "google_engine_id": "",
    },
    "chat": {
        "stream": False,
        "conversation_only": False,
        "character": "",
        "save_sessions": True,
        "sessions_dir": "~/.parley/sessions",
    },
}


def load(path: Path | None = None) -> dict[str, Any]:
    """Load config from ~/.parley/config.toml, merging with defaults."""
    path = path or CONFIG_FILE
    config = _deep_merge({}, DEFAULTS)
    if path.exists():
        try:
            with open(path, "rb") as f:
                on_disk = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise ConfigError(f"Could not read config file {path}: {e}") from e
        config = _deep_merge(config, on_disk)
    env_key = os.environ.get(API_KEY_ENV)
    if env_key:
        config["api"]["api_key"] = env_key
    return config


def save(config: dict[str, Any], path: Path | None = None) -> None:
    """Save config dict to ~/.parley/config.toml (manual TOML serialization)."""
    path = path or CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = _dict_to_toml(config)
    path.write_text("\n".join(lines).lstrip("\n") + "\n")


def model_settings(config: dict[str, Any], model: str | None = None) -> ModelSettings:
    api = config["api"]
    return ModelSettings(
        model=model or api["model"],
        max_tokens=int(api["max_tokens"]),
        temperature=float(api["temperature"]),
        tool_rounds=int(api["tool_rounds"]),
    )


def sessions_path(config: dict[str, Any]) -> Path:
    return Path(config["chat"]["sessions_dir"]).expanduser()


def _deep_merge(base: dict, override: dict) -> dict:
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        elif isinstance(v, dict):
            result[k] = _deep_merge({}, v)
        else:
            result[k] = v
    return result


def _dict_to_toml(d: dict[str, Any], prefix: str = "") -> list[str]:
    """Minimal TOML serializer for one level of tables with scalar values."""
    lines: list[str] = []
    sections: list[tuple[str, dict]] = []

    for k, v in d.items():
        if isinstance(v, dict):
            sections.append((k, v))
        else:
            lines.append(f'{k} = {_toml_value(v)}')

    for section_key, section_val in sections:
        header = f"[{section_key}]" if not prefix else f"[{prefix}.{section_key}]"
        lines.append("")
        lines.append(header)
        for sk, sv in section_val.items():
            lines.append(f'{sk} = {_toml_value(sv)}')

    return lines


def _toml_value(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, int):
        return str(v)
    if isinstance(v, float):
        return repr(v)
    if isinstance(v, str):
        escaped = v.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    raise ValueError(f"Unsupported TOML value type: {type(v)}")
