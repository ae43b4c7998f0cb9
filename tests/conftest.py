from __future__ import annotations

import threading
from typing import Any, Iterator

import pytest

from parley.connectors.base import LLMConnector, raise_if_cancelled
from parley.engine import ChatEngine
from parley.models import ChatRequest, Message, ModelSettings, Response, ToolCall
from parley.tools.base import ToolHandler
from parley.tools.registry import ToolRegistry


class ScriptedConnector(LLMConnector):
    """
    Connector that replays canned replies and records every request it is given.
    ``replies`` items are assistant Messages or exceptions to raise;
    ``fragments`` items are strings to stream or exceptions to raise mid-stream.
    """

    def __init__(self, replies: list[Any] | None = None, fragments: list[Any] | None = None) -> None:
        super().__init__("test-model")
        self.replies = list(replies or [])
        self.fragments = list(fragments or [])
        self.requests: list[ChatRequest] = []
        self.stream_requests: list[ChatRequest] = []
        self.stream_closed = False

    def complete(self, request: ChatRequest, cancel: threading.Event | None = None) -> Response:
        self.requests.append(request.model_copy(deep=True))
        raise_if_cancelled(cancel)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return Response(
            message=reply,
            stop_reason="tool_use" if reply.tool_calls else "stop",
            model=request.model,
        )

    def stream(self, request: ChatRequest, cancel: threading.Event | None = None) -> Iterator[str]:
        self.stream_requests.append(request.model_copy(deep=True))
        try:
            for item in self.fragments:
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            self.stream_closed = True


class EchoTool(ToolHandler):
    name = "echo"
    description = "Repeat the given text"
    parameters = {
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
    }

    def __init__(self, name: str = "echo") -> None:
        self.name = name
        self.calls: list[dict[str, Any]] = []

    def run(self, **kwargs: Any) -> str:
        self.calls.append(kwargs)
        return f"{self.name}: {kwargs.get('text', '')}"


class BrokenTool(ToolHandler):
    name = "broken"
    description = "Always fails"

    def run(self, **kwargs: Any) -> str:
        raise RuntimeError("disk on fire")


def assistant(content: str | None = None, *calls: ToolCall) -> Message:
    return Message(role="assistant", content=content, tool_calls=list(calls))


def call(id: str, name: str, arguments: str = "{}") -> ToolCall:
    return ToolCall(id=id, name=name, arguments=arguments)


@pytest.fixture
def settings() -> ModelSettings:
    return ModelSettings(model="test-model", max_tokens=256, temperature=0.2)


@pytest.fixture
def registry() -> ToolRegistry:
    return ToolRegistry([EchoTool()])


@pytest.fixture
def make_engine(settings, registry):
    """Build a ChatEngine around a ScriptedConnector; returns (engine, connector)."""

    def _make(replies=None, fragments=None, tools: ToolRegistry | None = None, **kwargs):
        connector = ScriptedConnector(replies, fragments)
        engine = ChatEngine(
            connector=connector,
            registry=registry if tools is None else tools,
            settings=kwargs.pop("model_settings", settings),
            **kwargs,
        )
        return engine, connector

    return _make
