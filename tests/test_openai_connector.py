"""OpenAIConnector against httpx.MockTransport: request shape, errors, SSE parsing."""
from __future__ import annotations

import json
import threading
import time

import httpx
import pytest

from parley.connectors import get_connector
from parley.connectors.openai import OpenAIConnector, iter_sse_deltas
from parley.engine import ChatEngine
from parley.errors import Cancelled, ConfigError, ProtocolError, TransportError
from parley.models import ChatRequest, Message, ModelSettings, Tool, ToolCall
from parley.tools.registry import ToolRegistry


def _connector(handler, api_key: str = "sk-test") -> OpenAIConnector:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return OpenAIConnector("gpt-test", base_url="http://llm.local/v1/", api_key=api_key, client=client)


def _request(**kwargs) -> ChatRequest:
    return ChatRequest(
        model="gpt-test",
        messages=[
            Message(role="system", content="be brief"),
            Message(role="user", content="hi"),
        ],
        max_tokens=100,
        temperature=0.5,
        **kwargs,
    )


def _ok(message: dict, **extra) -> dict:
    return {"id": "cmpl-1", "model": "gpt-test", "choices": [{"index": 0, "message": message}], **extra}


# ---------------------------------------------------------------------------
# Request shape
# ---------------------------------------------------------------------------

def test_request_without_tools_has_no_tools_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_ok({"role": "assistant", "content": "hello"}))

    response = _connector(handler).complete(_request())

    assert response.message.content == "hello"
    assert seen["url"] == "http://llm.local/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    body = seen["body"]
    assert "tools" not in body
    assert "tool_choice" not in body
    assert body["model"] == "gpt-test"
    assert body["max_tokens"] == 100
    assert body["temperature"] == 0.5
    assert body["messages"] == [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "hi"},
    ]


def test_request_with_tools_and_history_of_calls():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_ok({"role": "assistant", "content": "4"}))

    request = _request(
        tools=[Tool(name="calculator", description="math", parameters={"type": "object", "properties": {}})],
        tool_choice="auto",
    )
    request.messages += [
        Message(role="assistant", content=None, tool_calls=[ToolCall(id="c1", name="calculator", arguments='{"expression":"2+2"}')]),
        Message(role="tool", content="Result: 2+2 = 4", tool_call_id="c1", name="calculator"),
    ]
    _connector(handler).complete(request)

    body = seen["body"]
    assert body["tool_choice"] == "auto"
    assert body["tools"][0] == {
        "type": "function",
        "function": {"name": "calculator", "description": "math", "parameters": {"type": "object", "properties": {}}},
    }
    assert body["messages"][2]["tool_calls"][0]["function"]["arguments"] == '{"expression":"2+2"}'
    assert body["messages"][3] == {"role": "tool", "tool_call_id": "c1", "content": "Result: 2+2 = 4"}


def test_no_authorization_header_without_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json=_ok({"role": "assistant", "content": "x"}))

    _connector(handler, api_key="").complete(_request())
    assert seen["auth"] is None


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def test_tool_calls_and_usage_parsed():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_ok(
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {"id": "call_a", "type": "function", "function": {"name": "web_search", "arguments": '{"query":"x"}'}},
                    {"type": "function", "function": {"name": "calculator", "arguments": {"expression": "1+1"}}},
                ],
            },
            usage={"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15},
        ))

    response = _connector(handler).complete(_request())
    calls = response.message.tool_calls
    assert response.stop_reason == "tool_use"
    assert [c.name for c in calls] == ["web_search", "calculator"]
    assert calls[0].id == "call_a"
    assert calls[1].id.startswith("call_")
    assert json.loads(calls[1].arguments) == {"expression": "1+1"}
    assert response.usage.total_tokens == 15


def test_non_success_status_is_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="upstream exploded")

    with pytest.raises(TransportError, match="status 500: upstream exploded"):
        _connector(handler).complete(_request())


def test_connection_failure_is_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransportError):
        _connector(handler).complete(_request())


def test_missing_choices_is_protocol_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": "x", "choices": []})

    with pytest.raises(ProtocolError, match="No response received"):
        _connector(handler).complete(_request())


def test_invalid_json_is_protocol_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>not json</html>")

    with pytest.raises(ProtocolError):
        _connector(handler).complete(_request())


def test_cancel_before_request_never_hits_network():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json=_ok({"role": "assistant", "content": "x"}))

    cancel = threading.Event()
    cancel.set()
    with pytest.raises(Cancelled):
        _connector(handler).complete(_request(), cancel)
    assert calls == []


def _stalled_connector(release: threading.Event) -> OpenAIConnector:
    def handler(request: httpx.Request) -> httpx.Response:
        release.wait(3)
        return httpx.Response(200, json=_ok({"role": "assistant", "content": "too late"}))

    return _connector(handler)


def test_cancel_aborts_request_waiting_on_server():
    release = threading.Event()
    cancel = threading.Event()
    threading.Timer(0.2, cancel.set).start()
    started = time.monotonic()
    try:
        with pytest.raises(Cancelled):
            _stalled_connector(release).complete(_request(), cancel)
        assert time.monotonic() - started < 1.0
    finally:
        release.set()


def test_engine_send_returns_promptly_when_cancelled_mid_request():
    release = threading.Event()
    cancel = threading.Event()
    engine = ChatEngine(_stalled_connector(release), ToolRegistry(), ModelSettings(model="gpt-test"))
    threading.Timer(0.2, cancel.set).start()
    started = time.monotonic()
    try:
        reply = engine.send("hi", cancel)
        assert time.monotonic() - started < 1.0
    finally:
        release.set()
    assert reply.cancelled
    assert [m.role for m in engine.history()] == ["system", "user"]


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

def _frame(content: str) -> str:
    return "data: " + json.dumps({"choices": [{"index": 0, "delta": {"content": content}}]})


def test_stream_yields_deltas_and_sets_stream_flag():
    seen = {}
    body = "\n\n".join([
        ": keep-alive",
        "data: " + json.dumps({"choices": [{"delta": {"role": "assistant"}}]}),
        _frame("Hel"),
        "data: {broken json",
        _frame("lo"),
        "data: [DONE]",
        _frame("after done"),
    ]) + "\n\n"

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

    fragments = list(_connector(handler).stream(_request()))
    assert fragments == ["Hel", "lo"]
    assert seen["body"]["stream"] is True
    assert "tools" not in seen["body"]


def test_stream_error_status_is_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, text="bad key")

    with pytest.raises(TransportError, match="401"):
        list(_connector(handler).stream(_request()))


def test_cancel_interrupts_stream_waiting_for_next_frame():
    release = threading.Event()

    def body():
        yield (_frame("first") + "\n\n").encode()
        release.wait(3)
        yield (_frame("late") + "\n\n").encode()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body(), headers={"content-type": "text/event-stream"})

    cancel = threading.Event()
    received = []
    started = None
    try:
        with pytest.raises(Cancelled):
            for fragment in _connector(handler).stream(_request(), cancel):
                received.append(fragment)
                started = time.monotonic()
                cancel.set()
        assert time.monotonic() - started < 1.0
    finally:
        release.set()
    assert received == ["first"]


def test_sse_parser_ignores_non_data_lines_and_empty_deltas():
    lines = [
        "event: message",
        "",
        "data:",
        _frame(""),
        "data: " + json.dumps({"choices": []}),
        _frame("ok"),
    ]
    assert list(iter_sse_deltas(lines)) == ["ok"]


def test_sse_parser_checks_cancel_between_frames():
    cancel = threading.Event()
    lines = [_frame("a"), _frame("b"), _frame("c")]
    received = []
    with pytest.raises(Cancelled):
        for fragment in iter_sse_deltas(lines, cancel):
            received.append(fragment)
            cancel.set()
    assert received == ["a"]


# ---------------------------------------------------------------------------
# Connector factory
# ---------------------------------------------------------------------------

def test_get_connector_builds_openai_from_config():
    connector = get_connector(
        "openai",
        {"base_url": "http://localhost:1234/v1", "api_key": "", "model": "local-model", "timeout": 5},
        model="override",
    )
    try:
        assert isinstance(connector, OpenAIConnector)
        assert connector.model == "override"
        assert connector.endpoint == "http://localhost:1234/v1/chat/completions"
    finally:
        connector.close()


def test_get_connector_unknown_name():
    with pytest.raises(ConfigError, match="Unknown connector"):
        get_connector("carrier-pigeon", {})
