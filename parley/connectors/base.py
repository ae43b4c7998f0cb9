from __future__ import annotations

import queue
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable, Iterator, TypeVar

from parley.errors import Cancelled
from parley.models import ChatRequest, Message, Response, Tool

T = TypeVar("T")

# seconds between checks of the cancel event while a network call is blocked
CANCEL_POLL_INTERVAL = 0.05


class LLMConnector(ABC):
    def __init__(self, model: str) -> None:
        self.model = model

    @abstractmethod
    def complete(self, request: ChatRequest, cancel: threading.Event | None = None) -> Response:
        """Non-streaming completion. Always use this when tools are provided."""
        ...

    @abstractmethod
    def stream(self, request: ChatRequest, cancel: threading.Event | None = None) -> Iterator[str]:
        """Streaming text completion. Should not be used when tools are active."""
        ...

    def close(self) -> None:
        """Release network resources. Safe to call more than once."""

    def _request_to_dict(self, request: ChatRequest) -> dict[str, Any]:
        """Serialize a request, omitting optional fields instead of sending nulls."""
        payload: dict[str, Any] = {
            "model": request.model or self.model,
            "messages": self._messages_to_dicts(request.messages),
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }
        if request.tools:
            payload["tools"] = [_tool_to_dict(t) for t in request.tools]
        if request.tool_choice:
            payload["tool_choice"] = request.tool_choice
        return payload

    def _messages_to_dicts(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert Message objects to plain dicts for API calls."""
        result = []
        for msg in messages:
            if msg.role == "tool":
                result.append({
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id,
                    "content": msg.content or "",
                })
            elif msg.tool_calls:
                d: dict[str, Any] = {
                    "role": msg.role,
                    "content": msg.content or "",
                    "tool_calls": [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {
                                "name": tc.name,
                                "arguments": tc.arguments,
                            },
                        }
                        for tc in msg.tool_calls
                    ],
                }
                result.append(d)
            else:
                result.append({
                    "role": msg.role,
                    "content": msg.content or "",
                })
        return result


def _tool_to_dict(tool: Tool) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.parameters,
        },
    }


def raise_if_cancelled(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise Cancelled()


def run_cancellable(
    call: Callable[[], T],
    cancel: threading.Event | None,
    on_cancel: Callable[[], None] | None = None,
) -> T:
    """
    Run a blocking call on a daemon thread and wait for it, watching ``cancel``.

    When the event is set the wait is abandoned at once: ``on_cancel`` runs (to
    close whatever the call holds open) and ``Cancelled`` is raised. The call's
    eventual result or error is discarded.
    """
    raise_if_cancelled(cancel)
    if cancel is None:
        return call()

    done = threading.Event()
    outcome: dict[str, Any] = {}

    def target() -> None:
        try:
            outcome["value"] = call()
        except BaseException as e:
            outcome["error"] = e
        finally:
            done.set()

    threading.Thread(target=target, name="parley-request", daemon=True).start()
    while not done.wait(CANCEL_POLL_INTERVAL):
        if cancel.is_set():
            if on_cancel is not None:
                on_cancel()
            raise Cancelled()
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]


def iter_cancellable(items: Iterable[T], cancel: threading.Event | None) -> Iterator[T]:
    """
    Iterate ``items`` on a daemon thread so a cancel is noticed even while the
    next item is still blocked on the network.
    """
    if cancel is None:
        yield from items
        return

    pending: queue.Queue[tuple[str, Any]] = queue.Queue()
    stopped = threading.Event()

    def pump() -> None:
        try:
            for item in items:
                if stopped.is_set():
                    return
                pending.put(("item", item))
        except BaseException as e:
            pending.put(("error", e))
        else:
            pending.put(("end", None))

    threading.Thread(target=pump, name="parley-stream-reader", daemon=True).start()
    try:
        while True:
            raise_if_cancelled(cancel)
            try:
                kind, value = pending.get(timeout=CANCEL_POLL_INTERVAL)
            except queue.Empty:
                continue
            if kind == "end":
                return
            if kind == "error":
                raise value
            raise_if_cancelled(cancel)
            yield value
    finally:
        stopped.set()
