from __future__ import annotations

import json
import logging
import threading
import uuid
from typing import Any, Iterator

import httpx
import ollama

from parley.connectors.base import (
    LLMConnector,
    _tool_to_dict,
    iter_cancellable,
    raise_if_cancelled,
    run_cancellable,
)
from parley.errors import TransportError
from parley.models import ChatRequest, Message, Response, ToolCall

logger = logging.getLogger(__name__)

_CLIENT_ERRORS = (ollama.ResponseError, ConnectionError, httpx.HTTPError)


class OllamaConnector(LLMConnector):
    def __init__(
        self,
        model: str,
        base_url: str | None = None,
        api_key: str = "",
        timeout: float = 120.0,
        client: ollama.Client | None = None,
    ) -> None:
        super().__init__(model)
        # ollama's native API lives at the server root, not under /v1
        host = base_url.rstrip("/").removesuffix("/v1") if base_url else None
        self._client = client or ollama.Client(host=host, timeout=timeout)

    def complete(self, request: ChatRequest, cancel: threading.Event | None = None) -> Response:
        raise_if_cancelled(cancel)
        kwargs = self._chat_kwargs(request)
        if request.tools:
            kwargs["tools"] = [_tool_to_dict(t) for t in request.tools]

        def chat() -> Any:
            try:
                return self._client.chat(**kwargs)
            except _CLIENT_ERRORS as e:
                raise TransportError(f"Ollama request failed: {e}") from e

        response = run_cancellable(chat, cancel)
        ollama_msg = response.message

        tool_calls: list[ToolCall] = []
        for tc in ollama_msg.tool_calls or []:
            # Ollama .arguments is already a dict; history keeps raw JSON text
            args = tc.function.arguments
            tool_calls.append(ToolCall(
                id=str(uuid.uuid4()),  # Ollama doesn't assign IDs
                name=tc.function.name,
                arguments=args if isinstance(args, str) else json.dumps(dict(args or {})),
            ))

        msg = Message(
            role="assistant",
            content=ollama_msg.content or None,
            tool_calls=tool_calls,
        )
        stop_reason = "tool_use" if tool_calls else "stop"
        return Response(message=msg, stop_reason=stop_reason, model=request.model)

    def stream(self, request: ChatRequest, cancel: threading.Event | None = None) -> Iterator[str]:
        """Stream text. Tools are never sent: Ollama doesn't support streaming + tools."""
        raise_if_cancelled(cancel)
        try:
            chunks = self._client.chat(**self._chat_kwargs(request), stream=True)
            for chunk in iter_cancellable(chunks, cancel):
                text = chunk.message.content
                if text:
                    yield text
        except _CLIENT_ERRORS as e:
            raise TransportError(f"Ollama stream failed: {e}") from e

    def _chat_kwargs(self, request: ChatRequest) -> dict[str, Any]:
        return {
            "model": request.model or self.model,
            "messages": self._messages_to_ollama(request.messages),
            "options": {
                "temperature": request.temperature,
                "num_predict": request.max_tokens,
            },
        }

    def _messages_to_ollama(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert Message objects to Ollama-compatible dicts."""
        result = []
        for msg in messages:
            if msg.role == "tool":
                result.append({
                    "role": "tool",
                    "content": msg.content or "",
                })
            elif msg.tool_calls:
                result.append({
                    "role": "assistant",
                    "content": msg.content or "",
                    "tool_calls": [
                        {
                            "function": {
                                "name": tc.name,
                                "arguments": _arguments_to_dict(tc.arguments),
                            }
                        }
                        for tc in msg.tool_calls
                    ],
                })
            else:
                result.append({
                    "role": msg.role,
                    "content": msg.content or "",
                })
        return result


def _arguments_to_dict(arguments: str) -> dict[str, Any]:
    try:
        parsed = json.loads(arguments or "{}")
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}
