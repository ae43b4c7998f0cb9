from __future__ import annotations

import json
import logging
import threading
import uuid
from typing import Any, Iterable, Iterator

import httpx

from parley.connectors.base import LLMConnector, iter_cancellable, raise_if_cancelled, run_cancellable
from parley.errors import Cancelled, ProtocolError, TransportError
from parley.models import ChatRequest, Message, Response, ToolCall, Usage

logger = logging.getLogger(__name__)

USER_AGENT = "parley/0.1.0"

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class OpenAIConnector(LLMConnector):
    """Any server speaking the OpenAI ``/chat/completions`` protocol (OpenAI, LM Studio, vLLM, llama.cpp)."""

    def __init__(
        self,
        model: str,
        base_url: str = "https://api.openai.com/v1",
        api_key: str = "",
        timeout: float = 120.0,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(model)
        self.base_url = base_url.rstrip("/")
        self._headers = {"User-Agent": USER_AGENT}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.Client(timeout=timeout)

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    def complete(self, request: ChatRequest, cancel: threading.Event | None = None) -> Response:
        payload = self._request_to_dict(request)
        logger.debug(
            "POST %s (%d messages, %d tools)",
            self.endpoint, len(payload["messages"]), len(payload.get("tools", [])),
        )
        body = self._post(payload, cancel)

        try:
            data = json.loads(body)
        except ValueError as e:
            raise ProtocolError(f"Failed to deserialize response: {e}") from e

        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise ProtocolError("No response received from the API")
        raw_message = choices[0].get("message") if isinstance(choices[0], dict) else None
        if not isinstance(raw_message, dict):
            raise ProtocolError("Response choice carries no message")

        msg = _parse_message(raw_message)
        usage = data.get("usage")
        return Response(
            message=msg,
            stop_reason="tool_use" if msg.tool_calls else "stop",
            model=data.get("model") or request.model,
            usage=Usage.model_validate(usage) if isinstance(usage, dict) else None,
        )

    def stream(self, request: ChatRequest, cancel: threading.Event | None = None) -> Iterator[str]:
        payload = self._request_to_dict(request)
        payload["stream"] = True
        logger.debug("POST %s (streaming, %d messages)", self.endpoint, len(payload["messages"]))

        response = self._open(payload, cancel)
        try:
            if not response.is_success:
                body = b"".join(iter_cancellable(response.iter_bytes(), cancel))
                raise TransportError(
                    f"API request failed with status {response.status_code}: "
                    f"{body.decode('utf-8', errors='replace')}"
                )
            yield from iter_sse_deltas(iter_cancellable(response.iter_lines(), cancel), cancel)
        except (httpx.HTTPError, httpx.StreamError) as e:
            if cancel is not None and cancel.is_set():
                raise Cancelled() from e
            raise TransportError(f"Error reading chat stream: {e}") from e
        finally:
            response.close()

    def close(self) -> None:
        self._client.close()

    def _open(self, payload: dict[str, Any], cancel: threading.Event | None) -> httpx.Response:
        """Send the request and return once the status line arrives. A cancel stops the wait."""
        request = self._client.build_request("POST", self.endpoint, json=payload, headers=self._headers)

        def send() -> httpx.Response:
            try:
                response = self._client.send(request, stream=True)
            except httpx.HTTPError as e:
                raise TransportError(f"Error sending chat request: {e}") from e
            if cancel is not None and cancel.is_set():
                # nobody is waiting for this response any more
                response.close()
            return response

        return run_cancellable(send, cancel)

    def _post(self, payload: dict[str, Any], cancel: threading.Event | None) -> bytes:
        """POST and read the whole body. Cancelling closes the response and returns at once."""
        response = self._open(payload, cancel)
        try:
            body = b"".join(iter_cancellable(response.iter_bytes(), cancel))
        except (httpx.HTTPError, httpx.StreamError) as e:
            if cancel is not None and cancel.is_set():
                raise Cancelled() from e
            raise TransportError(f"Error reading chat response: {e}") from e
        finally:
            response.close()
        if not response.is_success:
            raise TransportError(
                f"API request failed with status {response.status_code}: "
                f"{body.decode('utf-8', errors='replace')}"
            )
        return body


def iter_sse_deltas(lines: Iterable[str], cancel: threading.Event | None = None) -> Iterator[str]:
    """
    Yield ``choices[0].delta.content`` from server-sent-event lines.
    Stops at ``data: [DONE]``; frames that fail to parse are skipped.
    """
    for line in lines:
        raise_if_cancelled(cancel)
        line = line.strip()
        if not line.startswith(DATA_PREFIX):
            continue
        data = line[len(DATA_PREFIX):].strip()
        if data == DONE_SENTINEL:
            logger.debug("Stream completed")
            break
        if not data:
            continue
        try:
            chunk = json.loads(data)
            content = chunk["choices"][0]["delta"].get("content")
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            logger.debug("Skipping malformed stream frame (%s): %r", e, data[:120])
            continue
        if content:
            yield content


def _parse_message(raw: dict[str, Any]) -> Message:
    tool_calls: list[ToolCall] = []
    for tc in raw.get("tool_calls") or []:
        fn = tc.get("function") or {}
        args = fn.get("arguments")
        if not isinstance(args, str):
            # some servers send a decoded object instead of a JSON string
            args = json.dumps(args if args is not None else {})
        tool_calls.append(ToolCall(
            id=tc.get("id") or f"call_{uuid.uuid4().hex[:24]}",
            name=fn.get("name") or "",
            arguments=args,
        ))
    return Message(
        role="assistant",
        content=raw.get("content"),
        tool_calls=tool_calls,
    )
