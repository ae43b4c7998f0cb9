from __future__ import annotations

import json
import logging
import math
import threading
from typing import Any, Iterable, Iterator

from parley.connectors.base import LLMConnector
from parley.errors import Cancelled, ParleyError
from parley.models import (
    ChatRequest,
    Message,
    ModelSettings,
    Reply,
    ReplyStatus,
    SessionMessage,
    ToolCall,
)
from parley.persona import PersonaContext
from parley.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant. Be concise and direct in your responses. "
    "Do not use markdown formatting, bullet points, or special formatting. "
    "Respond in plain text only."
)

NO_CONTENT = "No content in response"
NO_FINAL_CONTENT = "No content in final response"


class ChatEngine:
    """
    Owns the conversation history and drives one exchange at a time.

    Not thread-safe: callers must not run ``send``/``send_stream``/``clear_history``
    or mode toggles concurrently on the same engine. Separate engines share nothing.
    """

    def __init__(
        self,
        connector: LLMConnector,
        registry: ToolRegistry,
        settings: ModelSettings,
        persona: PersonaContext | None = None,
        conversation_only: bool = False,
    ) -> None:
        self.connector = connector
        self.registry = registry
        self.settings = settings
        self.persona = persona
        self._conversation_only = conversation_only
        self._initial: list[Message] = self._build_initial_messages()
        self.messages: list[Message] = _copy(self._initial)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _build_system_prompt(self) -> str:
        prompt = ""
        if self.persona is not None:
            prompt = self.persona.system_prompt
        prompt = prompt or DEFAULT_SYSTEM_PROMPT

        tools = self.registry.list_schemas()
        if tools and not self._conversation_only:
            clauses = ", ".join(
                f"use the {t.name} tool for {t.description.lower()}" for t in tools
            )
            prompt += f" When needed, {clauses}."

        if self.persona is not None and self.persona.post_history_instructions:
            prompt += f"\n\n{self.persona.post_history_instructions}"
        return prompt

    def _build_initial_messages(self) -> list[Message]:
        messages = [Message(role="system", content=self._build_system_prompt())]
        if self.persona is not None and self.persona.opening_message:
            messages.append(Message(role="assistant", content=self.persona.opening_message))
        return messages

    @property
    def conversation_only(self) -> bool:
        return self._conversation_only

    def set_conversation_only(self, enabled: bool) -> None:
        """
        Hide the system prompt and tool machinery from future requests. Only the
        system prompt is rewritten (so it mentions tools exactly when they are sent);
        the rest of the history is untouched.
        """
        self._conversation_only = enabled
        prompt = self._build_system_prompt()
        self._initial[0].content = prompt
        if self.messages and self.messages[0].role == "system":
            self.messages[0].content = prompt

    def set_persona(self, persona: PersonaContext | None) -> None:
        """Swap the persona and start the conversation over."""
        self.persona = persona
        self._initial = self._build_initial_messages()
        self.clear_history()

    def clear_history(self) -> None:
        self.messages = _copy(self._initial)

    def history(self) -> list[Message]:
        return _copy(self.messages)

    def restore(self, turns: Iterable[SessionMessage]) -> None:
        """Replay saved user/assistant turns on top of the initial state."""
        for turn in turns:
            if turn.role in ("user", "assistant"):
                self.messages.append(Message(role=turn.role, content=turn.content))

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def _project_messages(self) -> list[Message]:
        if not self._conversation_only:
            return list(self.messages)
        return [
            m for m in self.messages
            if m.role not in ("system", "tool") and not m.tool_calls
        ]

    def build_request(self, stream: bool = False) -> ChatRequest:
        request = ChatRequest(
            model=self.settings.model,
            messages=self._project_messages(),
            max_tokens=self.settings.max_tokens,
            temperature=self.settings.temperature,
        )
        if not stream and not self._conversation_only:
            tools = self.registry.list_schemas()
            if tools:
                request.tools = tools
                request.tool_choice = "auto"
        return request

    def _complete(self, cancel: threading.Event | None) -> Message:
        response = self.connector.complete(self.build_request(), cancel)
        self.messages.append(response.message)
        return response.message

    # ------------------------------------------------------------------
    # Exchanges
    # ------------------------------------------------------------------

    def send(self, text: str, cancel: threading.Event | None = None) -> Reply:
        """
        Send one user message and return the assistant's answer.

        Tool calls on the answer are executed and their results sent back, for at
        most ``settings.tool_rounds`` rounds. Errors and cancellation are reported
        in the returned Reply; whatever was appended to history before the failure
        stays there.
        """
        self.messages.append(Message(role="user", content=text))
        resolved = False
        try:
            message = self._complete(cancel)
            for _round in range(self.settings.tool_rounds):
                if not message.tool_calls:
                    break
                self._run_tool_calls(message.tool_calls)
                resolved = True
                message = self._complete(cancel)
        except Cancelled:
            logger.info("Request cancelled")
            return Reply(status=ReplyStatus.CANCELLED)
        except ParleyError as e:
            logger.error("%s", e)
            return Reply(status=ReplyStatus.ERROR, error=_describe(e, resolved))
        except Exception as e:
            logger.exception("Unexpected error while talking to the model")
            return Reply(status=ReplyStatus.ERROR, error=_describe(e, resolved))

        if message.tool_calls:
            logger.info("Tool round limit reached; leaving %d call(s) unexecuted", len(message.tool_calls))
        return Reply(text=message.content or (NO_FINAL_CONTENT if resolved else NO_CONTENT))

    def _run_tool_calls(self, tool_calls: list[ToolCall]) -> None:
        """Execute calls in order on this thread and append one tool message per call."""
        results: list[Message] = []
        for tc in tool_calls:
            logger.info("tool: %s(%s)", tc.name, format_arguments(tc.arguments))
            result = self.registry.execute(tc.name, tc.arguments)
            results.append(Message(
                role="tool",
                content=result,
                tool_call_id=tc.id,
                name=tc.name,
            ))
        self.messages.extend(results)

    def send_stream(self, text: str, cancel: threading.Event | None = None) -> ReplyStream:
        """
        Stream the answer to one user message. Tools are never offered while streaming.

        The returned ReplyStream yields text fragments once; afterwards its ``reply``
        holds the outcome. Only a stream that finishes normally and produced text is
        committed to history. On cancellation or error the partial text is discarded.
        """
        return ReplyStream(self._stream_fragments, text, cancel)

    def _stream_fragments(self, text: str, cancel: threading.Event | None, out: ReplyStream) -> Iterator[str]:
        self.messages.append(Message(role="user", content=text))
        parts: list[str] = []
        fragments = self.connector.stream(self.build_request(stream=True), cancel)
        try:
            for fragment in fragments:
                if cancel is not None and cancel.is_set():
                    raise Cancelled()
                if not fragment:
                    continue
                parts.append(fragment)
                yield fragment
        except Cancelled:
            logger.info("Stream cancelled; discarded %d characters", sum(map(len, parts)))
            out.reply = Reply(status=ReplyStatus.CANCELLED)
            return
        except ParleyError as e:
            logger.error("%s", e)
            out.reply = Reply(status=ReplyStatus.ERROR, error=str(e))
            return
        except Exception as e:
            logger.exception("Unexpected error while streaming")
            out.reply = Reply(status=ReplyStatus.ERROR, error=str(e))
            return
        finally:
            # releases the connector's open response when the consumer stops early
            close = getattr(fragments, "close", None)
            if close is not None:
                close()

        full = "".join(parts)
        if parts:
            self.messages.append(Message(role="assistant", content=full))
        out.reply = Reply(text=full)

    # ------------------------------------------------------------------
    # Token accounting
    # ------------------------------------------------------------------

    @staticmethod
    def estimate_tokens(text: str | None) -> int:
        return estimate_tokens(text)

    def conversation_token_estimate(self) -> int:
        total = 0
        for m in self.messages:
            total += estimate_tokens(m.content)
            for tc in m.tool_calls:
                total += estimate_tokens(tc.name) + estimate_tokens(tc.arguments)
        return total


class ReplyStream:
    """
    Single-use iterator over streamed fragments; ``reply`` is set once it is exhausted.

    Use it as a context manager (or call ``close``) when the loop may stop early,
    so the underlying response is released and ``reply`` reads as cancelled.
    """

    def __init__(self, producer, text: str, cancel: threading.Event | None) -> None:
        self.reply: Reply | None = None
        self._fragments: Iterator[str] = producer(text, cancel, self)

    def __iter__(self) -> Iterator[str]:
        return self._fragments

    def __next__(self) -> str:
        return next(self._fragments)

    def close(self) -> None:
        """Stop early. Treated like a cancellation: nothing is committed."""
        self._fragments.close()
        if self.reply is None:
            self.reply = Reply(status=ReplyStatus.CANCELLED)

    def __enter__(self) -> ReplyStream:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def estimate_tokens(text: str | None) -> int:
    """Approximate token count as ceil(characters / 4). A heuristic, not a tokenizer."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def format_arguments(arguments: str) -> str:
    """Format tool-call arguments for display (values truncated)."""
    try:
        args: Any = json.loads(arguments) if arguments else {}
    except ValueError:
        return arguments
    if not isinstance(args, dict):
        return arguments
    parts = []
    for k, v in args.items():
        sv = json.dumps(v, ensure_ascii=False) if not isinstance(v, str) else repr(v)
        if len(sv) > 40:
            sv = sv[:37] + "..."
        parts.append(f"{k}={sv}")
    return ", ".join(parts)


def _describe(error: Exception, after_tools: bool) -> str:
    if after_tools:
        return f"Error handling tool calls: {error}"
    return f"Error: {error}"


def _copy(messages: list[Message]) -> list[Message]:
    return [m.model_copy(deep=True) for m in messages]
