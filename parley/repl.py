from __future__ import annotations

import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.key_binding import KeyBindings
from rich.markdown import Markdown
from rich.markup import escape

from parley.engine import ChatEngine
from parley.log import console
from parley.models import Reply, ReplyStatus
from parley.renderer import (
    render_banner,
    render_goodbye,
    render_help,
    render_history,
    render_token_estimate,
    render_tools,
)
from parley.sessions import SessionStore


@dataclass
class ReplState:
    streaming: bool = False
    exchanges: int = 0


def _make_toolbar(engine: ChatEngine, model_label: str, state: ReplState) -> HTML:
    persona = engine.persona.name if engine.persona and engine.persona.name else "assistant"
    flags = []
    if state.streaming:
        flags.append("stream")
    if engine.conversation_only:
        flags.append("chat-only")
    flag_text = f"  <i>[{', '.join(flags)}]</i>" if flags else ""
    return HTML(
        f"<b>[{persona}]</b>  <i>[{model_label}]</i>{flag_text}  "
        "<dim>Enter to send | Esc+Enter for newline | Ctrl+C cancels | /help for commands</dim>"
    )


def run_repl(
    engine: ChatEngine,
    model_label: str,
    streaming: bool = False,
    store: SessionStore | None = None,
) -> None:
    """
    Run the interactive prompt_toolkit REPL.
    Enter = submit, Esc+Enter = newline. Ctrl+C while a request is running cancels it.
    """
    state = ReplState(streaming=streaming)
    kb = KeyBindings()

    # Enter submits (eager so it overrides the multiline default)
    @kb.add("enter", eager=True)
    def _submit(event):
        event.current_buffer.validate_and_handle()

    @kb.add("escape", "enter")
    def _newline(event):
        event.current_buffer.insert_text("\n")

    prompt_session: PromptSession = PromptSession(
        multiline=True,
        key_bindings=kb,
        bottom_toolbar=lambda: _make_toolbar(engine, model_label, state),
        prompt_continuation="  ",
    )

    render_banner(model_label)
    if engine.persona is not None:
        console.print(f"[bold]{escape(engine.persona.name or 'Assistant')}:[/bold]")
        console.print(escape(engine.persona.greeting))
        console.print()

    while True:
        try:
            text = prompt_session.prompt("> ")
        except KeyboardInterrupt:
            continue
        except EOFError:
            # Ctrl+D
            break

        text = text.strip()
        if not text:
            continue

        if text.startswith("/"):
            if handle_command(text, engine, state):
                break
            continue

        reply = ask_stream(engine, text) if state.streaming else ask(engine, text)
        state.exchanges += 1
        _show_reply(reply, streamed=state.streaming)
        if store is not None and reply.ok:
            store.record("user", text)
            store.record("assistant", reply.text)

    render_goodbye(state.exchanges, engine.conversation_token_estimate())


def handle_command(command: str, engine: ChatEngine, state: ReplState) -> bool:
    """Dispatch a slash command. Returns True when the REPL should exit."""
    cmd = command.strip().split(None, 1)[0].lower()

    if cmd in ("/exit", "/quit"):
        return True
    if cmd == "/help":
        render_help(state.streaming, engine.conversation_only)
    elif cmd == "/clear":
        engine.clear_history()
        console.print("[green]Conversation history cleared.[/green]\n")
    elif cmd == "/history":
        render_history(engine.history())
    elif cmd == "/stream":
        state.streaming = not state.streaming
        console.print(f"Streaming mode is now {'ON' if state.streaming else 'OFF'}")
        if state.streaming:
            console.print("[dim]Note: tool calls are not supported in streaming mode.[/dim]")
        console.print()
    elif cmd == "/chat":
        engine.set_conversation_only(not engine.conversation_only)
        console.print(
            f"Conversation-only mode is now {'ON' if engine.conversation_only else 'OFF'}"
        )
        if engine.conversation_only:
            console.print("[dim]System prompt and tools are hidden from the model.[/dim]")
        console.print()
    elif cmd == "/tools":
        render_tools(engine.registry)
    elif cmd == "/tokens":
        render_token_estimate(engine.conversation_token_estimate(), len(engine.messages))
    else:
        console.print(f"[red]Unknown command: {escape(command)}[/red]\n")
    return False


def ask(engine: ChatEngine, text: str) -> Reply:
    """Run ``engine.send`` on a worker thread so Ctrl+C can cancel it."""
    cancel = threading.Event()
    with ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(engine.send, text, cancel)
        with console.status("[dim]thinking...[/dim]", spinner="dots"):
            while True:
                try:
                    return future.result()
                except KeyboardInterrupt:
                    cancel.set()


def ask_stream(engine: ChatEngine, text: str) -> Reply:
    """Stream a reply to the console; fragments are pumped from a worker thread."""
    cancel = threading.Event()
    stream = engine.send_stream(text, cancel)
    fragments: queue.Queue[str | None] = queue.Queue()

    def pump() -> None:
        try:
            with stream:
                for fragment in stream:
                    fragments.put(fragment)
        finally:
            fragments.put(None)

    worker = threading.Thread(target=pump, name="parley-stream", daemon=True)
    worker.start()

    console.print("\n[bold]Assistant:[/bold] ", end="")
    while True:
        try:
            fragment = fragments.get()
        except KeyboardInterrupt:
            cancel.set()
            continue
        if fragment is None:
            break
        if not cancel.is_set():
            console.out(fragment, end="", highlight=False)
    worker.join()
    console.print()
    return stream.reply or Reply(status=ReplyStatus.CANCELLED)


def _show_reply(reply: Reply, streamed: bool) -> None:
    if reply.cancelled:
        console.print("\n[yellow]Request cancelled by user.[/yellow]\n")
    elif not reply.ok:
        console.print(f"[red]{escape(reply.error or 'Unknown error')}[/red]\n")
    elif streamed:
        console.print()
    else:
        console.print("\n[bold]Assistant:[/bold]")
        console.print(Markdown(reply.text))
        console.print()
