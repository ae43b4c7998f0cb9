from __future__ import annotations

import sys
from datetime import datetime
from typing import Any

import click
import questionary
from rich.markup import escape

import parley.config as config_mod
from parley.connectors import CONNECTOR_MAP, get_connector
from parley.engine import ChatEngine
from parley.errors import ParleyError
from parley.log import console, setup_logging
from parley.models import ChatSession
from parley.persona import PersonaContext, load_card
from parley.renderer import render_card, render_sessions
from parley.repl import run_repl
from parley.sessions import SessionStore
from parley.tools import default_registry


@click.group(invoke_without_command=True)
@click.option("--character", "-c", default=None, help="Character card (.json or .png).")
@click.option("--stream/--no-stream", default=None, help="Stream replies (disables tools).")
@click.option("--conversation-only", is_flag=True, default=False,
              help="Hide the system prompt and tools from the model.")
@click.option("--model", "-m", default=None, help="Override the configured model.")
@click.option("--resume", "resume_id", default=None, help="Resume a saved session by ID (prefix ok).")
@click.option("--no-save", is_flag=True, help="Do not record this conversation.")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging.")
@click.pass_context
def main(
    ctx: click.Context,
    character: str | None,
    stream: bool | None,
    conversation_only: bool,
    model: str | None,
    resume_id: str | None,
    no_save: bool,
    verbose: bool,
) -> None:
    """parley: chat with an OpenAI-compatible model that can search, fetch and calculate."""
    setup_logging(verbose)
    if ctx.invoked_subcommand is not None:
        return

    try:
        cfg = config_mod.load()
        store = SessionStore(config_mod.sessions_path(cfg))

        resumed: ChatSession | None = None
        if resume_id:
            resumed = _find_session(store, resume_id)
            if resumed is None:
                console.print(f"[red]No saved session matches '{escape(resume_id)}'.[/red]")
                sys.exit(1)

        card_path = character or (resumed.character_file if resumed else "") or cfg["chat"]["character"]
        persona = None
        if card_path:
            card = load_card(card_path)
            render_card(card)
            persona = PersonaContext(card)

        api = cfg["api"]
        connector = get_connector(api["connector"], api, model)
        registry = default_registry(cfg)
        engine = ChatEngine(
            connector=connector,
            registry=registry,
            settings=config_mod.model_settings(cfg, model),
            persona=persona,
            conversation_only=conversation_only or bool(cfg["chat"]["conversation_only"]),
        )
    except ParleyError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)

    if resumed is not None:
        engine.restore(resumed.messages)
        console.print(
            f"[dim]Resumed session '{escape(resumed.name)}' ({len(resumed.messages)} messages).[/dim]"
        )
    elif cfg["chat"]["save_sessions"] and not no_save:
        name = f"{persona.name if persona and persona.name else 'Chat'} {datetime.now():%Y-%m-%d %H:%M}"
        store.create(name, character_name=persona.name if persona else "", character_file=card_path or "")

    use_store = store if store.current is not None and not no_save else None
    streaming = cfg["chat"]["stream"] if stream is None else stream
    try:
        run_repl(engine, f"{api['connector']}/{engine.settings.model}", bool(streaming), use_store)
    finally:
        connector.close()
        registry.close()


@main.command("config")
def cmd_config() -> None:
    """Interactive configuration wizard."""
    try:
        cfg = config_mod.load()
    except ParleyError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)
    api = cfg["api"]

    console.print("[bold cyan]parley configuration[/bold cyan]\n")

    connector = questionary.select(
        "Connector:",
        choices=list(CONNECTOR_MAP),
        default=api["connector"],
    ).ask()

    base_url = questionary.text(
        "API base URL:",
        default=api["base_url"],
    ).ask()

    model = questionary.text(
        "Model name:",
        default=api["model"],
    ).ask()

    api_key = questionary.password(
        "API key (leave empty to keep current):",
    ).ask()

    stream = questionary.confirm(
        "Stream replies by default? (tools are unavailable while streaming)",
        default=bool(cfg["chat"]["stream"]),
    ).ask()

    if connector is None or base_url is None or model is None or api_key is None or stream is None:
        console.print("[yellow]Configuration cancelled.[/yellow]")
        return

    api["connector"] = connector
    api["base_url"] = base_url
    api["model"] = model
    if api_key:
        api["api_key"] = api_key
    cfg["chat"]["stream"] = stream

    config_mod.save(cfg)
    console.print(f"\n[green]Config saved to {config_mod.CONFIG_FILE}[/green]")


@main.group("sessions", invoke_without_command=True)
@click.pass_context
def cmd_sessions(ctx: click.Context) -> None:
    """List saved chat sessions."""
    if ctx.invoked_subcommand is not None:
        return
    render_sessions(_store().list_sessions())


@cmd_sessions.command("rm")
@click.argument("session_id", required=False)
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
def cmd_sessions_rm(session_id: str | None, yes: bool) -> None:
    """Delete a saved session (pick one interactively if no ID is given)."""
    store = _store()
    if session_id:
        session = _find_session(store, session_id)
    else:
        sessions = store.list_sessions()
        if not sessions:
            console.print("[yellow]No saved sessions.[/yellow]")
            return
        session = questionary.select(
            "Which session?",
            choices=[
                questionary.Choice(
                    title=f"{s.name:<30} {s.character_name:<15} {len(s.messages):>4} msgs",
                    value=s,
                )
                for s in sessions
            ],
        ).ask()

    if session is None:
        console.print("[yellow]Nothing deleted.[/yellow]")
        return
    if not yes and not questionary.confirm(f"Delete '{session.name}'?", default=False).ask():
        console.print("[yellow]Nothing deleted.[/yellow]")
        return
    store.delete(session.id)
    console.print(f"[green]Deleted session '{escape(session.name)}'.[/green]")


@main.command("card")
@click.argument("path")
def cmd_card(path: str) -> None:
    """Show a character card and the system prompt it produces."""
    try:
        card = load_card(path)
    except ParleyError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)
    render_card(card)
    persona = PersonaContext(card)
    console.print("\n[bold]System prompt:[/bold]")
    console.print(escape(persona.system_prompt or "(empty)"))
    console.print("\n[bold]Greeting:[/bold]")
    console.print(escape(persona.greeting))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _store() -> SessionStore:
    try:
        cfg: dict[str, Any] = config_mod.load()
    except ParleyError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)
    return SessionStore(config_mod.sessions_path(cfg))


def _find_session(store: SessionStore, prefix: str) -> ChatSession | None:
    """Exact ID first, then a unique ID prefix."""
    session = store.load(prefix)
    if session is not None:
        return session
    matches = [s for s in store.list_sessions() if s.id.startswith(prefix)]
    if len(matches) != 1:
        return None
    store.current = matches[0]
    return matches[0]
