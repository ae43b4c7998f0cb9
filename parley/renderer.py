from __future__ import annotations

from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from parley.log import console
from parley.models import CharacterCard, ChatSession, Message
from parley.tools.registry import ToolRegistry

_ROLE_STYLES = {
    "user": "bold green",
    "assistant": "bold cyan",
    "tool": "magenta",
    "system": "dim",
}


def render_banner(model_label: str) -> None:
    console.print(
        f"[bold cyan]parley[/bold cyan] | {escape(model_label)}\n"
        "[dim]Enter to send, Esc+Enter for newline, /exit or Ctrl+D to quit[/dim]\n"
    )


def render_help(streaming: bool, conversation_only: bool) -> None:
    """Show a panel listing all REPL commands."""
    lines = [
        "[bold]/help[/bold]          show this help",
        "[bold]/clear[/bold]         clear conversation history",
        "[bold]/history[/bold]       show conversation history",
        f"[bold]/stream[/bold]        toggle streaming (now: {_on_off(streaming)})",
        f"[bold]/chat[/bold]          toggle conversation-only mode (now: {_on_off(conversation_only)})",
        "[bold]/tools[/bold]         list available tools",
        "[bold]/tokens[/bold]        estimated conversation size",
        "[bold]/exit[/bold]          quit",
        "",
        "[bold]Ctrl+C[/bold]         cancel the current request",
        "[bold]Esc, Enter[/bold]     newline without submitting",
    ]
    console.print(Panel("\n".join(lines), title="commands", border_style="dim"))


def render_history(messages: list[Message]) -> None:
    """Print the conversation, skipping the system prompt."""
    console.print("[bold]Conversation History[/bold]")
    for msg in messages:
        if msg.role == "system":
            continue
        style = _ROLE_STYLES.get(msg.role, "")
        label = msg.role.upper()
        if msg.role == "tool" and msg.name:
            label = f"TOOL {msg.name}"
        if msg.content:
            console.print(f"[{style}]{escape(label)}:[/{style}] {escape(msg.content)}")
        for tc in msg.tool_calls:
            console.print(f"  [dim]\\[Tool Call: {escape(tc.name)}][/dim]")
    console.print()


def render_tools(registry: ToolRegistry) -> None:
    table = Table(title="Available tools", show_lines=False)
    table.add_column("Name", style="cyan")
    table.add_column("Description")
    for tool in registry.list_schemas():
        table.add_row(tool.name, tool.description)
    console.print(table)


def render_token_estimate(total: int, message_count: int) -> None:
    console.print(
        f"[dim]~{total} tokens across {message_count} message(s) (estimate: 4 characters per token)[/dim]"
    )


def render_sessions(sessions: list[ChatSession]) -> None:
    if not sessions:
        console.print("[yellow]No saved sessions yet.[/yellow]")
        return
    table = Table(title="Saved sessions", show_lines=True)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Character", style="green")
    table.add_column("Messages", justify="right")
    table.add_column("Last modified", style="dim")
    for s in sessions:
        table.add_row(
            s.id[:12],
            escape(s.name),
            escape(s.character_name),
            str(len(s.messages)),
            s.last_modified.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


def render_card(card: CharacterCard) -> None:
    """Render a character card summary panel."""
    lines = [f"[bold cyan]{escape(card.name or '(unnamed)')}[/bold cyan]"]
    if card.creator:
        lines.append(f"[dim]created by {escape(card.creator)}[/dim]")
    if card.character_version:
        lines.append(f"[dim]version {escape(card.character_version)}[/dim]")
    if card.description:
        lines += ["", escape(_clip(card.description, 400))]
    if card.personality:
        lines += ["", f"[bold]Personality:[/bold] {escape(_clip(card.personality, 200))}"]
    if card.scenario:
        lines += [f"[bold]Scenario:[/bold] {escape(_clip(card.scenario, 200))}"]
    if card.tags:
        lines += ["", "[dim]tags: " + escape(", ".join(card.tags)) + "[/dim]"]
    console.print(Panel("\n".join(lines), title="character", border_style="cyan", expand=False))


def render_goodbye(exchanges: int, tokens: int) -> None:
    console.print(
        f"[dim]{exchanges} exchange(s) · ~{tokens} tokens[/dim]\n"
        "[bold cyan]Goodbye![/bold cyan]"
    )


def _on_off(flag: bool) -> str:
    return "[green]ON[/green]" if flag else "[red]OFF[/red]"


def _clip(text: str, limit: int) -> str:
    text = text.strip()
    return text if len(text) <= limit else text[: limit - 3] + "..."
