"""CLI commands for portal-ask."""

import asyncio
import logging
import os
import signal

import typer
from rich.console import Console, Group, RenderableType
from rich.live import Live
from rich.table import Table
from rich.text import Text

from . import __version__
from .citations import render_plain
from .config import (
    API_KEY_ENV,
    BACKEND_URL_ENV,
    CHAT_HISTORY_FILE,
    ENV_PATH,
    AskSettings,
    ConfigurationError,
    ensure_data_dir,
    load_settings,
    save_env_var,
)
from .conversation import AskConversation
from .db import Database, generate_title
from .models import ConversationTurn, StoredConversation
from .relay import relay
from .transport import AskTransport, TransportError

# Configure logging based on LOG_LEVEL environment variable
_log_level = os.environ.get("LOG_LEVEL", "WARNING").upper()
logging.basicConfig(
    level=getattr(logging, _log_level, logging.WARNING),
    format="%(levelname)s %(name)s: %(message)s",
)
# Suppress per-request HTTP client logs
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="portal-ask",
    help="Ask questions about a video library and get cited answers.",
    no_args_is_help=True,
)
config_app = typer.Typer(help="Manage API key and backend URL.", no_args_is_help=True)
app.add_typer(config_app, name="config")
console = Console()


def get_db() -> Database:
    """Get database instance."""
    db = Database()
    db.init()
    return db


def get_settings() -> AskSettings:
    """Load settings or exit with a readable error."""
    try:
        return load_settings()
    except ConfigurationError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


def get_transport(settings: AskSettings) -> AskTransport:
    """Create the HTTP transport for the ask service."""
    return AskTransport(settings)


# =============================================================================
# Rendering
# =============================================================================


def render_turn(turn: ConversationTurn) -> RenderableType:
    """Render an assistant or user turn for the terminal."""
    if turn.role == "user":
        return Text(f"> {turn.text}", style="bold")

    if turn.kind == "loading":
        return Text("Thinking...", style="dim")

    if turn.kind == "error":
        return Text(turn.text, style="red")

    if turn.kind == "clarification":
        parts: list[RenderableType] = [Text("I need a bit more detail:", style="yellow")]
        questions = turn.clarification.questions if turn.clarification else [turn.text]
        for question in questions:
            parts.append(Text(f"  - {question}"))
        return Group(*parts)

    parts = [Text(render_plain(turn.render_text))]
    if turn.notice:
        parts.append(Text(turn.notice, style="yellow"))
    return Group(*parts)


def print_citations(turn: ConversationTurn) -> None:
    """Print the numbered sources cited by an answer."""
    cited = [c for c in turn.citations if c.cited]
    if not cited:
        return
    console.print()
    for citation in cited:
        console.print(
            f"[cyan]{citation.number}.[/cyan] [bold]{citation.title}[/bold] "
            f"[dim]({citation.timestamp_start}-{citation.timestamp_end}, {citation.speaker})[/dim]"
        )
        preview = citation.text[:150].replace("\n", " ").strip()
        if len(citation.text) > 150:
            preview += "..."
        if preview:
            console.print(f"   [dim]{preview}[/dim]")


def print_turn(turn: ConversationTurn) -> None:
    console.print(render_turn(turn))
    if turn.role == "assistant":
        print_citations(turn)
    console.print()


def print_outcome(turn: ConversationTurn | None) -> None:
    """Print a finished assistant turn with its status hints."""
    if turn is None:
        return
    print_turn(turn)
    if turn.stopped:
        console.print("[dim](stopped)[/dim]\n")
    elif turn.kind == "error" or turn.notice:
        if turn.retryable:
            console.print("[dim]Type /retry to try again.[/dim]\n")
    elif turn.kind == "clarification":
        console.print("[dim]Answer the question above to continue.[/dim]\n")


async def stream_answer(
    conversation: AskConversation,
    query: str,
    deep: bool = False,
    retry: bool = False,
) -> ConversationTurn | None:
    """Ask a question while showing the answer live.

    Ctrl+C stops the answer (keeping what has streamed so far) instead of
    exiting.
    """
    loop = asyncio.get_running_loop()
    last = conversation.store.last_assistant_turn
    answering_clarification = last is not None and last.kind == "clarification"

    with Live(Text("Thinking...", style="dim"), console=console, transient=True) as live:

        def on_change(turn: ConversationTurn | None) -> None:
            if turn is not None and turn.role == "assistant":
                live.update(render_turn(turn))

        unsubscribe = conversation.store.subscribe(on_change)
        try:
            loop.add_signal_handler(signal.SIGINT, conversation.stop)
            handler_installed = True
        except (NotImplementedError, RuntimeError):
            handler_installed = False

        try:
            if retry:
                return await conversation.retry(deep=deep)
            if answering_clarification:
                return await conversation.answer_clarification(query, deep=deep)
            return await conversation.ask(query, deep=deep)
        finally:
            unsubscribe()
            if handler_installed:
                loop.remove_signal_handler(signal.SIGINT)


def save_conversation(
    db: Database,
    stored: StoredConversation,
    conversation: AskConversation,
) -> None:
    """Persist finished turns and the upstream conversation id."""
    upstream_id = conversation.store.conversation_id
    if upstream_id and upstream_id != stored.upstream_id:
        db.set_upstream_id(stored.id, upstream_id)
        stored.upstream_id = upstream_id
    for turn in conversation.store.history_for_display():
        if turn.final and turn.kind != "loading":
            db.save_turn(stored.id, turn)


# =============================================================================
# Commands
# =============================================================================


@app.command()
def ask(
    query: str = typer.Argument(..., help="Question to ask"),
    conversation_id: str = typer.Option(
        None, "-c", "--conversation", help="Continue an upstream conversation ID"
    ),
    deep: bool = typer.Option(False, "--deep", help="Allow long-running deep answers"),
    json_output: bool = typer.Option(False, "--json", help="Print the raw event stream"),
):
    """Ask a single question and stream the answer with citations."""
    settings = get_settings()

    if json_output:

        async def run_json():
            async with get_transport(settings) as transport:
                events = transport.send(query, conversation_id=conversation_id, deep=deep)
                async for frame in relay(events, conversation_id=conversation_id):
                    typer.echo(frame.decode("utf-8"), nl=False)

        asyncio.run(run_json())
        return

    db = get_db()
    stored = None
    if conversation_id:
        stored = db.get_conversation(conversation_id)
    if stored is None:
        stored = db.create_conversation(upstream_id=conversation_id)

    async def run():
        async with get_transport(settings) as transport:
            conversation = AskConversation(transport)
            conversation.store.set_conversation_id(stored.upstream_id)
            turn = await stream_answer(conversation, query, deep=deep)
            return conversation, turn

    try:
        conversation, turn = asyncio.run(run())
        print_outcome(turn)
        save_conversation(db, stored, conversation)
        if conversation.conversation_id:
            console.print(f"[dim]Conversation: {conversation.conversation_id}[/dim]")
    finally:
        db.close()

    if turn is not None and turn.kind == "error":
        raise typer.Exit(1)


@app.command()
def chat(
    new: bool = typer.Option(False, "--new", help="Start a new chat session"),
    session: str = typer.Option(None, "-s", "--session", help="Resume session by ID prefix"),
    list_sessions: bool = typer.Option(False, "--list", help="List recent chat sessions"),
    deep: bool = typer.Option(False, "--deep", help="Allow long-running deep answers"),
):
    """Interactive chat with your video library.

    Sessions persist conversation history:
      --new         Start a fresh session
      --session ID  Resume a specific session (prefix match)
      --list        Show recent sessions

    Without flags, resumes the most recent session or creates a new one.
    """
    import readline

    db = get_db()

    if list_sessions:
        _print_conversation_table(db, limit=20, title="Chat Sessions")
        db.close()
        return

    settings = get_settings()

    if new:
        stored = db.create_conversation()
        console.print(f"[dim]New session: {stored.id[:8]}[/dim]")
    elif session:
        stored = db.get_conversation(session)
        if not stored:
            console.print(f"[red]Session not found: {session}[/red]")
            db.close()
            raise typer.Exit(1)
        console.print(f"[dim]Resumed: {stored.title} ({db.get_turn_count(stored.id)} turns)[/dim]")
    else:
        recent = db.list_conversations(limit=1)
        if recent:
            stored = recent[0]
            console.print(
                f"[dim]Resumed: {stored.title} ({db.get_turn_count(stored.id)} turns)[/dim]"
            )
        else:
            stored = db.create_conversation()
            console.print(f"[dim]New session: {stored.id[:8]}[/dim]")

    try:
        readline.read_history_file(CHAT_HISTORY_FILE)
    except FileNotFoundError:
        pass  # First run, no history yet
    readline.set_history_length(1000)

    console.print("[bold]portal-ask Chat[/bold]")
    console.print("Type your questions. Use 'exit' or Ctrl+C to quit.")
    console.print("[dim]Commands: /new, /sessions, /retry, /rename <title>[/dim]\n")

    async def run_chat():
        nonlocal stored

        async with get_transport(settings) as transport:
            conversation = AskConversation(transport)
            conversation.store.replace(db.get_turns(stored.id), stored.upstream_id)

            while True:
                try:
                    query = await asyncio.to_thread(input, "> ")
                except (EOFError, KeyboardInterrupt):
                    console.print("\nGoodbye!")
                    break

                query = query.strip()
                if not query:
                    continue
                if query.lower() in ("exit", "quit", "q"):
                    console.print("Goodbye!")
                    break

                retry = False
                if query.startswith("/"):
                    cmd_parts = query[1:].split(maxsplit=1)
                    cmd = cmd_parts[0].lower() if cmd_parts else ""
                    cmd_arg = cmd_parts[1] if len(cmd_parts) > 1 else ""

                    if cmd == "new":
                        await conversation.reset()
                        stored = db.create_conversation()
                        console.print(f"[green]Started new session: {stored.id[:8]}[/green]\n")
                        continue
                    elif cmd == "sessions":
                        for s in db.list_conversations(limit=10):
                            marker = "*" if s.id == stored.id else " "
                            count = db.get_turn_count(s.id)
                            console.print(f"{marker} {s.id[:8]}: {s.title} ({count} turns)")
                        console.print()
                        continue
                    elif cmd == "rename" and cmd_arg:
                        db.update_conversation_title(stored.id, cmd_arg)
                        stored.title = cmd_arg
                        console.print(f"[green]Renamed to: {cmd_arg}[/green]\n")
                        continue
                    elif cmd == "rename":
                        console.print("[yellow]Usage: /rename <new title>[/yellow]\n")
                        continue
                    elif cmd == "retry":
                        last = conversation.store.last_assistant_turn
                        if last is None or not last.retryable:
                            console.print("[yellow]Nothing to retry[/yellow]\n")
                            continue
                        retry = True
                    else:
                        console.print(f"[yellow]Unknown command: /{cmd}[/yellow]\n")
                        continue

                console.print()
                turn = await stream_answer(conversation, query, deep=deep, retry=retry)
                print_outcome(turn)
                save_conversation(db, stored, conversation)

    try:
        asyncio.run(run_chat())
    finally:
        ensure_data_dir()
        readline.write_history_file(CHAT_HISTORY_FILE)
        db.close()


def _print_conversation_table(db: Database, limit: int, title: str) -> None:
    conversations = db.list_conversations(limit=limit)
    if not conversations:
        console.print("[yellow]No conversations found[/yellow]")
        return

    table = Table(title=title)
    table.add_column("ID", style="dim")
    table.add_column("Title", max_width=50)
    table.add_column("Turns")
    table.add_column("Updated")

    for c in conversations:
        updated = c.updated_at.strftime("%m-%d %H:%M") if c.updated_at else ""
        table.add_row(c.id[:8], c.title, str(db.get_turn_count(c.id)), updated)

    console.print(table)


@app.command()
def history(
    limit: int = typer.Option(20, "-n", "--limit", help="Number of conversations to show"),
):
    """List saved conversations."""
    db = get_db()
    try:
        _print_conversation_table(db, limit=limit, title="Conversations")
    finally:
        db.close()


@app.command()
def show(conversation_id: str = typer.Argument(..., help="Conversation ID or prefix")):
    """Show a saved conversation."""
    db = get_db()
    try:
        stored = db.get_conversation(conversation_id)
        if not stored:
            console.print(f"[red]Conversation not found: {conversation_id}[/red]")
            raise typer.Exit(1)

        console.print(f"[bold]{stored.title}[/bold]")
        if stored.upstream_id:
            console.print(f"[dim]Upstream: {stored.upstream_id}[/dim]")
        console.print()
        for turn in db.get_turns(stored.id):
            print_turn(turn)
    finally:
        db.close()


@app.command()
def load(conversation_id: str = typer.Argument(..., help="Upstream conversation ID")):
    """Fetch a conversation from the service and save it locally."""
    settings = get_settings()

    async def run():
        async with get_transport(settings) as transport:
            conversation = AskConversation(transport)
            history = await conversation.load(conversation_id)
            return conversation, history

    try:
        conversation, history = asyncio.run(run())
    except TransportError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    if history is None:
        console.print(f"[red]Conversation not found: {conversation_id}[/red]")
        raise typer.Exit(1)

    db = get_db()
    try:
        stored = db.get_conversation(history.conversation_id)
        if stored is None:
            stored = db.create_conversation(
                title=generate_title(history.original_query) if history.original_query else None,
                upstream_id=history.conversation_id,
            )
        save_conversation(db, stored, conversation)
    finally:
        db.close()

    console.print(f"[bold]{stored.title}[/bold]\n")
    for turn in conversation.store.history_for_display():
        print_turn(turn)
    console.print(f"[green]✓[/green] Saved as {stored.id[:8]}")


@config_app.command("set-key")
def config_set_key(key: str = typer.Argument(..., help="API key for the ask service")):
    """Save the API key to ~/.portal-ask/.env."""
    save_env_var(API_KEY_ENV, key)
    console.print(f"[green]✓[/green] Saved {API_KEY_ENV} to {ENV_PATH}")


@config_app.command("set-url")
def config_set_url(url: str = typer.Argument(..., help="Backend base URL")):
    """Save the backend URL to ~/.portal-ask/.env."""
    save_env_var(BACKEND_URL_ENV, url)
    console.print(f"[green]✓[/green] Saved {BACKEND_URL_ENV} to {ENV_PATH}")


@app.command()
def version():
    """Show version."""
    console.print(f"portal-ask {__version__}")


if __name__ == "__main__":
    app()
