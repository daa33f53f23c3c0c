"""
cli-code: AI coding assistant for your terminal.

Command: cli-code run
"""

import os
import re
from pathlib import Path

import click
from rich.console import Console
from rich.live import Live
from rich.markup import escape
from rich.table import Table

from . import __version__
from .auth import TokenRefresher
from .chat import ChatClient
from .config import CONFIG_DIR, HISTORY_FILE, Config
from .conversation import Conversation
from .logger import get_logger, setup_logger
from .sessions import SessionStore
from .tools import ToolRegistry
from .ui import (
    BORDER, DIM, build_banner, confirm_tool_call, print_new_messages,
    render_startup, render_streaming,
)

console = Console()
_log = get_logger(__name__)

_ATTACHMENT_RE = re.compile(r"(?:^|\s)@(\S+)")


def split_attachments(text: str, cwd: str) -> tuple:
    """Pull ``@path`` references to existing files out of ``text``."""
    attachments = []
    for match in _ATTACHMENT_RE.finditer(text):
        candidate = match.group(1)
        if (Path(cwd) / candidate).expanduser().exists():
            attachments.append(candidate)
    if not attachments:
        return text, ()
    stripped = _ATTACHMENT_RE.sub(
        lambda m: m.group(0) if m.group(1) not in attachments else "", text
    ).strip()
    return stripped, tuple(attachments)


def _build(config: Config, directory: str):
    refresher = TokenRefresher(config)
    client = ChatClient(config, refresher=refresher)
    tools = ToolRegistry(directory, config.blocked_commands, config.command_timeout)
    store = SessionStore()
    conversation = Conversation(client, tools, store=store, config=config, directory=directory)
    return client, tools, store, conversation


def drive_turn(conversation: Conversation, shown: int) -> None:
    """Render the running turn until it settles, asking about tool calls as they arrive.

    ``shown`` is how many log messages are already on screen.
    """
    while True:
        try:
            with Live(console=console, transient=True, refresh_per_second=8) as live:
                while not conversation.wait(timeout=0.1):
                    live.update(render_streaming(conversation))
        except KeyboardInterrupt:
            conversation.cancel_turn()
            console.print("\n[yellow]  Interrupted.[/yellow]")
            print_new_messages(console, conversation, shown)
            return
        shown = print_new_messages(console, conversation, shown)

        call = conversation.pending_tool_call
        if call is None:
            return
        conversation.confirm_pending(confirm_tool_call(console, call))


def send_message(conversation: Conversation, text: str, attachments: tuple = ()) -> None:
    # the prompt line already shows what the user typed
    shown = len(conversation.messages) + 1
    try:
        conversation.submit_user_message(text, attachments)
        drive_turn(conversation, shown)
    except KeyboardInterrupt:
        conversation.cancel_turn()
        console.print("\n[yellow]  Interrupted.[/yellow]")
    except Exception as error:
        conversation.cancel_turn()
        _log.info("Turn aborted", exc_info=True)
        console.print(f"\n[red]  Error: {escape(str(error))}[/red]")


@click.group(invoke_without_command=True)
@click.pass_context
def cli(ctx):
    """cli-code: AI coding assistant for your terminal."""
    if ctx.invoked_subcommand is None:
        ctx.invoke(run)


@cli.command()
@click.option("--directory", "-d", default=".", help="Working directory for tools")
@click.option("--session", "-s", "session_id", default=None, help="Resume a saved session")
@click.option("--auto-accept", "-y", is_flag=True, help="Run tool calls without asking")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
def run(directory, session_id, auto_accept, verbose):
    """Start an interactive session."""
    console.print(build_banner(__version__))
    os.environ.setdefault("PROMPT_TOOLKIT_NO_CPR", "1")
    config = Config.load()
    setup_logger(verbose=verbose or config.verbose)

    directory = str(Path(directory).resolve())
    if not Path(directory).is_dir():
        console.print(f"[red]Error: '{escape(directory)}' is not a valid directory.[/red]")
        raise SystemExit(1)
    if auto_accept:
        config.accept_all_tool_calls = True

    client, tools, store, conversation = _build(config, directory)
    if session_id and not conversation.load_session(session_id):
        console.print(f"  [yellow]Session not found: {escape(session_id)}[/yellow]")

    render_startup(console, config, directory)
    if not config.is_logged_in:
        console.print("  [yellow]Not logged in. Run `cli-code login <refresh-token>` first.[/yellow]")

    from .command_router import handle_command
    from .ui import PTK_STYLE, SlashCommandCompleter, make_prompt_html

    from prompt_toolkit import PromptSession
    from prompt_toolkit.history import FileHistory
    from prompt_toolkit.key_binding import KeyBindings

    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    session = PromptSession(
        history=FileHistory(str(HISTORY_FILE)),
        multiline=False,
        completer=SlashCommandCompleter(),
        complete_while_typing=True,
        style=PTK_STYLE,
    )

    repl_kb = KeyBindings()

    @repl_kb.add("escape", "enter")
    def _newline(event):
        event.current_buffer.insert_text("\n")

    pending_ctrl_d_exit = False
    try:
        while True:
            try:
                user_input = session.prompt(make_prompt_html(), key_bindings=repl_kb).strip()
                pending_ctrl_d_exit = False
            except EOFError:
                if pending_ctrl_d_exit:
                    console.print("\n[dim]Goodbye![/dim]")
                    break
                pending_ctrl_d_exit = True
                console.print("\n[dim]Press Ctrl-D again to exit.[/dim]")
                continue
            except KeyboardInterrupt:
                console.print("\n[dim]Goodbye![/dim]")
                break

            if not user_input:
                continue

            if user_input.startswith("/"):
                result = handle_command(
                    user_input,
                    console=console,
                    conversation=conversation,
                    config=config,
                    client=client,
                    store=store,
                )
                if result == "quit":
                    break
                continue

            text, attachments = split_attachments(user_input, directory)
            send_message(conversation, text, attachments)
    finally:
        conversation.close()
        tools.shutdown()


@cli.command()
@click.argument("refresh_token")
def login(refresh_token):
    """Store credentials from a refresh token."""
    config = Config.load()
    setup_logger(verbose=config.verbose)
    if TokenRefresher(config).login(refresh_token):
        client = ChatClient(config)
        user = client.get_user()
        if user:
            config.update(user=user)
        console.print("[green]✓ Logged in[/green]")
    else:
        console.print("[red]Login failed. Check the token and try again.[/red]")
        raise SystemExit(1)


@cli.command()
def logout():
    """Forget stored credentials."""
    config = Config.load()
    if TokenRefresher(config).logout():
        console.print("[green]✓ Logged out[/green]")
    else:
        console.print("[red]Logout failed.[/red]")
        raise SystemExit(1)


@cli.command("sessions")
@click.option("--delete", "delete_id", default=None, help="Delete a session by id")
@click.option("--export", "export_id", default=None, help="Export a session to Markdown")
def sessions_cmd(delete_id, export_id):
    """List saved sessions."""
    store = SessionStore()
    if delete_id:
        ok = store.delete(delete_id)
        console.print("[green]✓ Deleted[/green]" if ok else f"[yellow]Not found: {delete_id}[/yellow]")
        return
    if export_id:
        path = store.export_markdown(export_id)
        console.print(f"[green]✓ {path}[/green]" if path else f"[yellow]Not found: {export_id}[/yellow]")
        return

    sessions = store.list()
    if not sessions:
        console.print(f"[{DIM}]No saved sessions[/{DIM}]")
        return
    table = Table(border_style=BORDER)
    table.add_column("Session", style="bold")
    table.add_column("Messages", justify="right")
    table.add_column("Directory", style=DIM)
    for s in sessions:
        table.add_row(s.date, str(len(s.messages)), s.directory)
    console.print(table)


@cli.command("config")
def config_cmd():
    """Show configuration."""
    from .command_router import show_config_panel

    show_config_panel(console, Config.load())


if __name__ == "__main__":
    cli()
