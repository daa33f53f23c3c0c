"""Slash-command routing and handlers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from .chat import ChatClient
from .config import CONFIG_FIELDS, PLAN_MODES, Config, ModelSelection
from .conversation import Conversation
from .models import PROVIDERS
from .sessions import SessionStore
from .ui import (
    ACCENT, BORDER, DIM, SLASH_COMMANDS, SUCCESS, WARN,
    print_new_messages, render_help, render_tool_status,
)

_SLASH_ALIASES = {"/h": "/help", "/?": "/help", "/quit": "/exit", "/q": "/exit"}


@dataclass
class CommandContext:
    console: Console
    conversation: Conversation
    config: Config
    client: ChatClient
    store: SessionStore


CommandHandler = Callable[[CommandContext, list[str]], str]


def _resolve_command(raw_cmd: str) -> str:
    """Resolve abbreviated slash commands via exact/alias/prefix matching."""
    cmd = raw_cmd.lower()
    if cmd in SLASH_COMMANDS:
        return cmd
    if cmd in _SLASH_ALIASES:
        return _SLASH_ALIASES[cmd]
    matches = [candidate for candidate in SLASH_COMMANDS if candidate.startswith(cmd)]
    if len(matches) == 1:
        return matches[0]
    return cmd


def handle_command(
    command: str,
    *,
    console: Console,
    conversation: Conversation,
    config: Config,
    client: ChatClient,
    store: SessionStore,
) -> str:
    """Handle one slash command string. Returns ``"quit"`` to leave the REPL."""
    parts = command.split()
    if not parts:
        return ""

    cmd = _resolve_command(parts[0])
    args = parts[1:]
    ctx = CommandContext(console=console, conversation=conversation, config=config,
                         client=client, store=store)
    handler = COMMAND_HANDLERS.get(cmd)
    if not handler:
        console.print(f"  [{WARN}]Unknown: {escape(cmd)}. Try /help[/{WARN}]")
        return ""
    return handler(ctx, args)


def show_config_panel(console: Console, config: Config) -> None:
    table = Table(show_header=False, border_style=BORDER, padding=(0, 2), box=None)
    table.add_column("Key", style=f"bold {ACCENT}", min_width=14)
    table.add_column("Value")
    for key, value in config.summary().items():
        table.add_row(key, escape(str(value)))
    console.print(Panel(table, title=f"[bold {ACCENT}] Configuration [/bold {ACCENT}]",
                        title_align="left", border_style=BORDER, padding=(0, 1)))


def _mask(key: str) -> str:
    if len(key) <= 8:
        return "*" * len(key)
    return f"{key[:4]}…{key[-4:]}"


def _cmd_exit(ctx: CommandContext, args: list[str]) -> str:
    ctx.console.print(f"[{DIM}]Goodbye![/{DIM}]")
    return "quit"


def _cmd_help(ctx: CommandContext, args: list[str]) -> str:
    render_help(ctx.console)
    return ""


def _cmd_new(ctx: CommandContext, args: list[str]) -> str:
    ctx.conversation.reset()
    session_id = ctx.conversation.start_new_session()
    ctx.console.print(f"  [{SUCCESS}]✓[/{SUCCESS}] New session [bold]{session_id}[/bold]")
    return ""


def _show_sessions(ctx: CommandContext) -> None:
    sessions = ctx.store.list()
    if not sessions:
        ctx.console.print(f"  [{DIM}]No saved sessions[/{DIM}]")
        return
    table = Table(border_style=BORDER)
    table.add_column("", width=2)
    table.add_column("Session", style=f"bold {ACCENT}")
    table.add_column("Messages", justify="right")
    table.add_column("Directory", style=DIM)
    for session in sessions[:20]:
        marker = f"[{SUCCESS}]●[/{SUCCESS}]" if session.date == ctx.conversation.session_id else " "
        table.add_row(marker, escape(session.date), str(len(session.messages)), escape(session.directory))
    ctx.console.print(Panel(table, title=f"[bold {ACCENT}] Sessions [/bold {ACCENT}]",
                            title_align="left", border_style=BORDER))
    ctx.console.print(f"  [{DIM}]Use /sessions <id> to load[/{DIM}]")


def _cmd_sessions(ctx: CommandContext, args: list[str]) -> str:
    if not args or args[0] == "list":
        _show_sessions(ctx)
        return ""

    sub = args[0].lower()
    if sub == "delete" and len(args) >= 2:
        if ctx.store.delete(args[1]):
            ctx.console.print(f"  [{SUCCESS}]✓ Deleted {escape(args[1])}[/{SUCCESS}]")
        else:
            ctx.console.print(f"  [{WARN}]Session not found: {escape(args[1])}[/{WARN}]")
        return ""
    if sub == "export" and len(args) >= 2:
        path = ctx.store.export_markdown(args[1], args[2] if len(args) > 2 else None)
        if path:
            ctx.console.print(f"  [{SUCCESS}]✓ Exported to {escape(str(path))}[/{SUCCESS}]")
        else:
            ctx.console.print(f"  [{WARN}]Session not found: {escape(args[1])}[/{WARN}]")
        return ""

    if ctx.conversation.load_session(args[0]):
        ctx.console.print(f"  [{SUCCESS}]✓ Loaded {escape(args[0])} "
                          f"({len(ctx.conversation.messages)} messages)[/{SUCCESS}]")
        print_new_messages(ctx.console, ctx.conversation, 0)
    else:
        ctx.console.print(f"  [{WARN}]Session not found: {escape(args[0])}[/{WARN}]")
    return ""


def _find_model(models: list[dict], name: str) -> Optional[ModelSelection]:
    for entry in models:
        if name in (entry.get("model"), entry.get("name")):
            return ModelSelection.from_dict(entry)
    if "/" in name:
        provider, model = name.split("/", 1)
        return ModelSelection(provider=provider, model=model)
    return None


def _cmd_model(ctx: CommandContext, args: list[str]) -> str:
    models = ctx.client.get_models()
    current = ctx.config.selected_model

    if not args:
        if not models:
            ctx.console.print(f"  [{WARN}]No models available from the server[/{WARN}]")
            return ""
        table = Table(border_style=BORDER)
        table.add_column("", width=2)
        table.add_column("Model", style=f"bold {ACCENT}")
        table.add_column("Provider", style=DIM)
        for entry in models:
            active = current is not None and entry.get("model") == current.model
            marker = f"[{SUCCESS}]●[/{SUCCESS}]" if active else " "
            table.add_row(marker, escape(str(entry.get("model"))), escape(str(entry.get("provider", ""))))
        ctx.console.print(Panel(table, title=f"[bold {ACCENT}] Models [/bold {ACCENT}]",
                                title_align="left", border_style=BORDER))
        ctx.console.print(f"  [{DIM}]Use /model <name> or /model <provider>/<model>[/{DIM}]")
        return ""

    selection = _find_model(models, args[0])
    if selection is None:
        ctx.console.print(f"  [{WARN}]Unknown: '{escape(args[0])}'. Use /model to browse.[/{WARN}]")
        return ""
    ctx.config.update(selected_model=selection)
    ctx.console.print(f"  [{SUCCESS}]✓[/{SUCCESS}] Switched → [bold]{escape(selection.model)}[/bold] "
                      f"[{DIM}]({escape(selection.provider)})[/{DIM}]")
    return ""


def _cmd_mode(ctx: CommandContext, args: list[str]) -> str:
    if not args:
        ctx.console.print(f"  [{ACCENT}]●[/{ACCENT}] {ctx.config.plan.mode}  "
                          f"[{DIM}]({' | '.join(sorted(PLAN_MODES))})[/{DIM}]")
        return ""
    mode = args[0].strip().lower()
    if mode not in PLAN_MODES:
        ctx.console.print(f"  [{WARN}]Unknown mode: {escape(args[0])} (use: lite | full)[/{WARN}]")
        return ""
    ctx.config.plan.mode = mode
    ctx.config.update(plan=ctx.config.plan)
    ctx.console.print(f"  [{SUCCESS}]✓[/{SUCCESS}] Mode → {mode}")
    return ""


def _cmd_settings(ctx: CommandContext, args: list[str]) -> str:
    if not args:
        show_config_panel(ctx.console, ctx.config)
        table = Table(show_header=False, box=None, padding=(0, 2))
        for key, spec in CONFIG_FIELDS.items():
            value = getattr(ctx.config, spec.field_name)
            table.add_row(f"[{ACCENT}]{key}[/{ACCENT}]", escape(str(value)), f"[{DIM}]{spec.description}[/{DIM}]")
        ctx.console.print(table)
        ctx.console.print(f"  [{DIM}]Use /settings <key> <value> to change[/{DIM}]")
        return ""
    if len(args) < 2:
        ctx.console.print("  Usage: /settings <key> <value>")
        return ""

    ok, error = ctx.config.set_value(args[0], " ".join(args[1:]))
    if ok:
        ctx.console.print(f"  [{SUCCESS}]✓ {escape(args[0])} updated[/{SUCCESS}]")
    else:
        ctx.console.print(f"  [{WARN}]{escape(error)}[/{WARN}]")
    return ""


def _cmd_api(ctx: CommandContext, args: list[str]) -> str:
    action = args[0].lower() if args else "view"
    if action == "view":
        if not ctx.config.api_keys:
            ctx.console.print(f"  [{DIM}]No API keys configured[/{DIM}]")
        for provider, key in sorted(ctx.config.api_keys.items()):
            ctx.console.print(f"  [{ACCENT}]{provider}[/{ACCENT}] {_mask(key)}")
        return ""

    if action == "add" and len(args) >= 3:
        provider = args[1].lower()
        if provider not in PROVIDERS:
            ctx.console.print(f"  [{WARN}]Unknown provider: {escape(provider)} ({', '.join(PROVIDERS)})[/{WARN}]")
            return ""
        ctx.config.set_api_key(provider, args[2])
        ctx.console.print(f"  [{SUCCESS}]✓ Saved {provider} key[/{SUCCESS}]")
        return ""

    if action == "remove" and len(args) >= 2:
        provider = args[1].lower()
        if provider not in ctx.config.api_keys:
            ctx.console.print(f"  [{WARN}]No key for {escape(provider)}[/{WARN}]")
            return ""
        ctx.config.set_api_key(provider, None)
        ctx.console.print(f"  [{SUCCESS}]✓ Removed {provider} key[/{SUCCESS}]")
        return ""

    ctx.console.print("  Usage: /api view | /api add <provider> <key> | /api remove <provider>")
    return ""


def _cmd_tools(ctx: CommandContext, args: list[str]) -> str:
    if args and args[0].lower() == "toggle-autoaccept":
        enabled = not ctx.config.accept_all_tool_calls
        ctx.config.update(accept_all_tool_calls=enabled)
        state = "ON" if enabled else "OFF"
        ctx.console.print(f"  [{SUCCESS}]✓[/{SUCCESS}] Auto-accept tool calls → {state}")
        return ""

    state = "ON" if ctx.config.accept_all_tool_calls else "OFF"
    ctx.console.print(f"  Auto-accept tool calls: [bold]{state}[/bold]")
    for name, description, writes in ctx.conversation.tools.describe():
        flag = f" [{WARN}](writes)[/{WARN}]" if writes else ""
        ctx.console.print(f"  [{ACCENT}]{name}[/{ACCENT}] [{DIM}]{description}[/{DIM}]{flag}")
    ctx.console.print()
    render_tool_status(ctx.console, ctx.conversation.history.entries())
    return ""


COMMAND_HANDLERS: dict[str, CommandHandler] = {
    "/help": _cmd_help,
    "/new": _cmd_new,
    "/sessions": _cmd_sessions,
    "/model": _cmd_model,
    "/mode": _cmd_mode,
    "/settings": _cmd_settings,
    "/api": _cmd_api,
    "/tools": _cmd_tools,
    "/exit": _cmd_exit,
}
