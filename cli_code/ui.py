"""Terminal rendering: messages, streaming state, tool prompts and the slash palette."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Sequence

from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.styles import Style
from rich.console import Console, Group
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.spinner import Spinner
from rich.text import Text

from .conversation import Conversation, ToolDecision
from .models import FunctionCall, Message, ToolCallStatus

ACCENT = "#7FA6D9"
PROMPT = "#B7C6D8"
BORDER = "#30363D"
DIM = "#6E7681"
SUCCESS = "#57DB9C"
WARN = "#E3B341"
ERROR = "#F85149"
INFO = "#7AA7E8"

PTK_STYLE = Style.from_dict({
    "completion-menu": "bg:default",
    "completion-menu.completion": "bg:default #C8D8EE",
    "completion-menu.completion.current": "bg:#1E2834 #E7EEF8",
    "completion-menu.command": "#57DB9C",
    "completion-menu.args": "#9BB0C9",
    "completion-menu.description": "#7AA7E8",
})


@dataclass(frozen=True)
class SlashCommandSpec:
    command: str
    usage: str
    description: str


SLASH_COMMAND_SPECS: tuple[SlashCommandSpec, ...] = (
    SlashCommandSpec("/help", "/help", "Show help"),
    SlashCommandSpec("/new", "/new", "Start a new session"),
    SlashCommandSpec("/sessions", "/sessions [id|delete id|export id]", "Browse and load sessions"),
    SlashCommandSpec("/model", "/model [name]", "Switch model"),
    SlashCommandSpec("/mode", "/mode [lite|full]", "Change usage mode"),
    SlashCommandSpec("/settings", "/settings [key value]", "Show or edit configuration"),
    SlashCommandSpec("/api", "/api [view|add|remove]", "Manage API keys"),
    SlashCommandSpec("/tools", "/tools [toggle-autoaccept]", "Tool call settings"),
    SlashCommandSpec("/exit", "/exit", "Exit"),
)

SLASH_COMMANDS = [spec.command for spec in SLASH_COMMAND_SPECS]

STATUS_ICONS = {"pending": "…", "success": "✓", "error": "✗"}
STATUS_COLORS = {"pending": WARN, "success": SUCCESS, "error": ERROR}


def build_banner(version: str) -> str:
    return (
        f"[bold {ACCENT}]cli-code[/bold {ACCENT}] "
        f"[dim]v{version} · AI coding assistant[/dim]"
    )


def build_help_text() -> str:
    usage_width = max(len(spec.usage) for spec in SLASH_COMMAND_SPECS)
    lines = ["", f"[bold {ACCENT}]Commands:[/bold {ACCENT}]"]
    for spec in SLASH_COMMAND_SPECS:
        lines.append(f"  {spec.usage:<{usage_width}}  {spec.description}")
    lines.extend([
        "",
        f"[bold {ACCENT}]Tips:[/bold {ACCENT}]",
        "  @path          Attach a file to your message",
        "  Ctrl-C         Cancel the running turn",
        "  Ctrl-D ×2      Exit safely",
    ])
    return "\n".join(lines)


def render_help(console: Console) -> None:
    console.print(build_help_text())


def make_prompt_html() -> HTML:
    return HTML(
        f'<style fg="{PROMPT}">cli-code</style>'
        f'<style fg="#66788A"> › </style>'
    )


def render_startup(console: Console, config, directory: str) -> None:
    model = config.selected_model
    model_text = f"[bold]{escape(model.model)}[/bold] [dim]({escape(model.provider)})[/dim]" if model else "[red](none)[/red]"
    login = "[green]✓[/green]" if config.is_logged_in else "[red]✗ run `cli-code login`[/red]"
    accept = "[green]ON[/green]" if config.accept_all_tool_calls else "[dim]OFF[/dim]"
    console.print(
        f"[dim]model[/dim] {model_text}"
        f" [dim]• plan[/dim] {config.plan.mode}"
        f" [dim]• auto-accept[/dim] {accept}"
        f" [dim]• login[/dim] {login}"
    )
    console.print(f"[dim]directory[/dim] {escape(directory)}")
    console.print("[dim]/help · /model · /sessions · Ctrl+C to cancel[/dim]")
    console.print()


class SlashCommandCompleter(Completer):
    """Prefix match over the slash commands."""

    def __init__(self, specs: Sequence[SlashCommandSpec] = SLASH_COMMAND_SPECS):
        self.specs = list(specs)
        self.usage_width = max(len(spec.usage) for spec in self.specs)

    def _display(self, spec: SlashCommandSpec):
        args = spec.usage[len(spec.command):]
        gap = " " * max(2, self.usage_width - len(spec.usage) + 1)
        return [
            ("class:completion-menu.command", spec.command),
            ("class:completion-menu.args", args),
            ("", gap),
            ("class:completion-menu.description", spec.description),
        ]

    def get_completions(self, document, complete_event):
        text = document.text_before_cursor.lstrip()
        if not text.startswith("/") or " " in text:
            return
        for spec in self.specs:
            if spec.command.startswith(text.lower()):
                yield Completion(
                    text=spec.command,
                    start_position=-len(text),
                    display=self._display(spec),
                )


# ── Messages ──


def _short(text: str, limit: int) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 1] + "…"


def describe_call(call: FunctionCall) -> str:
    args = json.dumps(call.args, ensure_ascii=False)
    return f"{call.name}({_short(args, 80)})"


def render_message(console: Console, message: Message) -> None:
    if message.ignore_in_display:
        return
    if message.is_error or message.role == "system":
        color = ERROR if message.is_error else DIM
        console.print(f"  [{color}]{escape(message.content)}[/{color}]")
        return
    if message.role == "user":
        console.print(f"[bold {PROMPT}]›[/bold {PROMPT}] {escape(message.content)}")
        return

    if message.content.strip():
        console.print(Panel(Markdown(message.content), border_style=BORDER, padding=(0, 1)))
    if message.metadata:
        for call in message.metadata.tool_calls:
            console.print(f"  [{INFO}]⚙ {escape(describe_call(call))}[/{INFO}]")


def print_new_messages(console: Console, conversation: Conversation, shown: int) -> int:
    messages = conversation.messages
    for message in messages[shown:]:
        render_message(console, message)
    return len(messages)


def render_streaming(conversation: Conversation):
    parts = []
    if conversation.thinking:
        parts.append(Text(_short(conversation.thinking, 240), style=f"italic {DIM}"))
    if conversation.content:
        parts.append(Markdown(conversation.content))
    call = conversation.current_tool_call
    if call is not None:
        parts.append(Text(f"⚙ {describe_call(call)}", style=INFO))
    parts.append(Spinner("dots", text=Text("working…", style=DIM)))
    return Group(*parts)


def render_tool_status(console: Console, entries: Sequence[ToolCallStatus]) -> None:
    if not entries:
        console.print(f"  [{DIM}]No tool calls yet[/{DIM}]")
        return
    for entry in entries:
        color = STATUS_COLORS.get(entry.status, DIM)
        icon = STATUS_ICONS.get(entry.status, "?")
        line = f"  [{color}]{icon}[/{color}] {escape(entry.name)} [{DIM}]{escape(entry.id)}[/{DIM}]"
        if entry.error_message:
            line += f" [{ERROR}]{escape(_short(entry.error_message, 80))}[/{ERROR}]"
        console.print(line)


def confirm_tool_call(console: Console, call: FunctionCall) -> ToolDecision:
    console.print(f"  [{INFO}]⚙ {escape(describe_call(call))}[/{INFO}]")
    try:
        ans = console.input(
            f"  [{WARN}]?[/{WARN}] "
            "[bold](y)[/bold][dim]es[/dim] / "
            "[bold](n)[/bold][dim]o[/dim] / "
            "[bold](a)[/bold][dim]lways[/dim]: "
        ).strip().lower()
    except (KeyboardInterrupt, EOFError):
        return ToolDecision.REJECT
    if ans in ("a", "always"):
        return ToolDecision.ACCEPT_ALL
    if ans in ("y", "yes", ""):
        return ToolDecision.ACCEPT
    return ToolDecision.REJECT
