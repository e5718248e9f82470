"""Terminal output using Rich.

Conversation entries go to stdout; diagnostics (info, warnings, errors) go
to stderr. Call :func:`init` once at startup, before any output.
"""

import json
import logging

from rich.console import Console, Group, RenderableType
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.text import Text

from .messages import (
    CONFIRMED,
    DECLINED,
    FAILED,
    PENDING,
    PENDING_CONFIRMATION,
    SUCCESS,
    AIMessage,
    ErrorMessage,
    HumanMessage,
    Message,
    SystemMessage,
    ToolProgressMessage,
)

_console = Console(stderr=True)
_out = Console()

MAX_ARGS_PREVIEW = 200
MAX_RESULT_PREVIEW_LINES = 6

_STATUS_STYLE = {
    PENDING: ("▶", "magenta", ""),
    PENDING_CONFIRMATION: ("?", "bold yellow", "waiting for confirmation"),
    CONFIRMED: ("▶", "magenta", "running"),
    DECLINED: ("✗", "yellow", "declined"),
    SUCCESS: ("✓", "green", ""),
    FAILED: ("✗", "red", ""),
}


def init(*, color: bool = False, no_color: bool = False, debug: bool = False) -> None:
    """Reconfigure the module-level consoles and logging from CLI flags."""
    global _console, _out
    kwargs: dict = {}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(stderr=True, **kwargs)
    _out = Console(**kwargs)

    logger = logging.getLogger("coba")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    handler = RichHandler(console=_console, show_path=debug, rich_tracebacks=debug)
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if debug else logging.WARNING)
    logger.propagate = False


def out() -> Console:
    return _out


# -- Conversation entries ----------------------------------------------------


def _args_preview(args: dict) -> str:
    if not args:
        return ""
    text = json.dumps(args, ensure_ascii=False)
    if len(text) > MAX_ARGS_PREVIEW:
        text = text[:MAX_ARGS_PREVIEW] + "…"
    return text


def _result_preview(content: str) -> str:
    lines = content.strip().splitlines()
    preview = "\n".join(lines[:MAX_RESULT_PREVIEW_LINES])
    if len(lines) > MAX_RESULT_PREVIEW_LINES:
        preview += f"\n… ({len(lines) - MAX_RESULT_PREVIEW_LINES} more lines)"
    return preview


def render_human(msg: HumanMessage) -> RenderableType:
    line = Text()
    line.append("> ", style="bold cyan")
    line.append(msg.text, style="cyan")
    return line


def render_ai(msg: AIMessage) -> RenderableType | None:
    if not msg.text.strip():
        return None
    return Markdown(msg.text)


def render_tool_progress(msg: ToolProgressMessage) -> RenderableType:
    icon, style, label = _STATUS_STYLE.get(msg.status, ("?", "white", msg.status))
    header = Text()
    header.append(f"  {icon} ", style=style)
    header.append(msg.tool_call.name or "(tool)", style=f"bold {style}")
    args = _args_preview(msg.tool_call.args)
    if args:
        header.append(f" {args}", style="dim")
    if label:
        header.append(f"  [{label}]", style=style)
    if not msg.content:
        return header
    body = Text(
        "\n".join(f"    {line}" for line in _result_preview(msg.content).splitlines()),
        style="red" if msg.status == FAILED else "dim",
    )
    return Group(header, body)


def render_error(msg: ErrorMessage) -> RenderableType:
    line = Text()
    line.append("  ✗ ", style="bold red")
    line.append(msg.content, style="red")
    return line


def render(msg: Message) -> RenderableType | None:
    """Renderable for one timeline entry, or None for entries not shown."""
    if isinstance(msg, HumanMessage):
        return render_human(msg)
    if isinstance(msg, AIMessage):
        return render_ai(msg)
    if isinstance(msg, ToolProgressMessage):
        return render_tool_progress(msg)
    if isinstance(msg, ErrorMessage):
        return render_error(msg)
    if isinstance(msg, SystemMessage):
        return None
    # Tool results are shown through their progress entry.
    return None


def entry(msg: Message) -> None:
    renderable = render(msg)
    if renderable is not None:
        _out.print(renderable)


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner(work_dir: str, tool_mode: str, model: str) -> None:
    _console.print(
        Text(
            f"coba in {work_dir} ({tool_mode}, {model}). "
            "Type /help for commands, /exit or Ctrl-D to quit.",
            style="dim",
        )
    )
