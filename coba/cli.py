"""Command-line entry point and interactive REPL."""

import argparse
import asyncio
import signal
import sys
import time
from importlib import metadata
from pathlib import Path

from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import FormattedText
from prompt_toolkit.history import FileHistory
from rich.console import Group
from rich.live import Live

from . import fmt
from .config import _UNSET, _ARGPARSE_DEFAULTS, apply_config_to_args, generate_config, load_config
from .errors import AgentError, ConfigError
from .messages import (
    CONFIRMED,
    DECLINED,
    AIMessage,
    HumanMessage,
    Message,
    ToolProgressMessage,
)
from .provider import PROVIDERS, ProviderClientCache, ProviderOptions
from .session import Session, SessionStore
from .tools import CONFIRM, READ_ONLY, YOLO, ToolRegistry, build_registry
from .work import open_batch, pending_confirmations, work

EXIT_INTERRUPTED = 130
DOUBLE_INTERRUPT_WINDOW = 2.0  # seconds
SESSION_LIST_LIMIT = 20


class DoubleInterrupt(Exception):
    """Ctrl-C pressed twice within DOUBLE_INTERRUPT_WINDOW."""


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="coba",
        description="Code Bandit: an interactive coding assistant for the terminal.",
    )
    parser.add_argument(
        "workdir",
        nargs="?",
        default=".",
        help="Project directory the assistant works in (default: current directory).",
    )
    parser.add_argument("--version", action="store_true", help="Print the version and exit.")
    parser.add_argument(
        "-p",
        "--provider",
        choices=sorted(PROVIDERS),
        help="LLM provider (default: ollama).",
    )
    parser.add_argument("-m", "--model", help="Model identifier (default: magistral:24b).")
    parser.add_argument("--api-url", help="Provider base URL.")
    parser.add_argument("--api-key", help="API key for the provider (overrides env var).")
    parser.add_argument(
        "--context-size",
        type=int,
        help="Token budget for the conversation history sent to the model.",
    )
    parser.add_argument(
        "--max-messages",
        type=int,
        help="Maximum number of history messages sent to the model.",
    )

    resume_group = parser.add_mutually_exclusive_group()
    resume_group.add_argument(
        "--continue-session",
        metavar="FILE",
        default=None,
        help="Resume the session stored in FILE (or with that id).",
    )
    resume_group.add_argument(
        "-c",
        "--continue",
        dest="continue_latest",
        action="store_true",
        help="Resume the most recent session for the working directory.",
    )

    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument(
        "-w",
        "--write-mode",
        action="store_true",
        help="Enable write tools; each destructive call asks for confirmation.",
    )
    mode_group.add_argument(
        "--yolo",
        action="store_true",
        help="Enable write tools without asking for confirmation.",
    )

    parser.add_argument(
        "--no-agent-rules",
        action="store_true",
        help="Don't load AGENTS.md, CLAUDE.md or .cursorrules into the system prompt.",
    )
    parser.add_argument("--debug", action="store_true", help="Log diagnostics to stderr.")

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color", action="store_true", help="Force ANSI color even when not a TTY."
    )
    color_group.add_argument(
        "--no-color", action="store_true", help="Disable ANSI color even on a TTY."
    )

    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented configuration template and exit.",
    )

    # Unset values are filled from config files, the environment, then defaults.
    parser.set_defaults(**{dest: _UNSET for dest in _ARGPARSE_DEFAULTS})
    return parser


def tool_mode_from_args(args) -> str:
    if args.yolo:
        return YOLO
    if args.write_mode:
        return CONFIRM
    return READ_ONLY


def options_from_args(args) -> ProviderOptions:
    return ProviderOptions(
        provider=args.provider,
        model=args.model,
        context_size=args.context_size,
        api_key=args.api_key,
        api_url=args.api_url,
        disable_agent_rules=bool(args.no_agent_rules),
        max_messages=args.max_messages,
    )


def resolve_work_dir(path: str) -> Path:
    work_dir = Path(path).expanduser().resolve()
    if not work_dir.is_dir():
        raise ConfigError(f"working directory does not exist: {path}")
    return work_dir


def open_session(args, work_dir: Path, store: SessionStore) -> Session:
    """Create a new session, or load the one requested on the command line."""
    if args.continue_session:
        session = store.load(args.continue_session)
    elif args.continue_latest:
        session = store.latest(str(work_dir))
        if session is None:
            fmt.warning(f"no saved session for {work_dir}, starting a new one")
    else:
        session = None

    if session is None:
        return Session(
            work_dir=str(work_dir),
            options=options_from_args(args),
            tool_mode=tool_mode_from_args(args),
            store=store,
        )
    if not Path(session.work_dir).is_dir():
        raise ConfigError(f"session working directory no longer exists: {session.work_dir}")
    fmt.info(f"resumed session {session.id} ({len(session.messages)} messages)")
    return session


# -- Rendering -----------------------------------------------------------------


class TimelineView:
    """Prints timeline entries as they settle; unsettled ones live in a redrawn tail."""

    def __init__(self, start: int = 0):
        self.base = start
        self._live: Live | None = None

    @staticmethod
    def _settled(messages: list[Message], idx: int) -> bool:
        msg = messages[idx]
        if isinstance(msg, ToolProgressMessage):
            return msg.resolved
        if isinstance(msg, AIMessage):
            return idx < len(messages) - 1
        return True

    def start(self) -> None:
        self._live = Live(console=fmt.out(), auto_refresh=False, transient=True)
        self._live.start()

    def update(self, messages: list[Message]) -> None:
        while self.base < len(messages) and self._settled(messages, self.base):
            renderable = fmt.render(messages[self.base])
            if renderable is not None:
                fmt.out().print(renderable)
            self.base += 1
        if self._live is not None:
            tail = [r for r in (fmt.render(m) for m in messages[self.base :]) if r is not None]
            self._live.update(Group(*tail), refresh=True)

    def stop(self, messages: list[Message]) -> None:
        self.update(messages)
        if self._live is not None:
            self._live.stop()
            self._live = None
        for msg in messages[self.base :]:
            fmt.entry(msg)


# -- REPL ------------------------------------------------------------------------


def _repl_help() -> None:
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /sessions          List saved sessions for this directory\n"
        "  /clear             Start a new, empty conversation\n"
        "  /exit, /quit       Exit the REPL"
    )


class Repl:
    def __init__(
        self,
        session: Session,
        *,
        cache: ProviderClientCache,
        registry: ToolRegistry,
        prompt_session: PromptSession | None = None,
    ):
        self.session = session
        self.cache = cache
        self.registry = registry
        self.prompt = prompt_session
        self._last_interrupt = 0.0

    def _interrupted(self) -> None:
        """Record a Ctrl-C; raise DoubleInterrupt if it follows another closely."""
        now = time.monotonic()
        if now - self._last_interrupt < DOUBLE_INTERRUPT_WINDOW:
            raise DoubleInterrupt()
        self._last_interrupt = now

    def _list_sessions(self) -> None:
        store = self.session.store
        summaries = store.list_sessions(self.session.work_dir, SESSION_LIST_LIMIT) if store else []
        if not summaries:
            fmt.info("no saved sessions for this directory")
            return
        lines = [
            f"{s.id}  {s.provider}/{s.model}  {s.message_count} messages  {s.preview}"
            for s in summaries
        ]
        fmt.info("\n  ".join(["Saved sessions (newest first):", *lines]))

    def _clear(self) -> None:
        self.session = Session(
            work_dir=self.session.work_dir,
            options=self.session.options,
            tool_mode=self.session.tool_mode,
            store=self.session.store,
        )
        fmt.info(f"new conversation started (session {self.session.id})")

    def handle_command(self, line: str) -> bool | None:
        """Handle a slash command. Returns False to exit, True if handled, None otherwise."""
        cmd = line.split(None, 1)[0].lower()
        if cmd in ("/exit", "/quit"):
            return False
        if cmd == "/help":
            _repl_help()
            return True
        if cmd == "/sessions":
            self._list_sessions()
            return True
        if cmd == "/clear":
            self._clear()
            return True
        return None

    async def _ask(self, text: str) -> str:
        return await self.prompt.prompt_async(FormattedText([("bold fg:ansiyellow", text)]))

    async def confirm_pending(self) -> None:
        """Ask the user about every tool call waiting for confirmation."""
        messages = list(self.session.messages)
        for idx in pending_confirmations(messages):
            entry: ToolProgressMessage = messages[idx]
            fmt.entry(entry)
            try:
                answer = await self._ask(f"Run {entry.tool_call.name}? [y/N] ")
            except KeyboardInterrupt:
                self._interrupted()
                answer = "n"
            except EOFError:
                answer = "n"
            status = CONFIRMED if answer.strip().lower() in ("y", "yes") else DECLINED
            messages[idx] = entry.advance(status)
        self.session.set_messages(messages, self.session.finished)

    async def run_turn(self) -> None:
        """Run the work loop until the turn completes, asking for confirmations as needed."""
        loop = asyncio.get_running_loop()
        while True:
            cancel = asyncio.Event()
            view = TimelineView(start=self.session.finished)
            task = asyncio.ensure_future(
                work(
                    self.session,
                    self.session.messages,
                    cache=self.cache,
                    registry=self.registry,
                    send=view.update,
                    cancel=cancel,
                    persist=self.session.set_messages,
                )
            )
            force_exit = False

            def on_sigint():
                nonlocal force_exit
                try:
                    self._interrupted()
                except DoubleInterrupt:
                    force_exit = True
                    task.cancel()
                    return
                cancel.set()
                fmt.warning("cancelling... press Ctrl-C again to exit")

            try:
                loop.add_signal_handler(signal.SIGINT, on_sigint)
                installed = True
            except (NotImplementedError, RuntimeError):
                installed = False
            view.start()
            try:
                result = await task
            except asyncio.CancelledError:
                view.stop(self.session.messages)
                if force_exit:
                    raise DoubleInterrupt() from None
                raise
            except BaseException:
                view.stop(self.session.messages)
                raise
            finally:
                if installed:
                    loop.remove_signal_handler(signal.SIGINT)

            view.stop(result.messages)
            self.session.set_messages(result.messages, result.finished)
            if not result.blocked:
                return
            await self.confirm_pending()

    async def run(self) -> None:
        fmt.repl_banner(self.session.work_dir, self.session.tool_mode, self.session.options.model)
        for msg in self.session.messages:
            fmt.entry(msg)
        # A session saved mid-turn resumes its open tool batch first.
        if self.session.blocked or open_batch(self.session.messages) is not None:
            await self.confirm_pending()
            await self.run_turn()

        prompt_text = FormattedText([("bold fg:ansigreen", "coba> ")])
        while True:
            try:
                print(file=sys.stderr)
                line = await self.prompt.prompt_async(prompt_text)
            except KeyboardInterrupt:
                self._interrupted()
                fmt.info("press Ctrl-C again to exit, or Ctrl-D")
                continue
            except EOFError:
                print(file=sys.stderr)
                break

            line = line.strip()
            if not line:
                continue
            if line.startswith("/"):
                handled = self.handle_command(line)
                if handled is False:
                    break
                if handled:
                    continue

            self.session.set_messages([*self.session.messages, HumanMessage(line)])
            await self.run_turn()


def _history_path(store: SessionStore) -> Path:
    path = store.root.parent / "repl_history"
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        try:
            version = metadata.version("coba")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config())
        sys.exit(0)

    fmt.init(color=args.color is True, no_color=args.no_color is True, debug=args.debug is True)

    try:
        work_dir = resolve_work_dir(args.workdir)
        apply_config_to_args(args, load_config(work_dir))
        fmt.init(color=args.color, no_color=args.no_color, debug=args.debug)

        store = SessionStore(args.sessions_dir)
        session = open_session(args, work_dir, store)
        cache = ProviderClientCache()
        cache.get_client(session.options)  # fail fast on provider misconfiguration

        repl = Repl(
            session,
            cache=cache,
            registry=build_registry(),
            prompt_session=PromptSession(
                history=FileHistory(str(_history_path(store))),
                enable_history_search=True,
            ),
        )
        asyncio.run(repl.run())
    except (AgentError, OSError) as e:
        fmt.error(str(e))
        sys.exit(1)
    except (DoubleInterrupt, KeyboardInterrupt):
        print(file=sys.stderr)
        sys.exit(EXIT_INTERRUPTED)


if __name__ == "__main__":
    main()
