"""Terminal front-end for a single agent session.

Usage:
    tether                                 # interactive REPL
    tether "Explain the build system"      # one-shot
    tether --provider codex --cwd ~/src/app
    tether --config tether.yaml -v

Inside the REPL, lines starting with "/" are commands (see /help).
Ctrl-C while a query is running stops it.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from .config import TetherConfig
from .errors import (
    ProviderCrashError,
    QueryCancelledError,
    SessionPersistenceError,
    TetherError,
)
from .models import ModelTier, StatusKind, TimeoutResponse
from .orchestrator import QueryContext
from .session import AgentSession
from .thinking import DEEP_BUDGET, NORMAL_BUDGET, thinking_label
from .yaml_config import load_yaml_config
from tether.shared.formatters.user_errors import format_user_error

logger = logging.getLogger(__name__)

HELP_TEXT = """\
/new                 start a fresh session
/stop                stop the running query (or press Ctrl-C)
/undo                revert file changes of the last turn
/model [tier]        show or set model (fast, capable, cheap)
/plan                toggle plan mode
/think [level]       force thinking for the next message (off, normal, deep, N)
/resume              resume the last saved session for this directory
/cd <path>           change working directory
/usage               token usage totals
/cost                estimated cost so far
/retry               resend the last message
/provider [id]       show or switch provider (claude, codex)
/quit                exit"""


class TerminalFrontend:
    """REPL that renders status callbacks with rich."""

    def __init__(self, session: AgentSession, console: Console | None = None) -> None:
        self.session = session
        self.console = console or Console()

    async def on_status(self, kind: str, text: str, segment_id: int | None = None) -> None:
        if kind == StatusKind.THINKING.value:
            self.console.print(f"[dim italic]💭 {text.strip()[:200]}[/]")
        elif kind == StatusKind.TOOL.value:
            self.console.print(f"[cyan]{text}[/]")
        elif kind == StatusKind.SEGMENT_END.value:
            self.console.print(Markdown(text))
        elif kind == StatusKind.TIMEOUT_CHECK.value:
            self.console.print(f"[yellow]{text}[/] [dim](Ctrl-C to stop)[/]")
            self.session.set_timeout_response(TimeoutResponse.CONTINUE)

    async def send(self, message: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self.session.stop)
        except (NotImplementedError, RuntimeError):
            logger.debug("SIGINT handler unavailable; Ctrl-C will not stop queries")

        cleanup = self.session.start_processing()
        try:
            for attempt in range(2):
                try:
                    with self.console.status("[bold green]Working..."):
                        await self.session.send_message(
                            message, QueryContext(self.on_status)
                        )
                    return
                except ProviderCrashError as exc:
                    if attempt == 0:
                        self.console.print(
                            f"[yellow]Agent crashed ({exc}); retrying once...[/]"
                        )
                        continue
                    self.console.print(f"[red]{format_user_error(exc)}[/]")
                except QueryCancelledError as exc:
                    if not exc.interrupted:
                        self.console.print("[yellow]🛑 Stopped.[/]")
                    return
                except TetherError as exc:
                    self.console.print(f"[red]{format_user_error(exc)}[/]")
                    return
        finally:
            cleanup()
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError):
                pass

    async def handle_command(self, line: str) -> bool:
        """Run a slash command. Returns False when the REPL should exit."""
        command, _, arg = line[1:].partition(" ")
        command = command.lower()
        arg = arg.strip()
        session = self.session
        print_ = self.console.print

        if command in ("quit", "exit"):
            return False
        if command == "help":
            print_(HELP_TEXT)
        elif command == "new":
            session.kill()
            print_("🆕 Session cleared. Next message starts fresh.")
        elif command == "stop":
            print_("Nothing running." if session.stop() is None else "🛑 Stopping...")
        elif command == "undo":
            try:
                print_(await session.undo())
            except TetherError as exc:
                print_(f"[red]{exc}[/]")
        elif command == "model":
            if arg:
                try:
                    session.set_model(arg)
                except ValueError as exc:
                    print_(f"[red]{exc}[/]")
                    return True
            print_(
                f"Model: {session.model.value} "
                f"({session.provider.resolve_model(session.model)})"
            )
        elif command == "plan":
            session.plan_mode = not session.plan_mode
            print_(f"Plan mode {'on' if session.plan_mode else 'off'}")
        elif command == "think":
            tokens = self._parse_thinking(arg or "normal")
            if tokens is None:
                print_("[red]Usage: /think [off|normal|deep|N][/]")
            else:
                session.force_thinking_tokens = tokens
                print_(f"Thinking for next message: {thinking_label(tokens)}")
        elif command == "resume":
            try:
                snapshot = session.resume_last()
            except SessionPersistenceError as exc:
                print_(f"[red]{exc}[/]")
            else:
                print_(f"Resumed session {snapshot.session_id[:8]}...")
        elif command == "cd":
            if not arg:
                print_(f"Working directory: {session.working_dir}")
            else:
                session.set_working_dir(arg)
                print_(f"📁 Working directory: {arg}")
        elif command == "usage":
            self._print_usage()
        elif command == "cost":
            cost = session.estimate_cost()
            print_(
                f"💰 ${cost.total:.4f} "
                f"(input ${cost.input_cost:.4f}, output ${cost.output_cost:.4f})"
            )
        elif command == "retry":
            if not session.last_user_message:
                print_("Nothing to retry.")
            else:
                await self.send(session.last_user_message)
        elif command == "provider":
            if arg:
                try:
                    _, message = session.set_provider(arg)
                except TetherError as exc:
                    message = str(exc)
                print_(message)
            else:
                print_(f"Provider: {session.provider_id}")
        else:
            print_(f"Unknown command: /{command}. Try /help")
        return True

    @staticmethod
    def _parse_thinking(arg: str) -> int | None:
        named = {"off": 0, "normal": NORMAL_BUDGET, "deep": DEEP_BUDGET}
        if arg.lower() in named:
            return named[arg.lower()]
        try:
            return max(int(arg), 0)
        except ValueError:
            return None

    def _print_usage(self) -> None:
        usage = self.session.usage
        table = Table(title="Token usage", show_header=False)
        table.add_row("Input", f"{usage.input_tokens:,}")
        table.add_row("Output", f"{usage.output_tokens:,}")
        table.add_row("Cache read", f"{usage.cache_read_tokens:,}")
        self.console.print(table)

    async def repl(self) -> None:
        self.console.print(
            f"[bold]tether[/] · {self.session.provider_id} · "
            f"{self.session.working_dir}  [dim](/help for commands)[/]"
        )
        while True:
            try:
                line = await asyncio.to_thread(self.console.input, "[bold blue]› [/]")
            except (EOFError, KeyboardInterrupt):
                break
            line = line.strip()
            if not line:
                continue
            if line.startswith("/"):
                if not await self.handle_command(line):
                    break
                continue
            await self.send(line)
        self.session.flush()


def build_config(args: argparse.Namespace) -> TetherConfig:
    config = TetherConfig.from_env()
    if args.config:
        config = load_yaml_config(args.config, base=config)
    if args.provider:
        config.provider = args.provider
    if args.cwd:
        config.working_dir = args.cwd
    if args.verbose:
        config.log_level = "DEBUG"
    return config


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="tether",
        description="Chat with a coding agent from the terminal",
    )
    parser.add_argument(
        "prompt",
        nargs="?",
        default=None,
        help="Send one message and exit (default: interactive)",
    )
    parser.add_argument(
        "--provider",
        default=None,
        help="Agent backend: claude or codex (default: from config)",
    )
    parser.add_argument(
        "--model",
        default=None,
        help="Model tier: fast, capable or cheap",
    )
    parser.add_argument(
        "--cwd",
        default=None,
        help="Working directory for the agent (default: current dir)",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file layered over TETHER_* env vars",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()

    config = build_config(args)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        session = AgentSession(config)
        if args.model:
            session.set_model(ModelTier.parse(args.model))
    except (TetherError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)

    frontend = TerminalFrontend(session)
    try:
        if args.prompt:
            asyncio.run(frontend.send(args.prompt))
            session.flush()
        else:
            asyncio.run(frontend.repl())
    except KeyboardInterrupt:
        session.flush()
        print("\nInterrupted.")
        sys.exit(1)


if __name__ == "__main__":
    main()
