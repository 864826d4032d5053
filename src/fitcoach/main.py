"""
main.py — FitCoach Entry Point

Usage:
    fitcoach                                # chat REPL, default settings
    fitcoach --session demo --user alice    # resume / name a session
    fitcoach --log-level DEBUG              # verbose logging
    fitcoach --config path/to/config.yaml
    python -m fitcoach

REPL commands:
    /reset     forget this session's state
    /context   show the context sent to the completion service
    /metrics   tool metrics and circuit states
    /quit      exit
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
import uuid
from typing import Optional

from dotenv import load_dotenv
from pydantic import ValidationError
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from fitcoach.brain.completion import CancelToken
from fitcoach.config.settings import ConfigError, Settings, load_settings
from fitcoach.kernel.bootstrap import AgentStack, build_stack
from fitcoach.memory.types import DialogueState
from fitcoach.observability.logger import get_logger, setup_logging

_HELP_TEXT = (
    "Ask for a workout, look up an exercise or tweak your plan.\n"
    "[dim]/reset · /context · /metrics · /quit[/]"
)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="fitcoach",
        description="FitCoach — conversational fitness coaching assistant",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $FITCOACH_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--session",
        default=None,
        help="Session id to resume (default: a new random id)",
    )
    parser.add_argument(
        "--user",
        default="local-user",
        help="User id for the session (default: local-user)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    return parser.parse_args(argv)


def bootstrap(args: argparse.Namespace) -> Settings:
    """
    Load config, validate it fully, and set up logging.

    Exits with code 1 (after printing a clear message) if config.yaml has
    invalid values or validate_all() finds cross-field problems.
    """
    load_dotenv()
    try:
        settings = load_settings(args.config)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {'.'.join(str(p) for p in e['loc']) or '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\n❌  Config validation failed:\n\n{problems}\n\n"
            f"    Fix config/config.yaml or your .env file and restart.\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except OSError as exc:
        print(f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n", file=sys.stderr)
        sys.exit(1)

    try:
        settings.validate_all()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    cfg = settings.logging
    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=cfg.json_format,
        console_output=cfg.console_output,
        max_bytes=cfg.max_file_size_mb * 1024 * 1024,
        backup_count=cfg.backup_count,
    )
    return settings


def _add_interrupt_handler(loop: asyncio.AbstractEventLoop, callback) -> bool:
    """Install callback for SIGINT on loop. False where the loop can't (Windows, non-main thread)."""
    try:
        loop.add_signal_handler(signal.SIGINT, callback)
    except (NotImplementedError, RuntimeError, ValueError):
        return False
    return True


# ─────────────────────────────────────────────────────────────────────────────
# REPL
# ─────────────────────────────────────────────────────────────────────────────


class ChatREPL:
    """Rich-powered chat loop over one session."""

    def __init__(self, stack: AgentStack, session_id: str, user_id: str, console: Optional[Console] = None) -> None:
        self._stack = stack
        self._session_id = session_id
        self._user_id = user_id
        self.console = console or Console()

    async def run(self) -> None:
        self.console.print(Panel(_HELP_TEXT, title="🏋️  FitCoach", subtitle=f"session {self._session_id}"))
        loop = asyncio.get_running_loop()
        while True:
            try:
                text = await loop.run_in_executor(None, self.console.input, "[bold cyan]you ›[/] ")
            except (EOFError, KeyboardInterrupt):
                self.console.print("\n[dim]Goodbye.[/]")
                return
            text = text.strip()
            if not text:
                continue
            if text.startswith("/"):
                if not await self._command(text):
                    return
                continue
            await self._turn(text)

    async def _turn(self, text: str) -> None:
        token = CancelToken()
        loop = asyncio.get_running_loop()
        # Under asyncio.run() Ctrl-C never reaches this frame as
        # KeyboardInterrupt, so route SIGINT to the token for the turn.
        watching = _add_interrupt_handler(loop, token.cancel)
        self.console.print("[bold green]coach ›[/] ", end="")
        try:
            result = await self._stack.orchestrator.handle_turn_streaming(
                text,
                self._session_id,
                on_chunk=lambda chunk: self.console.print(chunk, end="", markup=False, highlight=False),
                cancel_token=token,
                user_id=self._user_id,
            )
        finally:
            if watching:
                loop.remove_signal_handler(signal.SIGINT)
        if result.cancelled:
            self.console.print("\n[dim](interrupted)[/]")
            return
        self.console.print()
        footer = f"[dim]{result.intent.value} · confidence {result.confidence:.2f}"
        if result.dialogue_state == DialogueState.AWAITING_CLARIFICATION:
            footer += " · awaiting your choice"
        self.console.print(footer + "[/]")

    async def _command(self, text: str) -> bool:
        command = text.split()[0].lower()
        if command in ("/quit", "/exit"):
            self.console.print("[dim]Goodbye.[/]")
            return False
        if command == "/reset":
            await self._stack.orchestrator.reset_session(self._session_id)
            self.console.print("[dim]Session cleared.[/]")
        elif command == "/context":
            await self._stack.state_manager.initialize_state(self._session_id, self._user_id)
            context = await self._stack.state_manager.get_context_for_ai(self._session_id)
            self.console.print(Panel(context, title="context", box=box.ROUNDED))
        elif command == "/metrics":
            self.console.print(self._metrics_table())
        else:
            self.console.print(f"[yellow]Unknown command {command}[/]")
        return True

    def _metrics_table(self) -> Table:
        table = Table(title="Tools", box=box.SIMPLE_HEAVY)
        for column in ("tool", "calls", "success rate", "avg ms", "fallbacks", "circuit"):
            table.add_column(column)
        executor = self._stack.executor
        for name in self._stack.registry.list_tools():
            stats = executor.get_metrics(name)
            table.add_row(
                name,
                str(stats["calls"]),
                f"{stats['success_rate']:.0%}",
                f"{stats['avg_ms']:.1f}",
                str(stats["fallbacks"]),
                executor.get_circuit_state(name).value,
            )
        return table


async def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    settings = bootstrap(args)
    log = get_logger("fitcoach.main")

    session_id = args.session or f"cli-{uuid.uuid4().hex[:8]}"
    log.info(
        "fitcoach.starting",
        model=settings.completion.model,
        store=settings.store.backend,
        session_id=session_id,
    )

    stack = await build_stack(settings)
    try:
        if not await stack.completion.health_check():
            log.warning("fitcoach.completion_unhealthy", model=settings.completion.model)
        await ChatREPL(stack, session_id, args.user).run()
    finally:
        await stack.aclose()
        log.info("fitcoach.stopped")
    return 0


def run() -> None:
    """Console-script entry point."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    run()
