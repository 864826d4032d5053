"""
tests/unit/test_cli.py — CLI Entry Point Tests

Tests argument parsing, startup validation, ChatREPL command dispatch and
Ctrl-C handling during a streamed reply
over a real stack with a scripted completion client. Rich output is
captured with Console(file=StringIO()).

Run with:
    pytest tests/unit/test_cli.py -v
"""

from __future__ import annotations

import asyncio
import signal
from io import StringIO
from unittest.mock import patch

import pytest
from rich.console import Console

from fitcoach.main import ChatREPL, bootstrap, parse_args

SID = "cli-test"


# ── Helpers ───────────────────────────────────────────────────────────────────


def make_repl(stack) -> tuple[ChatREPL, StringIO]:
    buf = StringIO()
    console = Console(file=buf, width=120, force_terminal=False, color_system=None)
    return ChatREPL(stack, SID, "tester", console=console), buf


# ── parse_args / bootstrap ────────────────────────────────────────────────────


class TestParseArgs:
    def test_defaults(self):
        args = parse_args([])
        assert args.config is None
        assert args.session is None
        assert args.user == "local-user"
        assert args.log_level is None

    def test_flags(self):
        args = parse_args(["--config", "c.yaml", "--session", "demo", "--user", "alice", "--log-level", "DEBUG"])
        assert (args.config, args.session, args.user, args.log_level) == ("c.yaml", "demo", "alice", "DEBUG")

    def test_rejects_unknown_log_level(self):
        with pytest.raises(SystemExit):
            parse_args(["--log-level", "LOUD"])


class TestBootstrap:
    def test_missing_key_exits(self, tmp_path, capsys):
        args = parse_args(["--config", str(tmp_path / "none.yaml")])
        with patch("fitcoach.main.load_dotenv"), pytest.raises(SystemExit) as exc_info:
            bootstrap(args)
        assert exc_info.value.code == 1
        assert "OPENAI_API_KEY" in capsys.readouterr().err

    def test_invalid_yaml_value_exits(self, tmp_path, capsys):
        path = tmp_path / "bad.yaml"
        path.write_text("store:\n  backend: redis\n", encoding="utf-8")
        with patch("fitcoach.main.load_dotenv"), pytest.raises(SystemExit) as exc_info:
            bootstrap(parse_args(["--config", str(path)]))
        assert exc_info.value.code == 1
        assert "store.backend" in capsys.readouterr().err


# ── ChatREPL ──────────────────────────────────────────────────────────────────


class TestCommands:
    @pytest.mark.asyncio
    async def test_quit(self, make_stack, scripted):
        repl, buf = make_repl(await make_stack(scripted))
        assert await repl._command("/quit") is False
        assert await repl._command("/exit") is False
        assert "Goodbye" in buf.getvalue()

    @pytest.mark.asyncio
    async def test_unknown_command(self, make_stack, scripted):
        repl, buf = make_repl(await make_stack(scripted))
        assert await repl._command("/dance") is True
        assert "Unknown command /dance" in buf.getvalue()

    @pytest.mark.asyncio
    async def test_metrics_lists_every_tool(self, make_stack, scripted):
        stack = await make_stack(scripted)
        repl, buf = make_repl(stack)
        assert await repl._command("/metrics") is True
        out = buf.getvalue()
        for name in stack.registry.list_tools():
            assert name in out
        assert "closed" in out

    @pytest.mark.asyncio
    async def test_context(self, make_stack, scripted):
        repl, buf = make_repl(await make_stack(scripted))
        await repl._command("/context")
        assert "context" in buf.getvalue()

    @pytest.mark.asyncio
    async def test_reset(self, make_stack, scripted, plan_json):
        stack = await make_stack(scripted)
        repl, buf = make_repl(stack)
        scripted.push(plan_json("GREETING", 0.9))
        await repl._turn("hello")
        assert await stack.store.load(SID) is not None

        await repl._command("/reset")
        assert await stack.store.load(SID) is None
        assert "Session cleared" in buf.getvalue()


class TestTurn:
    @pytest.mark.asyncio
    async def test_reply_and_footer(self, make_stack, scripted, plan_json):
        stack = await make_stack(scripted, synthesize=True)
        repl, buf = make_repl(stack)
        scripted.push(plan_json("GREETING", 0.9), "Hey! Ready to train?")

        await repl._turn("hi")

        out = buf.getvalue()
        assert "Hey! Ready to train?" in out
        assert "GREETING" in out
        assert "confidence 0.90" in out

    @pytest.mark.asyncio
    async def test_footer_marks_pending_question(self, make_stack, scripted, plan_json):
        stack = await make_stack(scripted)
        repl, buf = make_repl(stack)
        scripted.push(plan_json("CREATE_WORKOUT", 0.9, slots={"focus": "legs", "exercises": ["squat"]}))
        await repl._turn("leg workout with squats")
        scripted.push(plan_json("MODIFY_WORKOUT", 0.9))
        await repl._turn("double it")

        assert "awaiting your choice" in buf.getvalue()


class TestInterrupt:
    @pytest.mark.asyncio
    async def test_sigint_cancels_streamed_reply(self, make_stack, scripted, plan_json):
        stack = await make_stack(scripted, synthesize=True)
        repl, buf = make_repl(stack)
        scripted.push(plan_json("GREETING", 0.9), "Hey! Ready to train?")
        loop = asyncio.get_running_loop()

        # Deliver Ctrl-C as soon as the handler is installed.
        with patch.object(loop, "add_signal_handler", side_effect=lambda sig, cb: cb()) as add, \
                patch.object(loop, "remove_signal_handler") as remove:
            await repl._turn("hi")

        assert add.call_args.args[0] == signal.SIGINT
        remove.assert_called_once_with(signal.SIGINT)
        out = buf.getvalue()
        assert "(interrupted)" in out
        assert "Ready to train?" not in out
        assert "GREETING" not in out

    @pytest.mark.asyncio
    async def test_handler_removed_after_normal_turn(self, make_stack, scripted, plan_json):
        stack = await make_stack(scripted)
        repl, buf = make_repl(stack)
        scripted.push(plan_json("GREETING", 0.9))
        loop = asyncio.get_running_loop()

        with patch.object(loop, "add_signal_handler") as add, \
                patch.object(loop, "remove_signal_handler") as remove:
            await repl._turn("hi")

        add.assert_called_once()
        remove.assert_called_once_with(signal.SIGINT)
        assert "(interrupted)" not in buf.getvalue()
        assert "GREETING" in buf.getvalue()

    @pytest.mark.asyncio
    async def test_loop_without_signal_support(self, make_stack, scripted, plan_json):
        stack = await make_stack(scripted)
        repl, buf = make_repl(stack)
        scripted.push(plan_json("GREETING", 0.9))
        loop = asyncio.get_running_loop()

        with patch.object(loop, "add_signal_handler", side_effect=NotImplementedError), \
                patch.object(loop, "remove_signal_handler") as remove:
            await repl._turn("hi")

        remove.assert_not_called()
        assert "GREETING" in buf.getvalue()
