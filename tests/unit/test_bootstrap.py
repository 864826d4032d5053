"""
tests/unit/test_bootstrap.py — Stack Wiring Tests

Covers:
  - injected collaborators are used as given, even when empty
  - store backend chosen from settings when none is injected
  - every built-in tool registered, routes installed
"""

from __future__ import annotations

import pytest

from fitcoach.config.settings import Settings
from fitcoach.kernel.bootstrap import build_stack
from fitcoach.matching.catalog import ExerciseCatalog
from fitcoach.memory.session_store import InMemorySessionStore, SqliteSessionStore
from fitcoach.tools.builtin import BUILTIN_TOOL_NAMES


# ── Helpers ───────────────────────────────────────────────────────────────────

def _sqlite_settings(tmp_path) -> Settings:
    return Settings(
        store={"backend": "sqlite", "sqlite_path": str(tmp_path / "sessions.db")},
        orchestrator={"synthesize_with_completion": False},
    )


# ── Injection ─────────────────────────────────────────────────────────────────

class TestInjection:
    @pytest.mark.asyncio
    async def test_empty_injected_store_is_used(self, tmp_path, scripted, plan_json):
        injected = InMemorySessionStore()
        stack = await build_stack(_sqlite_settings(tmp_path), completion=scripted, store=injected)

        assert stack.store is injected
        scripted.push(plan_json("GREETING", 0.9))
        await stack.orchestrator.handle_turn("hi", "s1")
        assert len(injected) == 1
        assert await injected.list_sessions() == ["s1"]
        await stack.aclose()

    @pytest.mark.asyncio
    async def test_empty_injected_catalog_is_used(self, scripted):
        empty = ExerciseCatalog([])
        stack = await build_stack(Settings(), completion=scripted, store=InMemorySessionStore(), catalog=empty)

        assert stack.matcher.catalog is empty
        assert stack.matcher.find_best_match("squat") is None

    @pytest.mark.asyncio
    async def test_injected_completion_is_used(self, scripted):
        stack = await build_stack(Settings(), completion=scripted, store=InMemorySessionStore())
        assert stack.completion is scripted


# ── Defaults from settings ────────────────────────────────────────────────────

class TestDefaults:
    @pytest.mark.asyncio
    async def test_sqlite_backend_from_settings(self, tmp_path, scripted):
        stack = await build_stack(_sqlite_settings(tmp_path), completion=scripted)
        try:
            assert isinstance(stack.store, SqliteSessionStore)
        finally:
            await stack.aclose()

    @pytest.mark.asyncio
    async def test_memory_backend_by_default(self, scripted):
        stack = await build_stack(Settings(), completion=scripted)
        assert isinstance(stack.store, InMemorySessionStore)
        assert len(stack.matcher.catalog) > 0

    @pytest.mark.asyncio
    async def test_builtin_tools_registered(self, scripted):
        stack = await build_stack(Settings(), completion=scripted)
        assert stack.registry.list_tools() == sorted(BUILTIN_TOOL_NAMES)
