"""
tests/unit/test_memory.py — Conversation State + Session Store Tests

Covers:
  - initialize_state: created once, system profile message, idempotent
  - unknown session → SessionNotFoundError
  - history bounded by history_limit, version bumps on every mutation
  - single active task; step updates; finalisation into last_task
  - updates to terminal steps are rejected
  - clarification set / clear drives dialogue_state
  - workout context merging
  - get_context_for_ai stays within max_context_chars, same for 5 or 5000 messages
  - persistence: a new manager over the same store sees the state
  - the in-process cache is LRU-bounded; evicted sessions reload from the store
  - InMemorySessionStore and SqliteSessionStore round-trips
"""

from __future__ import annotations

import pytest

from fitcoach.config.settings import ConversationConfig
from fitcoach.exceptions import InvalidStateError, SessionNotFoundError, SessionStoreError
from fitcoach.memory.session_store import InMemorySessionStore, SqliteSessionStore
from fitcoach.memory.state_manager import ConversationStateManager
from fitcoach.memory.types import (
    ChatMessage,
    ClarificationContext,
    ClarificationOption,
    ConversationState,
    DialogueState,
    Role,
    StepPatch,
    StepSpec,
    StepStatus,
    TaskStatus,
)


# ── Helpers ───────────────────────────────────────────────────────────────────

def _manager(store=None, **config):
    return ConversationStateManager(store if store is not None else InMemorySessionStore(), ConversationConfig(**config))


def _steps(*names, deps=None):
    deps = deps or {}
    return [StepSpec(name=n, tools=[n], dependencies=deps.get(n, [])) for n in names]


def _clarification():
    return ClarificationContext(
        original_intent_name="MODIFY_WORKOUT",
        clarification_question="Which one?",
        options=[ClarificationOption(label="Sets", value="DOUBLE_SETS")],
    )


# ── Lifecycle ─────────────────────────────────────────────────────────────────

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_initialize_creates_state_with_profile_message(self):
        manager = _manager()
        state = await manager.initialize_state("s1", "u1")
        assert state.session_id == "s1"
        assert state.user_id == "u1"
        assert len(state.messages) == 1
        assert state.messages[0].role == Role.SYSTEM
        assert "Fitness level" in state.messages[0].content
        assert state.dialogue_state == DialogueState.NONE

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self):
        manager = _manager()
        first = await manager.initialize_state("s1", "u1")
        await manager.add_message("s1", ChatMessage.user("hi"))
        second = await manager.initialize_state("s1", "u1")
        assert second is first
        assert len(second.messages) == 2

    @pytest.mark.asyncio
    async def test_unknown_session(self):
        with pytest.raises(SessionNotFoundError):
            await _manager().get_state("ghost")

    @pytest.mark.asyncio
    async def test_clear_state(self):
        store = InMemorySessionStore()
        manager = _manager(store)
        await manager.initialize_state("s1", "u1")
        await manager.clear_state("s1")
        assert await store.load("s1") is None
        with pytest.raises(SessionNotFoundError):
            await manager.get_state("s1")

    @pytest.mark.asyncio
    async def test_state_survives_new_manager(self):
        store = InMemorySessionStore()
        first = _manager(store)
        await first.initialize_state("s1", "u1")
        await first.add_message("s1", ChatMessage.user("make me a workout"))

        second = _manager(store)
        state = await second.get_state("s1")
        assert state.messages[-1].content == "make me a workout"

    @pytest.mark.asyncio
    async def test_cache_evicts_least_recently_used(self):
        store = InMemorySessionStore()
        manager = _manager(store, max_cached_sessions=2)
        for sid in ("s1", "s2"):
            await manager.initialize_state(sid, "u1")
        await manager.add_message("s1", ChatMessage.user("still here"))
        await manager.initialize_state("s3", "u1")

        assert list(manager._states) == ["s1", "s3"]
        state = await manager.get_state("s2")
        assert state.session_id == "s2"
        assert list(manager._states) == ["s3", "s2"]
        reloaded = await manager.get_state("s1")
        assert reloaded.messages[-1].content == "still here"
        assert len(manager._states) == 2

    def test_cache_size_must_be_positive(self):
        with pytest.raises(ValueError):
            ConversationConfig(max_cached_sessions=0)


# ── Messages ──────────────────────────────────────────────────────────────────

class TestMessages:
    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        manager = _manager(history_limit=3, context_window_messages=2)
        await manager.initialize_state("s1", "u1")
        for i in range(5):
            await manager.add_message("s1", ChatMessage.user(f"m{i}"))
        state = await manager.get_state("s1")
        assert [m.content for m in state.messages] == ["m2", "m3", "m4"]

    @pytest.mark.asyncio
    async def test_recent_messages(self):
        manager = _manager(context_window_messages=2)
        await manager.initialize_state("s1", "u1")
        for i in range(4):
            await manager.add_message("s1", ChatMessage.user(f"m{i}"))
        recent = await manager.get_recent_messages("s1")
        assert [m.content for m in recent] == ["m2", "m3"]

    @pytest.mark.asyncio
    async def test_version_bumps(self):
        manager = _manager()
        state = await manager.initialize_state("s1", "u1")
        before = state.metadata.version
        await manager.add_message("s1", ChatMessage.user("hi"))
        assert state.metadata.version == before + 1

    @pytest.mark.asyncio
    async def test_assistant_message_keeps_tool_calls(self):
        manager = _manager()
        await manager.initialize_state("s1", "u1")
        await manager.add_message("s1", ChatMessage.assistant("done", tool_calls=[{"tool": "find_exercise"}]))
        state = await manager.get_state("s1")
        assert state.messages[-1].tool_calls == [{"tool": "find_exercise"}]


# ── Tasks ─────────────────────────────────────────────────────────────────────

class TestTasks:
    @pytest.mark.asyncio
    async def test_start_task_creates_pending_steps(self):
        manager = _manager()
        await manager.initialize_state("s1", "u1")
        task_id = await manager.start_task("s1", "CREATE_WORKOUT", _steps("a", "b"))
        state = await manager.get_state("s1")
        assert state.active_task.task_id == task_id
        assert [s.step_id for s in state.active_task.steps] == [f"{task_id}_step_0", f"{task_id}_step_1"]
        assert all(s.status == StepStatus.PENDING for s in state.active_task.steps)

    @pytest.mark.asyncio
    async def test_only_one_active_task(self):
        manager = _manager()
        await manager.initialize_state("s1", "u1")
        await manager.start_task("s1", "A", _steps("a"))
        with pytest.raises(InvalidStateError):
            await manager.start_task("s1", "B", _steps("b"))

    @pytest.mark.asyncio
    async def test_all_steps_terminal_finalises_task(self):
        manager = _manager()
        await manager.initialize_state("s1", "u1")
        task_id = await manager.start_task("s1", "A", _steps("a", "b"))
        await manager.update_task_step("s1", f"{task_id}_step_0", StepPatch(status=StepStatus.IN_PROGRESS))
        await manager.update_task_step("s1", f"{task_id}_step_0", StepPatch(status=StepStatus.COMPLETED, output={"x": 1}))
        progress = await manager.get_task_progress("s1")
        assert progress["completed"] == 1
        assert progress["total"] == 2
        assert progress["percentage"] == 50.0

        await manager.update_task_step("s1", f"{task_id}_step_1", StepPatch(status=StepStatus.COMPLETED))
        state = await manager.get_state("s1")
        assert state.active_task is None
        assert state.last_task.task_id == task_id
        assert state.last_task.status == TaskStatus.COMPLETED
        assert state.last_task.steps[0].output == {"x": 1}
        assert state.last_task.steps[0].started_at is not None

    @pytest.mark.asyncio
    async def test_failed_step_fails_task(self):
        manager = _manager()
        await manager.initialize_state("s1", "u1")
        task_id = await manager.start_task("s1", "A", _steps("a", "b", deps={"b": ["a"]}))
        await manager.update_task_step("s1", f"{task_id}_step_0", StepPatch(status=StepStatus.FAILED, error="boom"))
        await manager.update_task_step("s1", f"{task_id}_step_1", StepPatch(status=StepStatus.SKIPPED))
        state = await manager.get_state("s1")
        assert state.last_task.status == TaskStatus.FAILED
        assert state.last_task.steps[0].error == "boom"

    @pytest.mark.asyncio
    async def test_terminal_step_cannot_change(self):
        manager = _manager()
        await manager.initialize_state("s1", "u1")
        task_id = await manager.start_task("s1", "A", _steps("a", "b"))
        await manager.update_task_step("s1", f"{task_id}_step_0", StepPatch(status=StepStatus.COMPLETED))
        with pytest.raises(InvalidStateError):
            await manager.update_task_step("s1", f"{task_id}_step_0", StepPatch(status=StepStatus.FAILED))

    @pytest.mark.asyncio
    async def test_unknown_step_or_no_task(self):
        manager = _manager()
        await manager.initialize_state("s1", "u1")
        with pytest.raises(InvalidStateError):
            await manager.update_task_step("s1", "nope", StepPatch(status=StepStatus.COMPLETED))
        await manager.start_task("s1", "A", _steps("a"))
        with pytest.raises(InvalidStateError):
            await manager.update_task_step("s1", "nope", StepPatch(status=StepStatus.COMPLETED))

    @pytest.mark.asyncio
    async def test_complete_task_skips_unfinished_steps(self):
        manager = _manager()
        await manager.initialize_state("s1", "u1")
        await manager.start_task("s1", "A", _steps("a", "b"))
        task = await manager.complete_task("s1")
        assert all(s.status == StepStatus.SKIPPED for s in task.steps)
        state = await manager.get_state("s1")
        assert state.active_task is None
        # Now a new task may start.
        await manager.start_task("s1", "B", _steps("c"))

    @pytest.mark.asyncio
    async def test_progress_without_task(self):
        manager = _manager()
        await manager.initialize_state("s1", "u1")
        progress = await manager.get_task_progress("s1")
        assert progress["task_id"] is None
        assert progress["total"] == 0


# ── Profile / workout / clarification ─────────────────────────────────────────

class TestContext:
    @pytest.mark.asyncio
    async def test_clarification_drives_dialogue_state(self):
        manager = _manager()
        state = await manager.initialize_state("s1", "u1")
        await manager.set_clarification("s1", _clarification())
        assert state.dialogue_state == DialogueState.AWAITING_CLARIFICATION
        await manager.clear_clarification("s1")
        assert state.dialogue_state == DialogueState.NONE
        assert state.clarification is None

    @pytest.mark.asyncio
    async def test_update_profile(self):
        manager = _manager()
        await manager.initialize_state("s1", "u1")
        profile = await manager.update_user_profile("s1", fitness_level="advanced", equipment=["dumbbell"])
        assert profile.fitness_level == "advanced"
        assert profile.equipment == ["dumbbell"]

    @pytest.mark.asyncio
    async def test_workout_context_merges_recent_exercises(self):
        manager = _manager()
        await manager.initialize_state("s1", "u1")
        await manager.update_workout_context("s1", active_workout_id="w1", exercises=["Squat", "Lunge"])
        ctx = await manager.update_workout_context("s1", exercises=["Plank", "Squat"])
        assert ctx.active_workout_id == "w1"
        assert ctx.recent_exercises == ["Lunge", "Plank", "Squat"]

    @pytest.mark.asyncio
    async def test_context_for_ai_is_bounded(self):
        manager = _manager(max_context_chars=500, max_message_chars=80)
        await manager.initialize_state("s1", "u1")
        for i in range(40):
            await manager.add_message("s1", ChatMessage.user(f"message {i} " + "x" * 400))
        text = await manager.get_context_for_ai("s1")
        assert len(text) <= 500
        assert "## User" in text

    @pytest.mark.asyncio
    async def test_context_for_ai_independent_of_history_length(self):
        async def context_after(count: int) -> str:
            store = InMemorySessionStore()
            state = ConversationState(session_id="s1", user_id="u1")
            state.messages.extend(ChatMessage.user("set " + "x" * 300) for _ in range(count))
            await store.save(state)
            return await _manager(store, max_context_chars=800).get_context_for_ai("s1")

        short, long = await context_after(5), await context_after(5000)
        assert len(long) <= 800
        assert long == short

    @pytest.mark.asyncio
    async def test_context_for_ai_mentions_pending_question_and_workout(self):
        manager = _manager()
        await manager.initialize_state("s1", "u1")
        await manager.update_workout_context("s1", active_workout_id="w1", exercises=["Squat"])
        await manager.set_clarification("s1", _clarification())
        text = await manager.get_context_for_ai("s1")
        assert "Active workout: w1" in text
        assert "Which one?" in text


# ── Session stores ────────────────────────────────────────────────────────────

def _state() -> ConversationState:
    state = ConversationState(session_id="s1", user_id="u1")
    state.messages.append(ChatMessage.user("hello"))
    state.clarification = _clarification()
    return state


class TestInMemorySessionStore:
    @pytest.mark.asyncio
    async def test_round_trip_returns_fresh_copy(self):
        store = InMemorySessionStore()
        state = _state()
        await store.save(state)
        loaded = await store.load("s1")
        assert loaded.model_dump() == state.model_dump()
        assert loaded is not state
        loaded.messages.clear()
        assert (await store.load("s1")).messages[0].content == "hello"

    @pytest.mark.asyncio
    async def test_missing_delete_list(self):
        store = InMemorySessionStore()
        assert await store.load("nope") is None
        await store.save(_state())
        assert await store.list_sessions() == ["s1"]
        await store.delete("s1")
        assert await store.load("s1") is None
        await store.delete("s1")


class TestSqliteSessionStore:
    @pytest.mark.asyncio
    async def test_round_trip(self):
        store = SqliteSessionStore(":memory:")
        await store.init()
        try:
            state = _state()
            await store.save(state)
            loaded = await store.load("s1")
            assert loaded.model_dump() == state.model_dump()
            assert loaded.created_at == state.created_at
            assert loaded.clarification.options[0].value == "DOUBLE_SETS"
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_upsert_and_delete(self):
        store = SqliteSessionStore(":memory:")
        await store.init()
        try:
            state = _state()
            await store.save(state)
            state.messages.append(ChatMessage.assistant("hi"))
            state.metadata.version = 7
            await store.save(state)
            loaded = await store.load("s1")
            assert len(loaded.messages) == 2
            assert loaded.metadata.version == 7
            assert await store.list_sessions() == ["s1"]
            await store.delete("s1")
            assert await store.load("s1") is None
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_file_backed(self, tmp_path):
        path = tmp_path / "nested" / "sessions.db"
        store = SqliteSessionStore(str(path))
        await store.init()
        await store.save(_state())
        await store.close()

        reopened = SqliteSessionStore(str(path))
        await reopened.init()
        try:
            assert (await reopened.load("s1")).user_id == "u1"
        finally:
            await reopened.close()

    @pytest.mark.asyncio
    async def test_use_before_init(self):
        with pytest.raises(SessionStoreError):
            await SqliteSessionStore(":memory:").load("s1")

    @pytest.mark.asyncio
    async def test_manager_over_sqlite(self):
        store = SqliteSessionStore(":memory:")
        await store.init()
        try:
            manager = _manager(store)
            await manager.initialize_state("s1", "u1")
            await manager.add_message("s1", ChatMessage.user("hi"))
            assert len((await store.load("s1")).messages) == 2
        finally:
            await store.close()
