"""
memory/state_manager.py — Conversation State Manager

Owns one ConversationState per session: message history, the active task,
the cached user profile, workout context and the pending clarification.
Every mutation bumps metadata.version and is written through the injected
SessionStore before the call returns.

The orchestrator never touches ConversationState fields directly; it goes
through this API so the single-active-task and clarification invariants
hold in one place.

Usage:
    manager = ConversationStateManager(store, ConversationConfig())
    await manager.initialize_state("s1", "u1")
    await manager.add_message("s1", ChatMessage.user("make me a leg day"))
    task_id = await manager.start_task("s1", "CREATE_WORKOUT", steps)
    await manager.update_task_step("s1", f"{task_id}_step_0", StepPatch(status=StepStatus.COMPLETED))
    prompt_fragment = await manager.get_context_for_ai("s1")
"""

from __future__ import annotations

import uuid
from collections import OrderedDict
from typing import Any, Optional

from fitcoach.config.settings import ConversationConfig
from fitcoach.exceptions import InvalidStateError, SessionNotFoundError
from fitcoach.memory.session_store import SessionStore
from fitcoach.memory.types import (
    ChatMessage,
    ClarificationContext,
    ConversationState,
    StepPatch,
    StepSpec,
    StepStatus,
    TaskContext,
    TaskStatus,
    TaskStep,
    UserProfile,
    WorkoutContext,
    utcnow,
)
from fitcoach.observability.logger import get_logger

log = get_logger(__name__)

_ELLIPSIS = "…"


def _clip(text: str, limit: int) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 1)] + _ELLIPSIS


class ConversationStateManager:
    """
    Per-session working memory with write-through persistence.

    States are cached in-process after the first load, least recently used
    evicted past max_cached_sessions; the SessionStore is the source of
    truth across restarts and evictions.
    """

    def __init__(
        self,
        store: SessionStore,
        config: Optional[ConversationConfig] = None,
    ) -> None:
        self._store = store
        self._config = config or ConversationConfig()
        self._states: OrderedDict[str, ConversationState] = OrderedDict()

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def initialize_state(
        self,
        session_id: str,
        user_id: str,
        profile: Optional[UserProfile] = None,
    ) -> ConversationState:
        """Return the session's state, loading or creating it. Idempotent."""
        cached = self._cached(session_id)
        if cached is not None:
            return cached

        stored = await self._store.load(session_id)
        if stored is not None:
            self._remember(stored)
            log.debug("state.loaded", session_id=session_id, messages=len(stored.messages))
            return stored

        profile = profile or UserProfile()
        state = ConversationState(
            session_id=session_id,
            user_id=user_id,
            user_profile=profile,
            messages=[ChatMessage.system(f"User profile — {profile.summary()}")],
        )
        self._remember(state)
        await self._persist(state)
        log.info("state.created", session_id=session_id, user_id=user_id)
        return state

    async def get_state(self, session_id: str) -> ConversationState:
        cached = self._cached(session_id)
        if cached is not None:
            return cached
        stored = await self._store.load(session_id)
        if stored is None:
            raise SessionNotFoundError(session_id)
        self._remember(stored)
        return stored

    async def clear_state(self, session_id: str) -> None:
        self._states.pop(session_id, None)
        await self._store.delete(session_id)
        log.info("state.cleared", session_id=session_id)

    def _cached(self, session_id: str) -> Optional[ConversationState]:
        state = self._states.get(session_id)
        if state is not None:
            self._states.move_to_end(session_id)
        return state

    def _remember(self, state: ConversationState) -> None:
        # Least recently used first; evicted states reload from the store.
        self._states[state.session_id] = state
        self._states.move_to_end(state.session_id)
        while len(self._states) > self._config.max_cached_sessions:
            evicted, _ = self._states.popitem(last=False)
            log.debug("state.evicted", session_id=evicted)

    async def _persist(self, state: ConversationState) -> None:
        state.updated_at = utcnow()
        state.metadata.version += 1
        await self._store.save(state)

    # ─────────────────────────────────────────────────────────────────────────
    # Messages
    # ─────────────────────────────────────────────────────────────────────────

    async def add_message(self, session_id: str, message: ChatMessage) -> None:
        state = await self.get_state(session_id)
        state.messages.append(message)
        overflow = len(state.messages) - self._config.history_limit
        if overflow > 0:
            del state.messages[:overflow]
        await self._persist(state)

    async def get_recent_messages(self, session_id: str, n: Optional[int] = None) -> list[ChatMessage]:
        state = await self.get_state(session_id)
        n = n or self._config.context_window_messages
        return list(state.messages[-n:])

    # ─────────────────────────────────────────────────────────────────────────
    # Tasks
    # ─────────────────────────────────────────────────────────────────────────

    async def start_task(self, session_id: str, task_type: str, steps: list[StepSpec]) -> str:
        state = await self.get_state(session_id)
        if state.active_task is not None and not state.active_task.is_terminal:
            raise InvalidStateError(
                f"Session '{session_id}' already has active task "
                f"'{state.active_task.task_id}' ({state.active_task.type})"
            )

        task_id = f"task_{uuid.uuid4().hex[:12]}"
        task = TaskContext(
            task_id=task_id,
            type=task_type,
            steps=[
                TaskStep(
                    step_id=f"{task_id}_step_{i}",
                    name=spec.name,
                    description=spec.description,
                    required_tools=list(spec.tools),
                    dependencies=list(spec.dependencies),
                )
                for i, spec in enumerate(steps)
            ],
        )
        state.active_task = task
        if not task.steps:
            self._finalize_task(state, task)
        await self._persist(state)
        log.info("state.task.started", session_id=session_id, task_id=task_id, type=task_type, steps=len(steps))
        return task_id

    async def update_task_step(self, session_id: str, step_id: str, patch: StepPatch) -> TaskContext:
        """
        Apply patch to one step of the active task.

        Returns the task. Once every step is terminal the task is finalised:
        active_task becomes None and the task is kept as last_task.
        """
        state = await self.get_state(session_id)
        task = state.active_task
        if task is None:
            raise InvalidStateError(f"Session '{session_id}' has no active task")
        step = task.step(step_id)
        if step is None:
            raise InvalidStateError(f"Task '{task.task_id}' has no step '{step_id}'")
        if step.is_terminal:
            raise InvalidStateError(f"Step '{step_id}' is already {step.status.value}")

        now = utcnow()
        if patch.status is not None:
            step.status = patch.status
            if patch.status == StepStatus.IN_PROGRESS and step.started_at is None:
                step.started_at = now
            if step.is_terminal:
                step.completed_at = now
        if patch.output is not None:
            step.output = patch.output
        if patch.error is not None:
            step.error = patch.error
        task.updated_at = now

        if all(s.is_terminal for s in task.steps):
            self._finalize_task(state, task)
        await self._persist(state)
        log.debug("state.task.step_updated", task_id=task.task_id, step_id=step_id, status=step.status.value)
        return task

    async def complete_task(self, session_id: str) -> Optional[TaskContext]:
        """Force-finish the active task; unfinished steps become skipped."""
        state = await self.get_state(session_id)
        task = state.active_task
        if task is None:
            return None
        now = utcnow()
        for s in task.steps:
            if not s.is_terminal:
                s.status = StepStatus.SKIPPED
                s.completed_at = now
        self._finalize_task(state, task)
        await self._persist(state)
        return task

    def _finalize_task(self, state: ConversationState, task: TaskContext) -> None:
        ok = all(s.status == StepStatus.COMPLETED for s in task.steps)
        task.status = TaskStatus.COMPLETED if ok else TaskStatus.FAILED
        task.completed_at = utcnow()
        state.last_task = task
        state.active_task = None
        log.info(
            "state.task.finished",
            session_id=state.session_id,
            task_id=task.task_id,
            status=task.status.value,
            completed=task.completed_count,
            total=len(task.steps),
        )

    async def get_task_progress(self, session_id: str) -> dict[str, Any]:
        state = await self.get_state(session_id)
        task = state.active_task or state.last_task
        if task is None:
            return {"task_id": None, "completed": 0, "total": 0, "percentage": 0.0}
        total = len(task.steps)
        done = sum(1 for s in task.steps if s.is_terminal)
        return {
            "task_id": task.task_id,
            "status": task.status.value,
            "completed": done,
            "total": total,
            "percentage": round(100.0 * done / total, 1) if total else 100.0,
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Profile / workout context / clarification
    # ─────────────────────────────────────────────────────────────────────────

    async def update_user_profile(self, session_id: str, **changes: Any) -> UserProfile:
        state = await self.get_state(session_id)
        state.user_profile = state.user_profile.model_copy(update=changes)
        await self._persist(state)
        return state.user_profile

    async def update_workout_context(
        self,
        session_id: str,
        active_workout_id: Optional[str] = None,
        exercises: Optional[list[str]] = None,
    ) -> WorkoutContext:
        state = await self.get_state(session_id)
        ctx = state.workout_context
        if active_workout_id is not None:
            ctx.active_workout_id = active_workout_id
        if exercises:
            merged = [e for e in ctx.recent_exercises if e not in exercises] + list(exercises)
            ctx.recent_exercises = merged[-10:]
        await self._persist(state)
        return ctx

    async def set_clarification(self, session_id: str, context: ClarificationContext) -> None:
        state = await self.get_state(session_id)
        if state.clarification is not None:
            log.info(
                "state.clarification.replaced",
                session_id=session_id,
                previous=state.clarification.original_intent_name,
            )
        state.clarification = context
        await self._persist(state)

    async def clear_clarification(self, session_id: str) -> None:
        state = await self.get_state(session_id)
        if state.clarification is None:
            return
        state.clarification = None
        await self._persist(state)

    # ─────────────────────────────────────────────────────────────────────────
    # Prompt context
    # ─────────────────────────────────────────────────────────────────────────

    async def get_context_for_ai(self, session_id: str) -> str:
        """
        Render a bounded summary for the completion service.

        Sliding window: last N messages, each clipped, and the whole string
        hard-capped at max_context_chars, so length is independent of how
        long the session has been running.
        """
        state = await self.get_state(session_id)
        cfg = self._config
        p = state.user_profile

        lines = [
            "## User",
            _clip(
                f"Level: {p.fitness_level} | Goals: {', '.join(p.goals)} | "
                f"Equipment: {', '.join(p.equipment)} | Frequency: {p.workout_frequency}",
                cfg.max_message_chars,
            ),
        ]

        wc = state.workout_context
        if wc.active_workout_id:
            recent = ", ".join(wc.recent_exercises[-5:]) or "none"
            lines.append(_clip(f"Active workout: {wc.active_workout_id} (exercises: {recent})", cfg.max_message_chars))

        task = state.active_task
        if task is not None:
            current = task.steps[task.current_index - 1] if task.steps else None
            lines.append(
                f"## Task\n{task.type} ({task.status.value}) — "
                f"Step {task.current_index}/{len(task.steps)}"
                + (f": {_clip(current.name, 60)}" if current else "")
            )

        if state.clarification is not None:
            lines.append(f"## Pending question\n{_clip(state.clarification.clarification_question, cfg.max_message_chars)}")

        recent_msgs = state.messages[-cfg.context_window_messages:]
        if recent_msgs:
            lines.append("## Recent conversation")
            for m in recent_msgs:
                lines.append(f"{m.role.value}: {_clip(m.content, cfg.max_message_chars)}")

        return _clip_block("\n".join(lines), cfg.max_context_chars)


def _clip_block(text: str, limit: int) -> str:
    # Keeps line breaks, unlike _clip().
    if len(text) <= limit:
        return text
    return text[: limit - 1] + _ELLIPSIS
