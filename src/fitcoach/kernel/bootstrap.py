"""
kernel/bootstrap.py — Agent Stack Factory

Wires the full orchestration stack from Settings. Every component is an
owned object handed to the ones that need it; nothing is module-global.
Used by the CLI and by tests (which inject a scripted completion client and
an in-memory store).

    SessionStore → ConversationStateManager
    ExerciseCatalog → ExerciseMatcher ─┐
    WorkoutRepository ─────────────────┼→ built-in tools → ToolRegistry → ToolExecutor
    CompletionClient → Planner, ResponseSynthesizer
    DoubleWorkoutRule → ClarificationManager
                                       └→ Orchestrator

Usage:
    settings = load_settings()
    stack = await build_stack(settings)
    result = await stack.orchestrator.handle_turn("hi", session_id="s1")
    await stack.aclose()
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from fitcoach.agent.clarification import ClarificationManager
from fitcoach.agent.orchestrator import Orchestrator
from fitcoach.agent.planner import Planner
from fitcoach.agent.response_synthesizer import ResponseSynthesizer
from fitcoach.agent.routes import default_routes
from fitcoach.brain.completion import BaseCompletionClient
from fitcoach.brain.openai_client import OpenAICompletionClient
from fitcoach.config.settings import ConfigError, Settings
from fitcoach.matching.catalog import ExerciseCatalog
from fitcoach.matching.matcher import ExerciseMatcher
from fitcoach.memory.session_store import InMemorySessionStore, SessionStore, SqliteSessionStore
from fitcoach.memory.state_manager import ConversationStateManager
from fitcoach.observability.logger import get_logger
from fitcoach.tools.builtin import DoubleWorkoutRule, Workout, WorkoutRepository, register_builtin_tools
from fitcoach.tools.executor import ToolExecutor
from fitcoach.tools.registry import ToolRegistry
from fitcoach.tools.types import CircuitBreakerConfig, RetryConfig

log = get_logger(__name__)

_SYSTEM_PROMPT = "You are FitCoach, a concise and encouraging personal fitness assistant."


@dataclass
class AgentStack:
    """All wired components returned by build_stack()."""
    settings: Settings
    orchestrator: Orchestrator
    state_manager: ConversationStateManager
    store: SessionStore
    registry: ToolRegistry
    executor: ToolExecutor
    matcher: ExerciseMatcher
    workouts: WorkoutRepository
    completion: BaseCompletionClient

    async def aclose(self) -> None:
        await self.store.close()


def make_completion_client(settings: Settings) -> BaseCompletionClient:
    c = settings.completion
    return OpenAICompletionClient(
        api_key=settings.openai_api_key,
        model=c.model,
        base_url=c.base_url,
        temperature=c.temperature,
        max_tokens=c.max_tokens,
        timeout_seconds=c.timeout_seconds,
        system_prompt=_SYSTEM_PROMPT,
    )


def make_session_store(settings: Settings) -> SessionStore:
    backend = settings.store.backend
    if backend == "memory":
        return InMemorySessionStore()
    if backend == "sqlite":
        return SqliteSessionStore(settings.store.sqlite_path)
    raise ConfigError(f"Unknown store.backend '{backend}'")


async def build_stack(
    settings: Settings,
    completion: Optional[BaseCompletionClient] = None,
    store: Optional[SessionStore] = None,
    catalog: Optional[ExerciseCatalog] = None,
    *,
    clock: Optional[Callable[[], float]] = None,
) -> AgentStack:
    """
    Wire up the full stack from settings.

    Args:
        settings:   Loaded Settings.
        completion: Completion client; defaults to the OpenAI-compatible one.
        store:      Session store; defaults to settings.store.backend.
        catalog:    Exercise catalog; defaults to the bundled one.
        clock:      Monotonic clock for circuit breakers (tests).
    """
    completion = completion or make_completion_client(settings)
    store = store if store is not None else make_session_store(settings)
    await store.init()

    state_manager = ConversationStateManager(store, settings.conversation)
    matcher = ExerciseMatcher(catalog if catalog is not None else ExerciseCatalog.load_default(), settings.matcher)
    workouts = WorkoutRepository()

    async def on_active_workout(session_id: str, workout: Workout) -> None:
        await state_manager.update_workout_context(
            session_id,
            active_workout_id=workout.workout_id,
            exercises=[e.name for e in workout.exercises],
        )

    registry = ToolRegistry()
    register_builtin_tools(registry, matcher, workouts, on_active_workout=on_active_workout)

    executor_kwargs = {}
    if clock is not None:
        executor_kwargs["clock"] = clock
    executor = ToolExecutor(
        registry,
        default_retry=RetryConfig.from_settings(settings.executor.retry),
        default_circuit=CircuitBreakerConfig.from_settings(settings.executor.circuit_breaker),
        default_timeout_seconds=settings.executor.tool_timeout_seconds,
        **executor_kwargs,
    )

    orchestrator = Orchestrator(
        state_manager=state_manager,
        planner=Planner(completion, routes=default_routes()),
        executor=executor,
        clarifications=ClarificationManager([DoubleWorkoutRule(workouts)]),
        synthesizer=ResponseSynthesizer(completion, use_completion=settings.orchestrator.synthesize_with_completion),
        config=settings.orchestrator,
    )

    log.info(
        "kernel.stack_ready",
        tools=registry.list_tools(),
        exercises=len(matcher.catalog),
        store=type(store).__name__,
    )
    return AgentStack(
        settings=settings,
        orchestrator=orchestrator,
        state_manager=state_manager,
        store=store,
        registry=registry,
        executor=executor,
        matcher=matcher,
        workouts=workouts,
        completion=completion,
    )
