"""
agent/orchestrator.py — Reasoning Orchestrator

Runs one user turn end to end:

    1. Record the user message                       (ConversationStateManager)
    2. Pending clarification? try to resolve it       (ClarificationManager)
         resolved   → run the option's plan, clear the question
         new intent → GREETING / action intent supersedes the question
         otherwise  → CLARIFICATION_MISMATCH, re-ask, question stays pending
    3. Classify + plan                                (Planner)
         PlanningError   → conservative default plan
         CompletionError → fixed apology, confidence 0.3, no tool calls
    4. Ambiguous modification? ask instead of acting   (ClarificationRule)
    5. Start a task and walk its steps in order       (ToolExecutor)
         a step runs only if every dependency step succeeded
    6. Aggregate confidence, phrase the reply         (ResponseSynthesizer)
    7. Record the assistant message and return a TurnResult

Turns for the same session are serialized by a per-session asyncio.Lock, so
messages are appended strictly in arrival order. Different sessions run
concurrently.

Usage:
    orc = Orchestrator(state_manager, planner, executor, clarifications, synthesizer)
    result = await orc.handle_turn("make me a leg workout", session_id="s1", user_id="u1")

    token = CancelToken()
    result = await orc.handle_turn_streaming("double it", "s1", on_chunk=print, cancel_token=token)
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Optional

from fitcoach.agent.clarification import ClarificationManager, Resolution
from fitcoach.agent.planner import Intent, IntentResult, Planner
from fitcoach.agent.response_synthesizer import FAILURE_MESSAGE, ResponseSynthesizer, StepOutcome
from fitcoach.brain.completion import CancelToken, ChunkCallback
from fitcoach.config.settings import OrchestratorConfig
from fitcoach.exceptions import (
    CircuitOpenError,
    CompletionCancelledError,
    CompletionError,
    PlanningError,
    ToolNotFoundError,
)
from fitcoach.memory.state_manager import ConversationStateManager
from fitcoach.memory.types import (
    ChatMessage,
    ClarificationContext,
    ConversationState,
    DialogueState,
    StepPatch,
    StepSpec,
    StepStatus,
    TaskContext,
)
from fitcoach.observability.logger import bind_session, clear_session, get_logger
from fitcoach.tools.executor import ToolExecutor
from fitcoach.tools.types import ToolErrorKind, ToolExecutionContext, ToolResult

log = get_logger(__name__)

# Confidence reported when an unmatched answer re-asks the pending question.
_MISMATCH_CONFIDENCE = 0.7


@dataclass
class TurnResult:
    text: str
    confidence: float
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    intent: Intent = Intent.UNKNOWN
    dialogue_state: DialogueState = DialogueState.NONE
    task_id: Optional[str] = None
    cancelled: bool = False

    def __str__(self) -> str:
        return self.text


@dataclass
class _Stream:
    on_chunk: ChunkCallback
    cancel_token: Optional[CancelToken] = None


def _ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 2)


class Orchestrator:
    """
    Coordinates one turn across state, planning, tools and phrasing.

    All collaborators are injected; kernel.bootstrap.build_stack() wires
    them from Settings.
    """

    def __init__(
        self,
        state_manager: ConversationStateManager,
        planner: Planner,
        executor: ToolExecutor,
        clarifications: Optional[ClarificationManager] = None,
        synthesizer: Optional[ResponseSynthesizer] = None,
        config: Optional[OrchestratorConfig] = None,
    ) -> None:
        self._state = state_manager
        self._planner = planner
        self._executor = executor
        self._clarifications = clarifications or ClarificationManager()
        self._synth = synthesizer or ResponseSynthesizer()
        self._config = config or OrchestratorConfig()
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _session_lock(self, session_id: str):
        """Serialize turns per session; the lock is dropped once nobody holds or awaits it."""
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[session_id] - 1
            if remaining:
                self._lock_users[session_id] = remaining
            else:
                del self._lock_users[session_id]
                del self._locks[session_id]

    # ─────────────────────────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────────────────────────

    async def handle_turn(
        self,
        utterance: str,
        session_id: str,
        user_id: str = "anonymous",
    ) -> TurnResult:
        return await self._run_turn(utterance, session_id, user_id, stream=None)

    async def handle_turn_streaming(
        self,
        utterance: str,
        session_id: str,
        on_chunk: ChunkCallback,
        cancel_token: Optional[CancelToken] = None,
        user_id: str = "anonymous",
    ) -> TurnResult:
        """
        Like handle_turn(), but the reply is delivered through on_chunk.

        If cancel_token fires mid-reply, the text emitted so far is recorded
        as the assistant message and the result has cancelled=True.
        """
        return await self._run_turn(utterance, session_id, user_id, stream=_Stream(on_chunk, cancel_token))

    async def reset_session(self, session_id: str) -> None:
        async with self._session_lock(session_id):
            await self._state.clear_state(session_id)

    # ─────────────────────────────────────────────────────────────────────────
    # Turn
    # ─────────────────────────────────────────────────────────────────────────

    async def _run_turn(
        self,
        utterance: str,
        session_id: str,
        user_id: str,
        stream: Optional[_Stream],
    ) -> TurnResult:
        async with self._session_lock(session_id):
            bind_session(session_id, user_id)
            t0 = time.monotonic()
            log.info("orchestrator.turn.start", utterance=utterance[:120])
            try:
                state = await self._state.initialize_state(session_id, user_id)
                await self._state.add_message(session_id, ChatMessage.user(utterance))
                try:
                    result = await self._dispatch(state, utterance, stream)
                except Exception as e:
                    log.error("orchestrator.turn.error", error=str(e), error_type=type(e).__name__, exc_info=True)
                    result = TurnResult(FAILURE_MESSAGE, self._config.failure_confidence)
                    self._emit(stream, result.text)

                await self._state.add_message(
                    session_id, ChatMessage.assistant(result.text, tool_calls=result.tool_calls),
                )
                result.dialogue_state = state.dialogue_state
                log.info(
                    "orchestrator.turn.complete",
                    intent=result.intent.value,
                    confidence=round(result.confidence, 3),
                    tool_calls=len(result.tool_calls),
                    dialogue_state=result.dialogue_state.value,
                    cancelled=result.cancelled,
                    duration_ms=_ms(t0),
                )
                return result
            finally:
                clear_session()

    async def _dispatch(self, state: ConversationState, utterance: str, stream: Optional[_Stream]) -> TurnResult:
        session_id = state.session_id
        context = await self._state.get_context_for_ai(session_id)

        # ── Pending clarification ──────────────────────────────────────────
        pending = state.clarification
        if pending is not None:
            resolution = self._clarifications.resolve(pending, utterance)
            if resolution is not None:
                return await self._run_resolution(state, utterance, pending, resolution, context, stream)

            intent = await self._classify_quietly(utterance, context)
            if intent is None or not (intent.intent == Intent.GREETING or intent.is_action):
                log.info("orchestrator.clarification.mismatch", pending=pending.original_intent_name)
                text = self._clarifications.mismatch_message(pending)
                self._emit(stream, text)
                return TurnResult(text, _MISMATCH_CONFIDENCE, intent=Intent.CLARIFICATION_MISMATCH)

            log.info(
                "orchestrator.clarification.superseded",
                pending=pending.original_intent_name,
                new_intent=intent.intent.value,
            )
            await self._state.clear_clarification(session_id)
            return await self._handle_intent(state, utterance, intent, context, stream)

        # ── Classification ─────────────────────────────────────────────────
        try:
            intent = await self._planner.classify(utterance, context, self._executor.registry.describe_tools())
        except PlanningError as e:
            log.warning("orchestrator.plan_invalid", error=str(e))
            intent = self._planner.default_plan(utterance)
        except CompletionError as e:
            log.error("orchestrator.completion_unavailable", error=str(e), error_type=type(e).__name__)
            self._emit(stream, FAILURE_MESSAGE)
            return TurnResult(FAILURE_MESSAGE, self._config.failure_confidence)

        return await self._handle_intent(state, utterance, intent, context, stream)

    async def _classify_quietly(self, utterance: str, context: str) -> Optional[IntentResult]:
        """Classification used while a question is pending; failure means mismatch."""
        try:
            return await self._planner.classify(utterance, context, self._executor.registry.describe_tools())
        except (PlanningError, CompletionError) as e:
            log.info("orchestrator.clarification.classify_failed", error=str(e), error_type=type(e).__name__)
            return None

    # ─────────────────────────────────────────────────────────────────────────
    # Intent handling
    # ─────────────────────────────────────────────────────────────────────────

    async def _handle_intent(
        self,
        state: ConversationState,
        utterance: str,
        intent: IntentResult,
        context: str,
        stream: Optional[_Stream],
    ) -> TurnResult:
        session_id = state.session_id
        capped = min(intent.confidence, self._config.max_confidence)

        if intent.intent == Intent.GREETING:
            await self._state.clear_clarification(session_id)

        # ── Ambiguous modification → ask ───────────────────────────────────
        rule = self._clarifications.rule_for(intent)
        if rule is not None:
            outcome = await rule.build(state)
            if outcome.context is not None:
                await self._state.set_clarification(session_id, outcome.context)
                log.info("orchestrator.clarification.asked", intent=outcome.intent.value)
            self._emit(stream, outcome.message)
            return TurnResult(outcome.message, capped, intent=outcome.intent)

        # ── Conversational turn ────────────────────────────────────────────
        if not intent.steps:
            text, cancelled = await self._respond(utterance, intent.intent, [], context, stream)
            return TurnResult(text, capped, intent=intent.intent, cancelled=cancelled)

        # ── Plan execution ─────────────────────────────────────────────────
        task, outcomes, tool_calls = await self._run_plan(state, utterance, intent.intent.value, intent.steps, context)
        confidence = self._aggregate(outcomes, intent.confidence)
        text, cancelled = await self._respond(utterance, intent.intent, outcomes, context, stream)
        return TurnResult(
            text,
            confidence,
            tool_calls=tool_calls,
            intent=intent.intent,
            task_id=task.task_id,
            cancelled=cancelled,
        )

    async def _run_resolution(
        self,
        state: ConversationState,
        utterance: str,
        pending: ClarificationContext,
        resolution: Resolution,
        context: str,
        stream: Optional[_Stream],
    ) -> TurnResult:
        log.info("orchestrator.clarification.answered", clarification_choice=resolution.option.value)
        try:
            task, outcomes, tool_calls = await self._run_plan(
                state, utterance, pending.original_intent_name, resolution.steps, context,
            )
        finally:
            await self._state.clear_clarification(state.session_id)

        # The tool's own message is the reply.
        text = self._synth.summarize(Intent.USER_PROVIDED_CLARIFICATION, outcomes)
        self._emit(stream, text)
        return TurnResult(
            text,
            self._aggregate(outcomes, 1.0),
            tool_calls=tool_calls,
            intent=Intent.USER_PROVIDED_CLARIFICATION,
            task_id=task.task_id,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Plan execution
    # ─────────────────────────────────────────────────────────────────────────

    async def _run_plan(
        self,
        state: ConversationState,
        utterance: str,
        task_type: str,
        steps: list[StepSpec],
        context: str,
    ) -> tuple[TaskContext, list[StepOutcome], list[dict[str, Any]]]:
        session_id = state.session_id
        if state.active_task is not None:
            log.warning("orchestrator.stale_task", task_id=state.active_task.task_id)
            await self._state.complete_task(session_id)

        task_id = await self._state.start_task(session_id, task_type, steps)
        task = state.active_task or state.last_task
        assert task is not None and task.task_id == task_id

        outcomes: list[StepOutcome] = []
        tool_calls: list[dict[str, Any]] = []
        succeeded: set[str] = set()
        previous: dict[str, Any] = {}

        for spec, step in zip(steps, list(task.steps)):
            failed_deps = [d for d in spec.dependencies if d not in succeeded]
            if failed_deps:
                log.info("orchestrator.step.skipped", step=spec.name, failed_dependencies=failed_deps)
                await self._state.update_task_step(
                    session_id, step.step_id,
                    StepPatch(status=StepStatus.SKIPPED, error=f"dependency failed: {', '.join(failed_deps)}"),
                )
                outcomes.append(StepOutcome(spec.name, StepStatus.SKIPPED))
                continue

            await self._state.update_task_step(session_id, step.step_id, StepPatch(status=StepStatus.IN_PROGRESS))
            results: list[ToolResult] = []
            for tool_name in spec.tools:
                tool_ctx = ToolExecutionContext(
                    session_id=session_id,
                    user_id=state.user_id,
                    utterance=utterance,
                    task_id=task_id,
                    step_id=step.step_id,
                    conversation_context=context,
                    previous_results=dict(previous),
                )
                params = spec.parameters.get(tool_name) or {}
                result = await self._call_tool(tool_name, params, tool_ctx)
                results.append(result)
                tool_calls.append({"step": spec.name, "params": params, **result.to_dict()})
                if not result.success:
                    break

            ok = all(r.success for r in results)
            error = next((r.error.message for r in results if r.error is not None), None)
            outcome = StepOutcome(spec.name, StepStatus.COMPLETED if ok else StepStatus.FAILED, results, error)
            await self._state.update_task_step(
                session_id, step.step_id,
                StepPatch(status=outcome.status, output=outcome.output if ok else None, error=error),
            )
            outcomes.append(outcome)
            if ok:
                succeeded.add(spec.name)
                previous[spec.name] = outcome.output
            else:
                log.info("orchestrator.step.failed", step=spec.name, error=error)

        return task, outcomes, tool_calls

    async def _call_tool(self, name: str, params: dict[str, Any], ctx: ToolExecutionContext) -> ToolResult:
        try:
            return await self._executor.execute_tool(name, params, ctx)
        except ToolNotFoundError as e:
            log.error("orchestrator.tool_not_found", tool=name)
            return ToolResult.fail(name, ToolErrorKind.NOT_FOUND, str(e), error_type=type(e).__name__)
        except CircuitOpenError as e:
            return ToolResult.fail(name, ToolErrorKind.CIRCUIT_OPEN, str(e), error_type=type(e).__name__)

    def _aggregate(self, outcomes: list[StepOutcome], intent_confidence: float) -> float:
        """(mean confidence of successful steps) × (success rate), capped."""
        if not outcomes:
            return min(intent_confidence, self._config.max_confidence)
        succeeded = [o for o in outcomes if o.succeeded]
        if not succeeded:
            return self._config.no_success_confidence
        # A step without tools has no result to score; it inherits the intent's.
        scores = [o.confidence if o.results else intent_confidence for o in succeeded]
        mean = sum(scores) / len(scores)
        rate = len(succeeded) / len(outcomes)
        return round(min(mean * rate, self._config.max_confidence), 4)

    # ─────────────────────────────────────────────────────────────────────────
    # Output
    # ─────────────────────────────────────────────────────────────────────────

    async def _respond(
        self,
        utterance: str,
        intent: Intent,
        outcomes: list[StepOutcome],
        context: str,
        stream: Optional[_Stream],
    ) -> tuple[str, bool]:
        if stream is None:
            return await self._synth.synthesize(utterance, intent, outcomes, context), False
        try:
            text = await self._synth.synthesize_streaming(
                utterance, intent, outcomes, stream.on_chunk, context, stream.cancel_token,
            )
        except CompletionCancelledError as e:
            log.info("orchestrator.stream.cancelled", chars=len(e.partial_text))
            return e.partial_text, True
        return text, False

    @staticmethod
    def _emit(stream: Optional[_Stream], text: str) -> None:
        if stream is not None:
            stream.on_chunk(text)
