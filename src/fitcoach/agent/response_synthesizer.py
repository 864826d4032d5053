"""
agent/response_synthesizer.py — Response Synthesizer

Turns a turn's step outcomes into the assistant's reply. The completion
service phrases the reply from concrete step outputs; if it is unavailable
a deterministic summary built from the same outputs is used instead, so a
turn whose tools succeeded never fails because of the phrasing call.

Internal error strings are never placed in user-visible text.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional

from fitcoach.agent.planner import Intent
from fitcoach.brain.completion import BaseCompletionClient, CancelToken, ChunkCallback
from fitcoach.exceptions import CompletionCancelledError, CompletionError
from fitcoach.memory.types import StepStatus
from fitcoach.observability.logger import get_logger
from fitcoach.tools.types import ToolResult

log = get_logger(__name__)

FAILURE_MESSAGE = "I'm sorry, I'm having trouble right now. Please try again in a moment."

_CONVERSATIONAL_FALLBACK = {
    Intent.GREETING: (
        "Hi! I can build workouts, look up exercises and adjust your plan. "
        "What would you like to do?"
    ),
    Intent.GENERAL_QUESTION: (
        "I can't answer that right now, but I can build a workout or look up "
        "an exercise for you."
    ),
    Intent.UNKNOWN: (
        "I'm not sure what you'd like me to do. Try asking me to create a "
        "workout or find an exercise."
    ),
}

_REPLY_PROMPT = """\
You are a friendly, concise fitness coach.
Reply to the user's latest message using ONLY the facts in the step results.
Never mention tools, steps, JSON or internal errors. Plain text, no markdown headings.

Conversation context:
{context}

User message: {utterance}
Intent: {intent}

Step results:
{results}"""

_MAX_RESULT_CHARS = 1500


@dataclass
class StepOutcome:
    """What happened to one plan step during a turn."""
    name: str
    status: StepStatus
    results: list[ToolResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == StepStatus.COMPLETED

    @property
    def confidence(self) -> float:
        if not self.results:
            return 1.0 if self.succeeded else 0.0
        return min(r.confidence for r in self.results)

    @property
    def output(self) -> Any:
        """Single tool → its data; several tools → list of data."""
        data = [r.data for r in self.results if r.success]
        if len(self.results) == 1:
            return data[0] if data else None
        return data


class ResponseSynthesizer:

    def __init__(
        self,
        completion: Optional[BaseCompletionClient] = None,
        use_completion: bool = True,
    ) -> None:
        self._completion = completion
        self._use_completion = use_completion and completion is not None

    async def synthesize(
        self,
        utterance: str,
        intent: Intent,
        outcomes: list[StepOutcome],
        context: str = "",
    ) -> str:
        if not self._use_completion:
            return self.summarize(intent, outcomes)
        assert self._completion is not None
        try:
            text = (await self._completion.complete(self._prompt(utterance, intent, outcomes, context))).strip()
        except CompletionError as e:
            log.warning("synth.completion_failed", error=str(e), error_type=type(e).__name__)
            return self.summarize(intent, outcomes)
        return text or self.summarize(intent, outcomes)

    async def synthesize_streaming(
        self,
        utterance: str,
        intent: Intent,
        outcomes: list[StepOutcome],
        on_chunk: ChunkCallback,
        context: str = "",
        cancel_token: Optional[CancelToken] = None,
    ) -> str:
        """
        Stream the reply. CompletionCancelledError propagates (carrying the
        partial text); any other completion failure emits the summary as a
        single chunk.
        """
        if self._use_completion:
            assert self._completion is not None
            try:
                text = await self._completion.complete_streaming(
                    self._prompt(utterance, intent, outcomes, context), on_chunk, cancel_token,
                )
            except CompletionCancelledError:
                raise
            except CompletionError as e:
                log.warning("synth.stream_failed", error=str(e), error_type=type(e).__name__)
            else:
                if text.strip():
                    return text
        summary = self.summarize(intent, outcomes)
        on_chunk(summary)
        return summary

    # ── Deterministic summary ─────────────────────────────────────────────────

    def summarize(self, intent: Intent, outcomes: list[StepOutcome]) -> str:
        tool_outcomes = [o for o in outcomes if o.results or o.status != StepStatus.COMPLETED]
        if not tool_outcomes:
            return _CONVERSATIONAL_FALLBACK.get(intent, _CONVERSATIONAL_FALLBACK[Intent.UNKNOWN])

        lines: list[str] = []
        for o in tool_outcomes:
            if o.status == StepStatus.COMPLETED:
                lines.extend(_messages(o))
            elif o.status == StepStatus.SKIPPED:
                lines.append(f"I skipped '{_label(o.name)}' because an earlier step didn't work out.")
            else:
                lines.append(f"I couldn't complete '{_label(o.name)}' right now.")
        return "\n".join(lines) if lines else FAILURE_MESSAGE

    def _prompt(self, utterance: str, intent: Intent, outcomes: list[StepOutcome], context: str) -> str:
        rendered = [
            {"step": o.name, "status": o.status.value, "output": o.output if o.succeeded else None}
            for o in outcomes
        ]
        results = json.dumps(rendered, default=str, ensure_ascii=False)
        if len(results) > _MAX_RESULT_CHARS:
            results = results[:_MAX_RESULT_CHARS] + "…"
        return _REPLY_PROMPT.format(
            context=context or "(none)",
            utterance=utterance,
            intent=intent.value,
            results=results or "[]",
        )


def _messages(outcome: StepOutcome) -> list[str]:
    out = []
    for r in outcome.results:
        if r.success and isinstance(r.data, dict) and r.data.get("message"):
            out.append(str(r.data["message"]))
    return out or [f"Done: {_label(outcome.name)}."]


def _label(name: str) -> str:
    return name.replace("_", " ")
