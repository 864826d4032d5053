"""
agent/planner.py — Intent Classifier + Step Planner

One completion call per turn: the model classifies the utterance and, for
action intents, proposes an ordered step plan where every step names the
tools it needs and the earlier steps it depends on.

Unparsable output raises PlanningError; the orchestrator then asks
default_plan() for a conservative fallback instead of failing the turn.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import ValidationError as PydanticValidationError

from fitcoach.brain.completion import BaseCompletionClient
from fitcoach.exceptions import PlanningError
from fitcoach.memory.types import StepSpec
from fitcoach.observability.logger import get_logger

log = get_logger(__name__)


class Intent(str, Enum):
    GREETING = "GREETING"
    CREATE_WORKOUT = "CREATE_WORKOUT"
    FIND_EXERCISE = "FIND_EXERCISE"
    SEARCH_EXERCISES = "SEARCH_EXERCISES"
    MODIFY_WORKOUT = "MODIFY_WORKOUT"
    SAVE_WORKOUT = "SAVE_WORKOUT"
    GENERAL_QUESTION = "GENERAL_QUESTION"
    UNKNOWN = "UNKNOWN"
    # Dialogue-machine outcomes; never produced by the classifier.
    USER_PROVIDED_CLARIFICATION = "USER_PROVIDED_CLARIFICATION"
    CLARIFICATION_MISMATCH = "CLARIFICATION_MISMATCH"
    CANNOT_DOUBLE_NO_WORKOUT = "CANNOT_DOUBLE_NO_WORKOUT"


ACTION_INTENTS = frozenset({
    Intent.CREATE_WORKOUT,
    Intent.FIND_EXERCISE,
    Intent.SEARCH_EXERCISES,
    Intent.MODIFY_WORKOUT,
    Intent.SAVE_WORKOUT,
})

_CLASSIFIABLE = [i for i in Intent if i not in {
    Intent.USER_PROVIDED_CLARIFICATION,
    Intent.CLARIFICATION_MISMATCH,
    Intent.CANNOT_DOUBLE_NO_WORKOUT,
}]


_PLAN_PROMPT = """\
You are the planning component of a fitness coaching assistant.
Classify the user's message and, for action intents, plan the tool calls.
Return ONLY valid JSON — no markdown fences, no explanation.

Intents: {intents}

Available tools:
{tools}

Conversation context:
{context}

User message: {utterance}

Required format:
{{"intent": "<one of the intents>",
  "confidence": 0.0-1.0,
  "slots": {{"exercise": "...", "modification": "DOUBLE | DOUBLE_SETS | DOUBLE_REPS | DOUBLE_BOTH", ...}},
  "steps": [{{"name": "short_id", "description": "...", "tools": ["tool_name"],
             "dependencies": ["earlier_step_name"],
             "parameters": {{"tool_name": {{...tool parameters...}}}}}}]}}
Conversational intents (GREETING, GENERAL_QUESTION, UNKNOWN) use "steps": []."""


@dataclass
class IntentResult:
    intent: Intent
    confidence: float = 0.0
    slots: dict[str, Any] = field(default_factory=dict)
    steps: list[StepSpec] = field(default_factory=list)
    raw: str = ""

    @property
    def is_action(self) -> bool:
        return self.intent in ACTION_INTENTS

    def __repr__(self) -> str:
        return f"<IntentResult {self.intent.value} conf={self.confidence:.2f} steps={len(self.steps)}>"


# A route turns a classified intent into the single step used when the model
# named an action intent but gave no usable steps.
RouteFn = Callable[[IntentResult, str], StepSpec]


class Planner:
    """Asks the completion service for intent + plan and parses the answer."""

    def __init__(
        self,
        completion: BaseCompletionClient,
        routes: Optional[dict[Intent, RouteFn]] = None,
    ) -> None:
        self._completion = completion
        self._routes = dict(routes or {})

    async def classify(
        self,
        utterance: str,
        context: str = "",
        tools: Optional[list[dict[str, Any]]] = None,
    ) -> IntentResult:
        """
        Classify and plan. CompletionError propagates (service unreachable);
        PlanningError means the service answered with something unusable.
        """
        prompt = _PLAN_PROMPT.format(
            intents=", ".join(i.value for i in _CLASSIFIABLE),
            tools=_format_tools(tools or []),
            context=context or "(none)",
            utterance=utterance,
        )
        raw = await self._completion.complete(prompt)
        result = self.parse(raw, utterance)
        log.info(
            "planner.classified",
            intent=result.intent.value,
            confidence=round(result.confidence, 3),
            steps=len(result.steps),
        )
        return result

    def parse(self, raw: str, utterance: str = "") -> IntentResult:
        content = _strip_fences(raw)
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            log.warning("planner.parse_failed", error=str(e), raw=content[:200])
            raise PlanningError(f"Plan is not valid JSON: {e}", raw=raw) from e
        if not isinstance(data, dict):
            raise PlanningError("Plan JSON must be an object", raw=raw)

        try:
            intent = Intent(str(data.get("intent", "UNKNOWN")).upper())
        except ValueError:
            intent = Intent.UNKNOWN
        if intent not in _CLASSIFIABLE:
            intent = Intent.UNKNOWN

        try:
            confidence = float(data.get("confidence", 0.5))
        except (TypeError, ValueError):
            confidence = 0.5
        confidence = min(1.0, max(0.0, confidence))

        slots = data.get("slots") or {}
        if not isinstance(slots, dict):
            slots = {}

        result = IntentResult(intent=intent, confidence=confidence, slots=slots, raw=raw)
        if result.is_action:
            try:
                result.steps = _parse_steps(data.get("steps"))
            except (PydanticValidationError, ValueError) as e:
                log.warning("planner.steps_invalid", intent=intent.value, error=str(e))
                result.steps = []
            if not result.steps:
                result.steps = self._route(result, utterance)
            else:
                self._fill_parameters(result, utterance)
        return result

    def _route(self, result: IntentResult, utterance: str) -> list[StepSpec]:
        route = self._routes.get(result.intent)
        if route is None:
            return []
        return [route(result, utterance)]

    def _fill_parameters(self, result: IntentResult, utterance: str) -> None:
        """Tools a step names without parameters take them from the routes."""
        for step in result.steps:
            for tool in step.tools:
                if step.parameters.get(tool):
                    continue
                params = self._route_parameters(tool, result, utterance)
                if params is not None:
                    step.parameters[tool] = params
                    log.debug("planner.parameters_filled", step=step.name, tool=tool)

    def _route_parameters(
        self, tool: str, result: IntentResult, utterance: str
    ) -> Optional[dict[str, Any]]:
        # The intent's own route first, then any route that calls the tool.
        routes = [self._routes[result.intent]] if result.intent in self._routes else []
        routes += [r for i, r in self._routes.items() if i != result.intent]
        for route in routes:
            spec = route(result, utterance)
            if tool in spec.tools:
                return dict(spec.parameters.get(tool) or {})
        return None

    def default_plan(self, utterance: str) -> IntentResult:
        """Conservative plan used after PlanningError: answer, run nothing."""
        return IntentResult(
            intent=Intent.UNKNOWN,
            confidence=0.3,
            steps=[StepSpec(name="respond", description="Reply without tools")],
        )


def _parse_steps(raw_steps: Any) -> list[StepSpec]:
    if raw_steps is None:
        return []
    if not isinstance(raw_steps, list):
        raise ValueError("steps must be a list")
    steps = [StepSpec.model_validate(s) for s in raw_steps]
    names = [s.name for s in steps]
    if len(set(names)) != len(names):
        raise ValueError(f"duplicate step names: {names}")
    seen: set[str] = set()
    for s in steps:
        unknown = [d for d in s.dependencies if d not in seen]
        if unknown:
            raise ValueError(f"step '{s.name}' depends on unknown or later steps {unknown}")
        seen.add(s.name)
    return steps


def _format_tools(tools: list[dict[str, Any]]) -> str:
    if not tools:
        return "(none)"
    lines = []
    for t in tools:
        props = t.get("parameters", {}).get("properties", {})
        args = ", ".join(k for k in props if k != "tool")
        lines.append(f"- {t['name']}({args}): {t.get('description', '')}")
    return "\n".join(lines)


def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        lines = text.splitlines()
        end = len(lines) - 1 if lines[-1].strip() == "```" else len(lines)
        text = "\n".join(lines[1:end])
    return text.strip()
