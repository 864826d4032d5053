"""
tools/builtin/clarifications.py — Clarification rules for the workout tools

DoubleWorkoutRule catches "double it" style requests: MODIFY_WORKOUT with no
concrete modification. It asks which quantity to double, or refuses when
the session has no active workout with exercises.
"""

from __future__ import annotations

from typing import Any

from fitcoach.agent.clarification import ClarificationOutcome, ClarificationRule
from fitcoach.agent.planner import Intent, IntentResult
from fitcoach.memory.types import ClarificationContext, ClarificationOption, ConversationState, StepSpec
from fitcoach.tools.builtin.workouts import WorkoutRepository

DOUBLE_QUESTION = "How would you like me to double your workout? You can:"
NO_WORKOUT_MESSAGE = (
    "It looks like there's no active workout to double. "
    "Would you like me to create one first?"
)
DOUBLE_OPTIONS = (
    ClarificationOption(label="Double the sets", value="DOUBLE_SETS"),
    ClarificationOption(label="Double the reps", value="DOUBLE_REPS"),
    ClarificationOption(label="Double both sets and reps", value="DOUBLE_BOTH"),
)
_CONCRETE = frozenset(opt.value for opt in DOUBLE_OPTIONS)


def _planned_modification(result: IntentResult) -> Any:
    for step in result.steps:
        params = step.parameters.get("modify_workout")
        if isinstance(params, dict) and params.get("modification"):
            return params["modification"]
    return result.slots.get("modification")


class DoubleWorkoutRule(ClarificationRule):

    intent = Intent.MODIFY_WORKOUT

    def __init__(self, repository: WorkoutRepository) -> None:
        self._repository = repository

    def applies(self, result: IntentResult) -> bool:
        modification = _planned_modification(result)
        return str(modification or "").upper() not in _CONCRETE

    async def build(self, state: ConversationState) -> ClarificationOutcome:
        workout = await self._repository.get_active(state.session_id)
        if workout is None and state.workout_context.active_workout_id:
            workout = await self._repository.get(state.workout_context.active_workout_id)
        if workout is None or workout.is_empty:
            return ClarificationOutcome.refuse(Intent.CANNOT_DOUBLE_NO_WORKOUT, NO_WORKOUT_MESSAGE)

        return ClarificationOutcome.ask(ClarificationContext(
            original_intent_name=self.intent.value,
            clarification_question=DOUBLE_QUESTION,
            options=[opt.model_copy() for opt in DOUBLE_OPTIONS],
            related_data={"workout_id": workout.workout_id, "workout_title": workout.title},
        ))

    def resolve_plan(self, context: ClarificationContext, option: ClarificationOption) -> list[StepSpec]:
        return [StepSpec(
            name="modify_workout",
            description=option.label,
            tools=["modify_workout"],
            parameters={"modify_workout": {
                "workout_id": context.related_data.get("workout_id"),
                "modification": option.value,
            }},
        )]
