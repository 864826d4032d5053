"""
agent/routes.py — Default intent → step routes

Used when the completion service names an action intent but proposes no
usable steps. Each route builds one step calling the intent's canonical tool
with parameters taken from the classifier's slots (or the raw utterance).

Tools are referenced by name only; kernel.bootstrap decides which routes to
install alongside which tools.
"""

from __future__ import annotations

from typing import Any

from fitcoach.agent.planner import Intent, IntentResult, RouteFn
from fitcoach.memory.types import StepSpec

_CREATE_WORKOUT_SLOTS = ("goal", "focus", "equipment", "exercises", "exercise_count", "sets", "reps", "title")
_LIST_SLOTS = {"equipment", "exercises"}


def _as_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return []


def _single(tool: str, params: dict[str, Any], description: str = "") -> StepSpec:
    return StepSpec(name=tool, description=description, tools=[tool], parameters={tool: params})


def create_workout_route(result: IntentResult, utterance: str) -> StepSpec:
    params: dict[str, Any] = {}
    for key in _CREATE_WORKOUT_SLOTS:
        value = result.slots.get(key)
        if value in (None, "", []):
            continue
        params[key] = _as_list(value) if key in _LIST_SLOTS else value
    return _single("create_workout", params, "Build the requested workout")


def find_exercise_route(result: IntentResult, utterance: str) -> StepSpec:
    name = result.slots.get("exercise") or result.slots.get("name") or utterance
    return _single("find_exercise", {"name": str(name)}, "Look up the exercise")


def search_exercises_route(result: IntentResult, utterance: str) -> StepSpec:
    query = result.slots.get("query") or result.slots.get("muscle_group") or utterance
    params: dict[str, Any] = {"query": str(query)}
    if result.slots.get("equipment"):
        params["equipment"] = _as_list(result.slots["equipment"])
    return _single("search_exercises", params, "Search the exercise catalog")


def modify_workout_route(result: IntentResult, utterance: str) -> StepSpec:
    params: dict[str, Any] = {}
    if result.slots.get("modification"):
        params["modification"] = str(result.slots["modification"]).upper()
    if result.slots.get("workout_id"):
        params["workout_id"] = result.slots["workout_id"]
    return _single("modify_workout", params, "Modify the active workout")


def save_workout_route(result: IntentResult, utterance: str) -> StepSpec:
    params: dict[str, Any] = {}
    if result.slots.get("workout_id"):
        params["workout_id"] = result.slots["workout_id"]
    return _single("save_workout", params, "Save the workout")


def default_routes() -> dict[Intent, RouteFn]:
    return {
        Intent.CREATE_WORKOUT: create_workout_route,
        Intent.FIND_EXERCISE: find_exercise_route,
        Intent.SEARCH_EXERCISES: search_exercises_route,
        Intent.MODIFY_WORKOUT: modify_workout_route,
        Intent.SAVE_WORKOUT: save_workout_route,
    }
