"""
tools/builtin/ — Workout & exercise tools

Public API:
    from fitcoach.tools.builtin import register_builtin_tools, WorkoutRepository

    register_builtin_tools(registry, matcher, repository, on_active_workout=hook)

Tools:
    find_exercise      single best catalog match (fallback exercise if none)
    search_exercises   ranked multi-match
    create_workout     build a workout and make it the session's active one
    modify_workout     DOUBLE_SETS | DOUBLE_REPS | DOUBLE_BOTH
    save_workout       mark a workout saved
"""

from __future__ import annotations

from typing import Optional

from fitcoach.matching.matcher import ExerciseMatcher
from fitcoach.tools.builtin.clarifications import DoubleWorkoutRule
from fitcoach.tools.builtin.exercises import find_exercise_tool, search_exercises_tool
from fitcoach.tools.builtin.workouts import (
    ActiveWorkoutHook,
    Workout,
    WorkoutExercise,
    WorkoutRepository,
    apply_modification,
    create_workout_tool,
    modify_workout_tool,
    save_workout_tool,
)
from fitcoach.tools.registry import ToolRegistry

BUILTIN_TOOL_NAMES = (
    "find_exercise",
    "search_exercises",
    "create_workout",
    "modify_workout",
    "save_workout",
)


def register_builtin_tools(
    registry: ToolRegistry,
    matcher: ExerciseMatcher,
    repository: WorkoutRepository,
    on_active_workout: Optional[ActiveWorkoutHook] = None,
) -> None:
    registry.register_tool(find_exercise_tool(matcher))
    registry.register_tool(search_exercises_tool(matcher))
    registry.register_tool(create_workout_tool(repository, matcher, on_active_workout))
    registry.register_tool(modify_workout_tool(repository))
    registry.register_tool(save_workout_tool(repository))


__all__ = [
    "BUILTIN_TOOL_NAMES",
    "register_builtin_tools",
    "DoubleWorkoutRule",
    "Workout",
    "WorkoutExercise",
    "WorkoutRepository",
    "apply_modification",
    "find_exercise_tool",
    "search_exercises_tool",
    "create_workout_tool",
    "modify_workout_tool",
    "save_workout_tool",
]
