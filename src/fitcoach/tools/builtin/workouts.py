"""
tools/builtin/workouts.py — Workout Tools

create_workout, modify_workout and save_workout operate on Workout records
held by a WorkoutRepository. The repository also tracks each session's
active workout, which is what "double it" style follow-ups refer to.

Exercise names are resolved through the ExerciseMatcher, so a workout only
ever contains catalog exercises.

Usage:
    repo = WorkoutRepository()
    registry.register_tool(create_workout_tool(repo, matcher))
    registry.register_tool(modify_workout_tool(repo))
    registry.register_tool(save_workout_tool(repo))
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from typing import Awaitable, Callable, Literal, Optional

from pydantic import BaseModel, Field

from fitcoach.exceptions import ValidationError
from fitcoach.matching.matcher import ExerciseMatch, ExerciseMatcher, MatchType, SearchOptions
from fitcoach.memory.types import utcnow
from fitcoach.observability.logger import get_logger
from fitcoach.tools.types import ToolDefinition, ToolExecutionContext, ToolParams

log = get_logger(__name__)

Modification = Literal["DOUBLE_SETS", "DOUBLE_REPS", "DOUBLE_BOTH"]

ActiveWorkoutHook = Callable[[str, "Workout"], Awaitable[None]]

_GOAL_FOCUS = {
    "strength": "barbell",
    "muscle_gain": "dumbbell",
    "hypertrophy": "dumbbell",
    "weight_loss": "full body",
    "endurance": "bodyweight",
    "general_fitness": "full body",
}


# ─────────────────────────────────────────────────────────────────────────────
# Models
# ─────────────────────────────────────────────────────────────────────────────


class WorkoutExercise(BaseModel):
    exercise_id: str
    name: str
    sets: int = Field(default=3, ge=1)
    reps: int = Field(default=10, ge=1)
    rest_seconds: int = 60


class Workout(BaseModel):
    workout_id: str
    user_id: str
    title: str
    exercises: list[WorkoutExercise] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    saved: bool = False
    modifications: list[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.exercises


def apply_modification(workout: Workout, modification: Modification) -> Workout:
    """Return a modified copy; the input is left untouched."""
    updated = workout.model_copy(deep=True)
    for ex in updated.exercises:
        if modification in ("DOUBLE_SETS", "DOUBLE_BOTH"):
            ex.sets *= 2
        if modification in ("DOUBLE_REPS", "DOUBLE_BOTH"):
            ex.reps *= 2
    updated.modifications.append(modification)
    return updated


# ─────────────────────────────────────────────────────────────────────────────
# Repository
# ─────────────────────────────────────────────────────────────────────────────


class WorkoutRepository:
    """In-memory workout storage with a per-session active workout."""

    def __init__(self) -> None:
        self._workouts: dict[str, Workout] = {}
        self._active: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def add(self, session_id: str, workout: Workout) -> None:
        async with self._lock:
            self._workouts[workout.workout_id] = workout.model_copy(deep=True)
            self._active[session_id] = workout.workout_id

    async def update(self, workout: Workout) -> None:
        async with self._lock:
            if workout.workout_id not in self._workouts:
                raise KeyError(workout.workout_id)
            self._workouts[workout.workout_id] = workout.model_copy(deep=True)

    async def get(self, workout_id: str) -> Optional[Workout]:
        async with self._lock:
            w = self._workouts.get(workout_id)
            return w.model_copy(deep=True) if w else None

    async def get_active(self, session_id: str) -> Optional[Workout]:
        async with self._lock:
            workout_id = self._active.get(session_id)
            w = self._workouts.get(workout_id) if workout_id else None
            return w.model_copy(deep=True) if w else None

    async def set_active(self, session_id: str, workout_id: str) -> None:
        async with self._lock:
            if workout_id not in self._workouts:
                raise KeyError(workout_id)
            self._active[session_id] = workout_id

    async def list_for_user(self, user_id: str) -> list[Workout]:
        async with self._lock:
            return [w.model_copy(deep=True) for w in self._workouts.values() if w.user_id == user_id]

    async def resolve(self, session_id: str, workout_id: Optional[str]) -> Workout:
        """Explicit id if given, else the session's active workout. Raises ValidationError."""
        workout = await (self.get(workout_id) if workout_id else self.get_active(session_id))
        if workout is None:
            if workout_id:
                raise ValidationError(f"Workout '{workout_id}' does not exist", field="workout_id")
            raise ValidationError("There is no active workout for this session", field="workout_id")
        return workout

    def __len__(self) -> int:
        return len(self._workouts)


# ─────────────────────────────────────────────────────────────────────────────
# create_workout
# ─────────────────────────────────────────────────────────────────────────────


class CreateWorkoutParams(ToolParams):
    goal: str = "general_fitness"
    focus: Optional[str] = None
    equipment: list[str] = Field(default_factory=list)
    exercises: list[str] = Field(default_factory=list)
    exercise_count: int = Field(default=4, ge=1, le=10)
    sets: int = Field(default=3, ge=1, le=20)
    reps: int = Field(default=10, ge=1, le=100)
    title: Optional[str] = None


def _pick_exercises(
    matcher: ExerciseMatcher,
    params: CreateWorkoutParams,
    options: SearchOptions,
) -> list[ExerciseMatch]:
    if params.exercises:
        picked: list[ExerciseMatch] = []
        for name in params.exercises:
            match = matcher.find_best_match(name, options) or matcher.fallback_match(name, options)
            if match is None:
                log.info("workout.exercise_unresolved", name=name)
                continue
            if all(m.exercise.id != match.exercise.id for m in picked):
                picked.append(match)
        return picked

    query = params.focus or _GOAL_FOCUS.get(params.goal, params.goal.replace("_", " "))
    picked = matcher.find_multiple_matches(query, limit=params.exercise_count, options=options)
    if len(picked) < params.exercise_count:
        # Top up from the catalog in order so short queries still fill the plan.
        taken = {m.exercise.id for m in picked}
        for record in matcher.catalog:
            if len(picked) >= params.exercise_count:
                break
            if record.id in taken:
                continue
            if options.equipment and record.uses_equipment and record.equipment.lower() not in options.equipment:
                continue
            picked.append(ExerciseMatch(
                record,
                matcher.config.default_fallback_confidence,
                MatchType.FALLBACK,
                f"Catalog fill for '{query}'",
            ))
            taken.add(record.id)
    return picked


def create_workout_tool(
    repository: WorkoutRepository,
    matcher: ExerciseMatcher,
    on_active_workout: Optional[ActiveWorkoutHook] = None,
) -> ToolDefinition:

    async def execute(params: CreateWorkoutParams, ctx: ToolExecutionContext) -> dict:
        options = SearchOptions.build(equipment=params.equipment or None)
        picked = _pick_exercises(matcher, params, options)
        if not picked:
            raise ValidationError("None of the requested exercises could be found", field="exercises")

        title = params.title or f"{(params.focus or params.goal).replace('_', ' ').title()} Workout"
        workout = Workout(
            workout_id=f"workout_{uuid.uuid4().hex[:10]}",
            user_id=ctx.user_id,
            title=title,
            exercises=[
                WorkoutExercise(exercise_id=m.exercise.id, name=m.exercise.name, sets=params.sets, reps=params.reps)
                for m in picked
            ],
        )
        await repository.add(ctx.session_id, workout)
        if on_active_workout is not None:
            await on_active_workout(ctx.session_id, workout)
        log.info("workout.created", workout_id=workout.workout_id, exercises=len(workout.exercises))

        data: dict = {
            "message": f"Created '{title}' with {len(workout.exercises)} exercises",
            "workout": workout.model_dump(mode="json"),
        }
        if params.exercises:
            data["confidence"] = round(sum(m.confidence for m in picked) / len(picked), 4)
        return data

    return ToolDefinition(
        name="create_workout",
        description="Create a workout from a goal, a focus area and/or named exercises, and make it the active workout.",
        execute=execute,
        params_model=CreateWorkoutParams,
    )


# ─────────────────────────────────────────────────────────────────────────────
# modify_workout / save_workout
# ─────────────────────────────────────────────────────────────────────────────


class ModifyWorkoutParams(ToolParams):
    modification: Modification
    workout_id: Optional[str] = None


def modify_workout_tool(repository: WorkoutRepository) -> ToolDefinition:

    async def execute(params: ModifyWorkoutParams, ctx: ToolExecutionContext) -> dict:
        workout = await repository.resolve(ctx.session_id, params.workout_id)
        if workout.is_empty:
            raise ValidationError("The workout has no exercises to modify", field="workout_id")
        updated = apply_modification(workout, params.modification)
        await repository.update(updated)
        log.info("workout.modified", workout_id=updated.workout_id, modification=params.modification)
        return {
            "message": f"Workout modified successfully: {params.modification}",
            "workout": updated.model_dump(mode="json"),
        }

    return ToolDefinition(
        name="modify_workout",
        description="Double the sets, the reps, or both for every exercise of a workout (defaults to the active one).",
        execute=execute,
        params_model=ModifyWorkoutParams,
    )


class SaveWorkoutParams(ToolParams):
    workout_id: Optional[str] = None


def save_workout_tool(repository: WorkoutRepository) -> ToolDefinition:

    async def execute(params: SaveWorkoutParams, ctx: ToolExecutionContext) -> dict:
        workout = await repository.resolve(ctx.session_id, params.workout_id)
        workout.saved = True
        await repository.update(workout)
        log.info("workout.saved", workout_id=workout.workout_id)
        return {
            "message": f"Saved '{workout.title}'",
            "workout_id": workout.workout_id,
        }

    return ToolDefinition(
        name="save_workout",
        description="Save a workout (defaults to the active one) to the user's library.",
        execute=execute,
        params_model=SaveWorkoutParams,
    )
