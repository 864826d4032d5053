"""
tools/builtin/exercises.py — Exercise Lookup Tools

find_exercise resolves one free-text name to a catalog record; when no
strategy clears the confidence floor it degrades to the matcher's fallback
exercise instead of failing. search_exercises returns a ranked list.
"""

from __future__ import annotations

from typing import Optional

from pydantic import Field

from fitcoach.exceptions import MatchNotFoundError, ValidationError
from fitcoach.matching.matcher import ExerciseMatcher, SearchOptions
from fitcoach.observability.logger import get_logger
from fitcoach.tools.types import ToolDefinition, ToolExecutionContext, ToolParams

log = get_logger(__name__)


class FindExerciseParams(ToolParams):
    name: str
    equipment: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)
    min_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class SearchExercisesParams(ToolParams):
    query: str
    limit: int = Field(default=5, ge=1, le=20)
    equipment: list[str] = Field(default_factory=list)
    muscle_groups: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)


def _require_text(value: str, field: str) -> None:
    if not value.strip():
        raise ValidationError(f"'{field}' must not be empty", field=field)


def find_exercise_tool(matcher: ExerciseMatcher) -> ToolDefinition:

    def validate(params: FindExerciseParams, ctx: ToolExecutionContext) -> None:
        _require_text(params.name, "name")

    async def execute(params: FindExerciseParams, ctx: ToolExecutionContext) -> dict:
        options = SearchOptions.build(
            equipment=params.equipment or None,
            exclude_names=params.exclude or None,
            min_confidence=params.min_confidence,
        )
        try:
            match = matcher.require_match(params.name, options)
        except MatchNotFoundError as e:
            log.info("exercise.no_confident_match", query=params.name, floor=e.min_confidence)
            fallback = matcher.fallback_match(params.name, options)
            suggestions = matcher.get_suggestions(params.name)
            if fallback is None:
                return {
                    "found": False,
                    "message": f"I couldn't find an exercise called '{params.name}'",
                    "suggestions": suggestions,
                    "confidence": 0.0,
                }
            match = fallback
        else:
            suggestions = [n for n in matcher.get_suggestions(params.name) if n != match.exercise.name]

        return {
            "found": True,
            "message": f"{match.exercise.name} ({match.match_type.value} match)",
            "exercise": match.to_dict(),
            "suggestions": suggestions,
            "confidence": match.confidence,
        }

    return ToolDefinition(
        name="find_exercise",
        description="Find the catalog exercise that best matches a (possibly misspelled) name.",
        execute=execute,
        params_model=FindExerciseParams,
        validate=validate,
    )


def search_exercises_tool(matcher: ExerciseMatcher) -> ToolDefinition:

    def validate(params: SearchExercisesParams, ctx: ToolExecutionContext) -> None:
        _require_text(params.query, "query")

    async def execute(params: SearchExercisesParams, ctx: ToolExecutionContext) -> dict:
        options = SearchOptions.build(
            equipment=params.equipment or None,
            exclude_names=params.exclude or None,
            muscle_groups=params.muscle_groups or None,
        )
        matches = matcher.find_multiple_matches(params.query, limit=params.limit, options=options)
        data: dict = {
            "message": f"Found {len(matches)} exercises for '{params.query}'",
            "results": [m.to_dict() for m in matches],
        }
        if matches:
            data["confidence"] = matches[0].confidence
        return data

    return ToolDefinition(
        name="search_exercises",
        description="Search the exercise catalog by muscle group, equipment or name; returns a ranked list.",
        execute=execute,
        params_model=SearchExercisesParams,
        validate=validate,
    )
