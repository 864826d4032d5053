"""
matching/ — Exercise Catalog + Exercise Matcher

Public API:
    from fitcoach.matching import ExerciseCatalog, ExerciseMatcher, SearchOptions
"""

from fitcoach.matching.catalog import ExerciseCatalog, ExerciseRecord
from fitcoach.matching.matcher import ExerciseMatch, ExerciseMatcher, MatchType, SearchOptions

__all__ = [
    "ExerciseCatalog",
    "ExerciseRecord",
    "ExerciseMatch",
    "ExerciseMatcher",
    "MatchType",
    "SearchOptions",
]
