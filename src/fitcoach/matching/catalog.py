"""
matching/catalog.py — Exercise Catalog

Static, ordered, read-only list of exercise records loaded once at startup.
Order matters: matcher ties are broken by catalog position.
"""

from __future__ import annotations

import json
from importlib import resources
from pathlib import Path
from typing import Iterator, Optional

from pydantic import BaseModel, ConfigDict, Field

from fitcoach.observability.logger import get_logger

log = get_logger(__name__)


class ExerciseRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    primary_muscles: tuple[str, ...] = Field(default_factory=tuple)
    secondary_muscles: tuple[str, ...] = Field(default_factory=tuple)
    equipment: str = "bodyweight"

    @property
    def muscles(self) -> tuple[str, ...]:
        return self.primary_muscles + self.secondary_muscles

    @property
    def uses_equipment(self) -> bool:
        return self.equipment.lower() != "bodyweight"


class ExerciseCatalog:
    """Ordered collection of ExerciseRecord with id / name lookup."""

    def __init__(self, records: list[ExerciseRecord]) -> None:
        self._records = list(records)
        self._by_id = {r.id: r for r in self._records}
        self._by_name = {r.name.lower(): r for r in self._records}
        if len(self._by_id) != len(self._records):
            raise ValueError("Exercise catalog contains duplicate ids")

    @classmethod
    def from_file(cls, path: str | Path) -> "ExerciseCatalog":
        with Path(path).open("r", encoding="utf-8") as f:
            raw = json.load(f)
        return cls([ExerciseRecord.model_validate(r) for r in raw])

    @classmethod
    def load_default(cls) -> "ExerciseCatalog":
        """Load the catalog bundled with the package."""
        text = resources.files("fitcoach.matching").joinpath("data/exercises.json").read_text(encoding="utf-8")
        catalog = cls([ExerciseRecord.model_validate(r) for r in json.loads(text)])
        log.debug("catalog.loaded", records=len(catalog))
        return catalog

    def get(self, exercise_id: str) -> Optional[ExerciseRecord]:
        return self._by_id.get(exercise_id)

    def by_name(self, name: str) -> Optional[ExerciseRecord]:
        return self._by_name.get(name.lower())

    def __iter__(self) -> Iterator[ExerciseRecord]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)
