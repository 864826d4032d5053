"""
matching/matcher.py — Exercise Matcher

Resolves a free-text exercise name to a catalog record through a cascade of
strategies, each with its own confidence:

    1. exact     normalised name index                          1.0
    2. alias     curated alias → canonical name                 0.95
    3. fuzzy     edit-distance similarity ≥ 0.7                 sim × 0.9
    4. semantic  keyword overlap (muscles / equipment / name)   score × 0.8
    5. fallback  related keyword or muscle-group default        0.5 / 0.4

Single-match mode returns the first stage whose result clears
min_confidence. Multi-match mode pools every stage, de-duplicates by
catalog id (first wins), sorts by confidence and truncates.

Semantic score: each query keyword is assigned the best weight any catalog
record could give it (its "factor"); a record's score is the sum of the
weights it actually earns divided by the sum of the factors. Keywords no
record can explain (e.g. "exercise") do not dilute the score.

All thresholds, multipliers and weights come from MatcherConfig.

Usage:
    matcher = ExerciseMatcher(ExerciseCatalog.load_default())
    match = matcher.find_best_match("dumbell row")
    ranked = matcher.find_multiple_matches("chest", limit=5)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from fitcoach.config.settings import MatcherConfig
from fitcoach.exceptions import MatchNotFoundError
from fitcoach.matching.catalog import ExerciseCatalog, ExerciseRecord
from fitcoach.matching.similarity import extract_keywords, normalize, similarity, tokens
from fitcoach.observability.logger import get_logger

log = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Types
# ─────────────────────────────────────────────────────────────────────────────


class MatchType(str, Enum):
    EXACT = "exact"
    ALIAS = "alias"
    FUZZY = "fuzzy"
    SEMANTIC = "semantic"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class ExerciseMatch:
    exercise: ExerciseRecord
    confidence: float
    match_type: MatchType
    reasoning: str

    def to_dict(self) -> dict:
        return {
            "id": self.exercise.id,
            "name": self.exercise.name,
            "equipment": self.exercise.equipment,
            "primary_muscles": list(self.exercise.primary_muscles),
            "confidence": round(self.confidence, 4),
            "match_type": self.match_type.value,
            "reasoning": self.reasoning,
        }


@dataclass(frozen=True)
class SearchOptions:
    """
    Filters applied to every stage. Hashable so it can key the cache.

    equipment:      available equipment; bodyweight records always pass
    exclude_names:  exercise names to leave out (case-insensitive)
    muscle_groups:  keep only records whose primary muscles overlap
    min_confidence: single-match floor; None = MatcherConfig.min_confidence
    """
    equipment: tuple[str, ...] = ()
    exclude_names: tuple[str, ...] = ()
    muscle_groups: tuple[str, ...] = ()
    min_confidence: Optional[float] = None

    @classmethod
    def build(
        cls,
        equipment: Optional[Iterable[str]] = None,
        exclude_names: Optional[Iterable[str]] = None,
        muscle_groups: Optional[Iterable[str]] = None,
        min_confidence: Optional[float] = None,
    ) -> "SearchOptions":
        return cls(
            equipment=tuple(sorted(e.lower() for e in equipment or ())),
            exclude_names=tuple(sorted(normalize(n) for n in exclude_names or ())),
            muscle_groups=tuple(sorted(m.lower() for m in muscle_groups or ())),
            min_confidence=min_confidence,
        )


@dataclass
class _CacheStats:
    hits: int = 0
    misses: int = 0
    entries: dict = field(default_factory=dict)


# ─────────────────────────────────────────────────────────────────────────────
# Curated data
# ─────────────────────────────────────────────────────────────────────────────

_ALIASES: dict[str, list[str]] = {
    "Push-Up": ["pushup", "push up", "press up", "push-ups", "pushups"],
    "Pull-Up": ["pullup", "pull up", "pullups", "pull-ups"],
    "Squat": ["squats", "air squat", "bodyweight squat"],
    "Dumbbell Row": ["db row", "dumbbell rows", "single arm row", "one arm row"],
    "Barbell Row": ["bb row", "bent over row", "barbell rows"],
    "Bench Press": ["chest press", "flat bench press", "flat bench"],
    "Overhead Press": ["shoulder press", "military press", "standing press", "ohp"],
    "Deadlift": ["deadlifts", "conventional deadlift"],
    "Lunge": ["lunges", "forward lunge", "walking lunge"],
    "Plank": ["planks", "front plank", "forearm plank"],
}

_MUSCLE_GROUP_DEFAULTS: dict[str, str] = {
    "chest": "Push-Up",
    "back": "Pull-Up",
    "legs": "Squat",
    "shoulders": "Overhead Press",
    "arms": "Push-Up",
    "core": "Plank",
}

# Query words that name a class of equipment rather than one item.
_EQUIPMENT_GROUPS: dict[str, frozenset[str]] = {
    "weights": frozenset({"dumbbell", "barbell", "kettlebell", "cable", "machine"}),
    "weight": frozenset({"dumbbell", "barbell", "kettlebell", "cable", "machine"}),
    "dumbbells": frozenset({"dumbbell"}),
    "barbells": frozenset({"barbell"}),
    "kettlebells": frozenset({"kettlebell"}),
    "machines": frozenset({"machine"}),
    "cables": frozenset({"cable"}),
    "free": frozenset({"dumbbell", "barbell", "kettlebell"}),
}


# ─────────────────────────────────────────────────────────────────────────────
# Matcher
# ─────────────────────────────────────────────────────────────────────────────


class ExerciseMatcher:
    """
    Multi-strategy approximate matcher over a fixed catalog.

    Deterministic for a fixed catalog and query. Semantic computations are
    cached per (query, options, mode) for the lifetime of the instance.
    """

    def __init__(
        self,
        catalog: ExerciseCatalog,
        config: Optional[MatcherConfig] = None,
    ) -> None:
        self._catalog = catalog
        self._cfg = config or MatcherConfig()
        self._index: dict[str, ExerciseRecord] = {}
        for record in catalog:
            self._index.setdefault(normalize(record.name), record)
        self._aliases = self._build_alias_map()
        self._cache = _CacheStats()

    def _build_alias_map(self) -> dict[str, ExerciseRecord]:
        aliases: dict[str, ExerciseRecord] = {}
        for canonical, names in _ALIASES.items():
            record = self._index.get(normalize(canonical))
            if record is None:
                continue  # catalog without this exercise
            for alias in names:
                aliases.setdefault(normalize(alias), record)
        return aliases

    @property
    def catalog(self) -> ExerciseCatalog:
        return self._catalog

    @property
    def config(self) -> MatcherConfig:
        return self._cfg

    # ── Public API ────────────────────────────────────────────────────────────

    def find_best_match(
        self,
        name: str,
        options: Optional[SearchOptions] = None,
    ) -> Optional[ExerciseMatch]:
        """Return the first stage result clearing min_confidence, else None."""
        options = options or SearchOptions()
        floor = self._cfg.min_confidence if options.min_confidence is None else options.min_confidence
        query = normalize(name)

        stages = (
            lambda: self._exact(query, options),
            lambda: self._alias(query, options),
            lambda: self._fuzzy(query, options),
            lambda: self._semantic(query, options),
            lambda: self.fallback_match(name, options),
        )
        for stage in stages:
            match = stage()
            if match is not None and match.confidence >= floor:
                log.debug(
                    "matcher.strategy",
                    query=name,
                    strategy=match.match_type.value,
                    exercise=match.exercise.name,
                    confidence=round(match.confidence, 3),
                )
                return match

        log.debug("matcher.no_match", query=name, floor=floor)
        return None

    def require_match(self, name: str, options: Optional[SearchOptions] = None) -> ExerciseMatch:
        """Like find_best_match(), but raises MatchNotFoundError instead of None."""
        options = options or SearchOptions()
        match = self.find_best_match(name, options)
        if match is None:
            floor = self._cfg.min_confidence if options.min_confidence is None else options.min_confidence
            raise MatchNotFoundError(name, floor)
        return match

    def find_multiple_matches(
        self,
        name: str,
        limit: int = 5,
        options: Optional[SearchOptions] = None,
    ) -> list[ExerciseMatch]:
        options = options or SearchOptions()
        query = normalize(name)

        pooled: list[ExerciseMatch] = []
        exact = self._exact(query, options)
        if exact is not None:
            pooled.append(exact)
        pooled.extend(self._alias_multiple(query, options))
        pooled.extend(self._fuzzy_multiple(query, options))
        pooled.extend(self._semantic_multiple(query, options))

        seen: set[str] = set()
        unique: list[ExerciseMatch] = []
        for m in pooled:
            if m.exercise.id in seen:
                continue
            seen.add(m.exercise.id)
            unique.append(m)

        # sorted() is stable: equal confidences keep stage/catalog order
        ranked = sorted(unique, key=lambda m: m.confidence, reverse=True)[: max(0, limit)]
        log.debug("matcher.multi", query=name, candidates=len(unique), returned=len(ranked))
        return ranked

    def get_suggestions(self, name: str, limit: int = 3) -> list[str]:
        return [m.exercise.name for m in self.find_multiple_matches(name, limit=limit)]

    def fallback_match(self, name: str, options: Optional[SearchOptions] = None) -> Optional[ExerciseMatch]:
        """Related-keyword record (0.5), else muscle-group default (0.4)."""
        options = options or SearchOptions()
        keywords = extract_keywords(normalize(name))

        for keyword in keywords:
            for record in self._candidates(options):
                haystack = " ".join(
                    (record.name, *record.muscles, record.equipment)
                ).lower()
                if keyword in haystack:
                    return ExerciseMatch(
                        exercise=record,
                        confidence=self._cfg.related_fallback_confidence,
                        match_type=MatchType.FALLBACK,
                        reasoning=f'Fallback match based on related keyword: "{keyword}"',
                    )

        for keyword in keywords:
            for group, default_name in _MUSCLE_GROUP_DEFAULTS.items():
                if group in keyword or keyword in group:
                    record = self._index.get(normalize(default_name))
                    if record is not None and self._passes(record, options):
                        return ExerciseMatch(
                            exercise=record,
                            confidence=self._cfg.default_fallback_confidence,
                            match_type=MatchType.FALLBACK,
                            reasoning=f"Default exercise for muscle group: {group}",
                        )
        return None

    def cache_stats(self) -> dict[str, int]:
        return {
            "entries": len(self._cache.entries),
            "hits": self._cache.hits,
            "misses": self._cache.misses,
        }

    def clear_cache(self) -> None:
        self._cache = _CacheStats()

    # ── Filters ───────────────────────────────────────────────────────────────

    def _passes(self, record: ExerciseRecord, options: SearchOptions) -> bool:
        if options.exclude_names and normalize(record.name) in options.exclude_names:
            return False
        if options.equipment and record.uses_equipment:
            if record.equipment.lower() not in options.equipment:
                return False
        if options.muscle_groups:
            primary = {m.lower() for m in record.primary_muscles}
            if not primary.intersection(options.muscle_groups):
                return False
        return True

    def _candidates(self, options: SearchOptions) -> Iterable[ExerciseRecord]:
        return (r for r in self._catalog if self._passes(r, options))

    # ── Stages ────────────────────────────────────────────────────────────────

    def _exact(self, query: str, options: SearchOptions) -> Optional[ExerciseMatch]:
        record = self._index.get(query)
        if record is None or not self._passes(record, options):
            return None
        return ExerciseMatch(record, 1.0, MatchType.EXACT, "Exact name match found")

    def _alias(self, query: str, options: SearchOptions) -> Optional[ExerciseMatch]:
        record = self._aliases.get(query)
        if record is None or not self._passes(record, options):
            return None
        return ExerciseMatch(
            record,
            self._cfg.alias_confidence,
            MatchType.ALIAS,
            f'Matched via alias: "{query}" -> "{record.name}"',
        )

    def _alias_multiple(self, query: str, options: SearchOptions) -> list[ExerciseMatch]:
        matches: list[ExerciseMatch] = []
        for alias, record in self._aliases.items():
            if not self._passes(record, options):
                continue
            if similarity(query, alias) >= self._cfg.multi_alias_threshold:
                matches.append(ExerciseMatch(
                    record,
                    self._cfg.multi_alias_confidence,
                    MatchType.ALIAS,
                    f'Alias match: "{alias}" -> "{record.name}"',
                ))
        return matches

    def _fuzzy(self, query: str, options: SearchOptions) -> Optional[ExerciseMatch]:
        best: Optional[ExerciseMatch] = None
        best_score = 0.0
        for key, record in self._index.items():
            if not self._passes(record, options):
                continue
            sim = similarity(query, key)
            if sim > best_score and sim >= self._cfg.fuzzy_threshold:
                best_score = sim
                best = ExerciseMatch(
                    record,
                    sim * self._cfg.fuzzy_multiplier,
                    MatchType.FUZZY,
                    f"Fuzzy match with {sim * 100:.1f}% similarity",
                )
        return best

    def _fuzzy_multiple(self, query: str, options: SearchOptions) -> list[ExerciseMatch]:
        matches = []
        for key, record in self._index.items():
            if not self._passes(record, options):
                continue
            sim = similarity(query, key)
            if sim >= self._cfg.multi_fuzzy_threshold:
                matches.append(ExerciseMatch(
                    record,
                    sim * self._cfg.multi_fuzzy_multiplier,
                    MatchType.FUZZY,
                    f"Fuzzy match with {sim * 100:.1f}% similarity",
                ))
        matches.sort(key=lambda m: m.confidence, reverse=True)
        return matches[: self._cfg.per_stage_limit]

    def _semantic(self, query: str, options: SearchOptions) -> Optional[ExerciseMatch]:
        key = ("single", query, options)
        if key in self._cache.entries:
            self._cache.hits += 1
            cached = self._cache.entries[key]
            return cached[0] if cached else None
        self._cache.misses += 1

        keywords = extract_keywords(query)
        factors = self._keyword_factors(keywords)
        best: Optional[ExerciseMatch] = None
        best_score = 0.0
        for record in self._candidates(options):
            score = self._semantic_score(factors, record)
            if score > best_score and score >= self._cfg.semantic_threshold:
                best_score = score
                best = ExerciseMatch(
                    record,
                    score * self._cfg.semantic_multiplier,
                    MatchType.SEMANTIC,
                    f"Semantic match on keywords: {', '.join(keywords)}",
                )
        self._cache.entries[key] = [best] if best else []
        return best

    def _semantic_multiple(self, query: str, options: SearchOptions) -> list[ExerciseMatch]:
        key = ("multi", query, options)
        if key in self._cache.entries:
            self._cache.hits += 1
            return list(self._cache.entries[key])
        self._cache.misses += 1

        keywords = extract_keywords(query)
        factors = self._keyword_factors(keywords)
        matches = []
        for record in self._candidates(options):
            score = self._semantic_score(factors, record)
            if score >= self._cfg.multi_semantic_threshold:
                matches.append(ExerciseMatch(
                    record,
                    score * self._cfg.multi_semantic_multiplier,
                    MatchType.SEMANTIC,
                    f"Semantic match on keywords: {', '.join(keywords)}",
                ))
        matches.sort(key=lambda m: m.confidence, reverse=True)
        matches = matches[: self._cfg.per_stage_limit]
        self._cache.entries[key] = matches
        return list(matches)

    # ── Semantic scoring ──────────────────────────────────────────────────────

    @staticmethod
    def _muscle_hit(keyword: str, muscles: Iterable[str]) -> bool:
        return any(keyword in m or m in keyword for m in (x.lower() for x in muscles))

    @staticmethod
    def _equipment_hit(keyword: str, equipment: str) -> bool:
        equipment_tokens = set(tokens(equipment))
        if keyword in equipment_tokens:
            return True
        group = _EQUIPMENT_GROUPS.get(keyword)
        return bool(group and group.intersection(equipment_tokens))

    def _weight_for(self, keyword: str, record: ExerciseRecord) -> float:
        w = self._cfg.weights
        earned = 0.0
        if keyword in tokens(record.name):
            earned = max(earned, w.name)
        if self._muscle_hit(keyword, record.muscles):
            earned = max(earned, w.muscle)
        if self._equipment_hit(keyword, record.equipment):
            earned = max(earned, w.equipment)
        return earned

    def _keyword_factors(self, keywords: list[str]) -> dict[str, float]:
        factors: dict[str, float] = {}
        for keyword in keywords:
            best = max((self._weight_for(keyword, r) for r in self._catalog), default=0.0)
            if best > 0.0:
                factors[keyword] = best
        return factors

    def _semantic_score(self, factors: dict[str, float], record: ExerciseRecord) -> float:
        factor_total = sum(factors.values())
        if not factor_total:
            return 0.0
        earned = sum(self._weight_for(keyword, record) for keyword in factors)
        return earned / factor_total
