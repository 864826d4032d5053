"""
matching/similarity.py — String normalisation, edit distance, keywords.

Pure functions, no state. The matcher composes these.
"""

from __future__ import annotations

import re

_STRIP_RE = re.compile(r"[^\w\s-]")
_WS_RE = re.compile(r"\s+")
_SPLIT_RE = re.compile(r"[\s\-_]+")
_ALPHA_RE = re.compile(r"^[a-z]+$")

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
})


def normalize(name: str) -> str:
    """'  Dumbbell  Row! ' → 'dumbbell-row'."""
    text = _STRIP_RE.sub("", name.lower().strip())
    text = _WS_RE.sub(" ", text)
    return text.replace(" ", "-")


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,                 # deletion
                current[j - 1] + 1,              # insertion
                previous[j - 1] + (ca != cb),    # substitution
            ))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """1 - distance / max(len). Two empty strings are identical (1.0)."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return (longest - levenshtein(a, b)) / longest


def tokens(text: str) -> list[str]:
    return [t for t in _SPLIT_RE.split(text.lower()) if t]


def extract_keywords(text: str) -> list[str]:
    """Alphabetic tokens longer than two characters, stop-words removed."""
    return [
        w for w in tokens(text)
        if len(w) > 2 and w not in STOP_WORDS and _ALPHA_RE.match(w)
    ]
