"""
agent/clarification.py — Clarification Dialogue Machine

    NONE ──(ambiguous modification)──────────▶ AWAITING_CLARIFICATION
    AWAITING ──(answer matches an option)─────▶ NONE            (plan runs)
    AWAITING ──(new actionable intent)────────▶ NONE / AWAITING (replaced)
    AWAITING ──(anything else)────────────────▶ AWAITING        (re-prompt)

The dialogue state itself lives on ConversationState (it is derived from
whether a ClarificationContext is pending). This module decides when to
ask, how to match an answer to an option, and what plan a chosen option
turns into. What counts as ambiguous is pluggable through ClarificationRule,
so the orchestrator carries no knowledge of specific tools.

Answers are matched, in order, by:
    1. ordinal      "2", "#2", "option 2", "the second one"
    2. value        "DOUBLE_REPS"
    3. label        the answer's distinguishing words select exactly one
                    option ("reps", "both", "double the sets please")
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from fitcoach.agent.planner import Intent, IntentResult
from fitcoach.matching.similarity import extract_keywords, normalize, tokens
from fitcoach.memory.types import ClarificationContext, ClarificationOption, ConversationState, StepSpec
from fitcoach.observability.logger import get_logger

log = get_logger(__name__)

MISMATCH_PREFIX = "Sorry, I didn't catch that. "

_ORDINAL_WORDS = {
    "first": 1, "one": 1,
    "second": 2, "two": 2,
    "third": 3, "three": 3,
    "fourth": 4, "four": 4,
    "fifth": 5, "five": 5,
}
_NUMBER_RE = re.compile(r"^\s*(?:option\s*)?#?\s*(\d+)\s*[.)]?\s*$", re.IGNORECASE)
_MAX_ORDINAL_WORDS = 4
_MAX_NOISE_WORDS = 1      # words in an answer that appear in no option label


@dataclass(frozen=True)
class ClarificationOutcome:
    """What a rule decided for an ambiguous request: ask, or refuse outright."""
    intent: Intent
    message: str
    context: Optional[ClarificationContext] = None

    @property
    def needs_answer(self) -> bool:
        return self.context is not None

    @classmethod
    def ask(cls, context: ClarificationContext) -> "ClarificationOutcome":
        return cls(intent=Intent(context.original_intent_name), message=context.render(), context=context)

    @classmethod
    def refuse(cls, intent: Intent, message: str) -> "ClarificationOutcome":
        return cls(intent=intent, message=message)


@dataclass(frozen=True)
class Resolution:
    option: ClarificationOption
    steps: list[StepSpec]


class ClarificationRule(ABC):
    """One kind of ambiguity, keyed by the intent it interrupts."""

    intent: Intent

    @abstractmethod
    def applies(self, result: IntentResult) -> bool:
        """True when the classified request cannot run without asking."""

    @abstractmethod
    async def build(self, state: ConversationState) -> ClarificationOutcome:
        ...

    @abstractmethod
    def resolve_plan(self, context: ClarificationContext, option: ClarificationOption) -> list[StepSpec]:
        ...


class ClarificationManager:

    def __init__(self, rules: Optional[list[ClarificationRule]] = None) -> None:
        self._rules: dict[Intent, ClarificationRule] = {r.intent: r for r in rules or []}

    def add_rule(self, rule: ClarificationRule) -> None:
        self._rules[rule.intent] = rule

    def rule_for(self, result: IntentResult) -> Optional[ClarificationRule]:
        rule = self._rules.get(result.intent)
        if rule is not None and rule.applies(result):
            return rule
        return None

    def resolve(self, context: ClarificationContext, utterance: str) -> Optional[Resolution]:
        """Match the utterance to one pending option and build its plan."""
        option = match_option(context.options, utterance)
        if option is None:
            return None
        try:
            rule = self._rules[Intent(context.original_intent_name)]
        except (KeyError, ValueError):
            log.warning("clarification.no_rule", intent=context.original_intent_name)
            return None
        log.info("clarification.resolved", intent=context.original_intent_name, option=option.value)
        return Resolution(option=option, steps=rule.resolve_plan(context, option))

    @staticmethod
    def mismatch_message(context: ClarificationContext) -> str:
        return MISMATCH_PREFIX + context.render()


def match_option(options: list[ClarificationOption], utterance: str) -> Optional[ClarificationOption]:
    text = utterance.strip()
    if not text or not options:
        return None

    # ── 1. Ordinal ────────────────────────────────────────────────────────
    m = _NUMBER_RE.match(text)
    index: Optional[int] = int(m.group(1)) if m else None
    if index is None:
        words = tokens(normalize(text))
        ordinal_words = [w for w in words if w in _ORDINAL_WORDS]
        if len(ordinal_words) > 1:
            # "the second one": a trailing "one" is a pronoun, not a choice.
            ordinal_words = [w for w in ordinal_words if w != "one"]
        ordinals = {_ORDINAL_WORDS[w] for w in ordinal_words}
        # Only short answers; "one more thing, ..." is not a choice.
        if len(words) <= _MAX_ORDINAL_WORDS and len(ordinals) == 1:
            index = ordinals.pop()
    if index is not None:
        return options[index - 1] if 1 <= index <= len(options) else None

    # ── 2. Value ──────────────────────────────────────────────────────────
    for opt in options:
        if text.upper() == opt.value.upper():
            return opt

    # ── 3. Label ──────────────────────────────────────────────────────────
    said = set(extract_keywords(normalize(text)))
    if not said:
        return None
    labels = [set(extract_keywords(normalize(opt.label))) for opt in options]
    for opt, label in zip(options, labels):
        if said == label:
            return opt

    vocabulary = set().union(*labels)
    if len(said - vocabulary) > _MAX_NOISE_WORDS:
        return None
    # Words every label shares ("double") cannot pick an option.
    distinctive = vocabulary - set.intersection(*labels)
    said_d = said & distinctive
    if not said_d:
        return None
    exact = [opt for opt, label in zip(options, labels) if label & distinctive == said_d]
    if len(exact) == 1:
        return exact[0]
    covering = [opt for opt, label in zip(options, labels) if said_d <= label]
    if len(covering) == 1:
        return covering[0]
    return None
