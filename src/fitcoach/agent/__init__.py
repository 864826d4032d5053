"""
agent/ — Reasoning Orchestrator

Public API:
    from fitcoach.agent import Orchestrator, TurnResult, Planner

Component overview:
    Planner              intent classification + step plan (completion service)
    ClarificationManager pending-question matching and rule dispatch
    ResponseSynthesizer  final reply phrasing, deterministic fallback
    Orchestrator         one turn: state → plan → tools → reply
"""

from fitcoach.agent.clarification import ClarificationManager, ClarificationOutcome, ClarificationRule
from fitcoach.agent.orchestrator import Orchestrator, TurnResult
from fitcoach.agent.planner import ACTION_INTENTS, Intent, IntentResult, Planner
from fitcoach.agent.response_synthesizer import ResponseSynthesizer, StepOutcome
from fitcoach.agent.routes import default_routes

__all__ = [
    "Orchestrator",
    "TurnResult",
    "Planner",
    "Intent",
    "IntentResult",
    "ACTION_INTENTS",
    "ClarificationManager",
    "ClarificationOutcome",
    "ClarificationRule",
    "ResponseSynthesizer",
    "StepOutcome",
    "default_routes",
]
