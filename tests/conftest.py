"""
tests/conftest.py — Shared fixtures

  ScriptedCompletion   completion client that replays queued responses
                       (strings, or exceptions to raise); once the queue
                       is empty every call raises CompletionConnectionError
  catalog / matcher    the bundled exercise catalog
  make_stack           builds a full AgentStack over an in-memory store
"""

from __future__ import annotations

import json
import re
from typing import Any, Optional, Union

import pytest

from fitcoach.brain.completion import BaseCompletionClient
from fitcoach.config.settings import Settings
from fitcoach.exceptions import CompletionConnectionError
from fitcoach.kernel.bootstrap import build_stack
from fitcoach.matching.catalog import ExerciseCatalog
from fitcoach.matching.matcher import ExerciseMatcher
from fitcoach.memory.session_store import InMemorySessionStore

_CHUNK_RE = re.compile(r"\S+\s*")


class ScriptedCompletion(BaseCompletionClient):
    """Replays a script; streamed replies are split into word chunks."""

    def __init__(self, responses: Optional[list[Union[str, Exception]]] = None) -> None:
        super().__init__(max_attempts=1)
        self.responses: list[Union[str, Exception]] = list(responses or [])
        self.prompts: list[str] = []

    def push(self, *responses: Union[str, Exception]) -> None:
        self.responses.extend(responses)

    async def _complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if not self.responses:
            raise CompletionConnectionError("script exhausted")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def _stream(self, prompt: str):
        text = await self._complete(prompt)
        for chunk in _CHUNK_RE.findall(text):
            yield chunk


def plan(intent: str, confidence: float = 0.9, slots: Optional[dict] = None, steps: Optional[list] = None) -> str:
    """JSON the planner expects from the completion service."""
    payload: dict[str, Any] = {"intent": intent, "confidence": confidence, "slots": slots or {}}
    payload["steps"] = steps or []
    return json.dumps(payload)


@pytest.fixture
def scripted():
    return ScriptedCompletion()


@pytest.fixture(scope="session")
def catalog():
    return ExerciseCatalog.load_default()


@pytest.fixture
def matcher(catalog):
    return ExerciseMatcher(catalog)


@pytest.fixture
def make_stack(catalog):
    """
    Factory: await make_stack(completion, synthesize=False, **settings_overrides).

    The phrasing call is off by default so replies are the deterministic
    summary built from tool outputs.
    """
    async def _make(completion: BaseCompletionClient, synthesize: bool = False, **overrides: Any):
        overrides.setdefault("orchestrator", {"synthesize_with_completion": synthesize})
        settings = Settings(**overrides)
        stack = await build_stack(settings, completion=completion, store=InMemorySessionStore(), catalog=catalog)
        return stack

    return _make


@pytest.fixture
def plan_json():
    return plan
