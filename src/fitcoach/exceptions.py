"""
exceptions.py — FitCoach Unified Error Hierarchy

All FitCoach-specific exceptions live here. Every layer of the stack
raises typed subclasses of FitCoachError — never bare Exception.

Import from here, not from individual modules:
    from fitcoach.exceptions import ToolNotFoundError, CircuitOpenError

Hierarchy:
    FitCoachError
    ├── ToolError
    │   ├── ValidationError
    │   ├── TransientError
    │   ├── ToolTimeoutError
    │   ├── ToolNotFoundError
    │   └── CircuitOpenError
    ├── MatchNotFoundError
    ├── AgentError
    │   └── PlanningError
    ├── StateError
    │   ├── InvalidStateError
    │   └── SessionNotFoundError
    ├── SessionStoreError
    └── CompletionError
        ├── CompletionConnectionError
        ├── CompletionRateLimitError
        └── CompletionCancelledError
"""

from __future__ import annotations

from typing import Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class FitCoachError(Exception):
    """Base class for all FitCoach exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Tool layer
# ─────────────────────────────────────────────────────────────────────────────

class ToolError(FitCoachError):
    """Base for tool registry / executor errors."""


class ValidationError(ToolError):
    """Tool parameters failed validation. Never retried."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        self.field = field
        super().__init__(message)


class TransientError(ToolError):
    """Timeout / network / rate-limit style failure. Retried per policy."""


class ToolTimeoutError(TransientError):
    """A single tool attempt exceeded the executor's per-call timeout."""


class ToolNotFoundError(ToolError):
    """Requested tool is not registered in the ToolRegistry."""

    def __init__(self, name: str) -> None:
        self.tool_name = name
        super().__init__(f"Tool '{name}' is not registered.")


class CircuitOpenError(ToolError):
    """The tool's circuit breaker is OPEN; the call was rejected without work."""

    def __init__(self, name: str, retry_after: float = 0.0) -> None:
        self.tool_name = name
        self.retry_after = retry_after
        super().__init__(
            f"Circuit for tool '{name}' is open; retry in {retry_after:.1f}s."
        )


# ─────────────────────────────────────────────────────────────────────────────
# Matching layer
# ─────────────────────────────────────────────────────────────────────────────

class MatchNotFoundError(FitCoachError):
    """No catalog record cleared the confidence floor for a query."""

    def __init__(self, query: str, min_confidence: float) -> None:
        self.query = query
        self.min_confidence = min_confidence
        super().__init__(
            f"No exercise matched '{query}' with confidence >= {min_confidence:.2f}"
        )


# ─────────────────────────────────────────────────────────────────────────────
# Agent layer
# ─────────────────────────────────────────────────────────────────────────────

class AgentError(FitCoachError):
    """Base for orchestration errors."""


class PlanningError(AgentError):
    """The completion service returned an unparsable intent/plan payload."""

    def __init__(self, message: str, raw: str = "") -> None:
        self.raw = raw
        super().__init__(message)


# ─────────────────────────────────────────────────────────────────────────────
# State layer
# ─────────────────────────────────────────────────────────────────────────────

class StateError(FitCoachError):
    """Base for conversation-state errors."""


class InvalidStateError(StateError):
    """Operation is not allowed in the session's current state."""


class SessionNotFoundError(StateError):
    """State manager was asked about a session it has never initialised."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' is not initialised.")


class SessionStoreError(FitCoachError):
    """A session store read, write or delete failed."""


# ─────────────────────────────────────────────────────────────────────────────
# Completion service layer
# ─────────────────────────────────────────────────────────────────────────────

class CompletionError(FitCoachError):
    """Base exception for completion-service errors."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CompletionConnectionError(CompletionError):
    """Endpoint unreachable or authentication failed."""


class CompletionRateLimitError(CompletionError):
    """Rate limit hit on the completion endpoint."""

    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class CompletionCancelledError(CompletionError):
    """A streaming completion was cancelled through its CancelToken."""

    def __init__(self, partial_text: str = "") -> None:
        self.partial_text = partial_text
        super().__init__("Streaming completion cancelled")


# ─────────────────────────────────────────────────────────────────────────────
# Convenience: all public names
# ─────────────────────────────────────────────────────────────────────────────

__all__ = [
    "FitCoachError",
    # Tool
    "ToolError",
    "ValidationError",
    "TransientError",
    "ToolTimeoutError",
    "ToolNotFoundError",
    "CircuitOpenError",
    # Matching
    "MatchNotFoundError",
    # Agent
    "AgentError",
    "PlanningError",
    # State
    "StateError",
    "InvalidStateError",
    "SessionNotFoundError",
    "SessionStoreError",
    # Completion
    "CompletionError",
    "CompletionConnectionError",
    "CompletionRateLimitError",
    "CompletionCancelledError",
]
