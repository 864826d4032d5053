"""
tools/types.py — Tool Layer Data Models

Shared by the registry, the circuit breaker, the executor and every tool.

  ToolDefinition      static description of one tool; registered once
  ToolParams          base for the per-tool pydantic parameter models
                      (the tool name is the tag; the registry picks the model)
  ToolExecutionContext per-call context handed to execute/validate/fallback
  ToolResult          uniform outcome — success XOR error, always metadata
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, ConfigDict

from fitcoach.config.settings import CircuitBreakerSettings, RetrySettings
from fitcoach.exceptions import TransientError
from fitcoach.memory.types import utcnow


# ─────────────────────────────────────────────────────────────────────────────
# Parameters
# ─────────────────────────────────────────────────────────────────────────────


class ToolParams(BaseModel):
    """Base for tool parameter models. Unknown keys are rejected."""
    model_config = ConfigDict(extra="forbid")


class NoParams(ToolParams):
    pass


# ─────────────────────────────────────────────────────────────────────────────
# Policies
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RetryConfig:
    """
    Exponential backoff policy.

    An error is retryable when it is a TransientError, or when its message
    contains one of retryable_errors (case-insensitive). Delay before retry
    number `attempt` (0-based) is base_delay × backoff_multiplier^attempt,
    capped at max_delay. Delays are in seconds.
    """
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    retryable_errors: tuple[str, ...] = ("timeout", "network", "temporary", "rate limit")
    jitter: bool = False

    @classmethod
    def from_settings(cls, s: RetrySettings) -> "RetryConfig":
        return cls(
            max_retries=s.max_retries,
            base_delay=s.base_delay,
            max_delay=s.max_delay,
            backoff_multiplier=s.backoff_multiplier,
            retryable_errors=tuple(s.retryable_errors),
        )

    def is_retryable(self, error: BaseException) -> bool:
        if isinstance(error, TransientError):
            return True
        message = str(error).lower()
        return any(token.lower() in message for token in self.retryable_errors)

    def delay_for_attempt(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.backoff_multiplier ** attempt), self.max_delay)
        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)
        return delay


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout: float = 60.0        # seconds OPEN before a probe is allowed
    monitoring_window: float = 120.0   # failures older than this are forgotten

    @classmethod
    def from_settings(cls, s: CircuitBreakerSettings) -> "CircuitBreakerConfig":
        return cls(
            failure_threshold=s.failure_threshold,
            reset_timeout=s.reset_timeout,
            monitoring_window=s.monitoring_window,
        )


# ─────────────────────────────────────────────────────────────────────────────
# Context
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class ToolExecutionContext:
    session_id: str
    user_id: str
    utterance: str = ""
    task_id: Optional[str] = None
    step_id: Optional[str] = None
    conversation_context: str = ""
    previous_results: dict[str, Any] = field(default_factory=dict)


# ─────────────────────────────────────────────────────────────────────────────
# Definition
# ─────────────────────────────────────────────────────────────────────────────

ExecuteFn = Callable[[Any, ToolExecutionContext], Awaitable[Any]]
ValidateFn = Callable[[Any, ToolExecutionContext], None]
FallbackFn = Callable[[Any, BaseException, ToolExecutionContext], Awaitable[Any]]


@dataclass(frozen=True)
class ToolDefinition:
    """
    Immutable tool contract.

    execute(params, context)          -> data (raise to fail)
    validate(params, context)         -> None (raise ValidationError to reject)
    fallback(params, error, context)  -> data used when every attempt failed
    """
    name: str
    description: str
    execute: ExecuteFn
    params_model: type[ToolParams] = NoParams
    validate: Optional[ValidateFn] = None
    fallback: Optional[FallbackFn] = None
    retry_config: Optional[RetryConfig] = None
    circuit_breaker_config: Optional[CircuitBreakerConfig] = None
    timeout_seconds: Optional[float] = None

    def parameter_schema(self) -> dict[str, Any]:
        return self.params_model.model_json_schema()

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameter_schema(),
        }


# ─────────────────────────────────────────────────────────────────────────────
# Result
# ─────────────────────────────────────────────────────────────────────────────


class ToolErrorKind(str, Enum):
    VALIDATION = "validation"
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    EXECUTION = "execution"
    NOT_FOUND = "not_found"
    CIRCUIT_OPEN = "circuit_open"
    DEPENDENCY = "dependency"


@dataclass(frozen=True)
class ToolErrorInfo:
    kind: ToolErrorKind
    message: str
    error_type: str = "ToolError"


@dataclass(frozen=True)
class ToolMetadata:
    tool_name: str
    execution_ms: float = 0.0
    retry_count: int = 0
    timestamp: datetime = field(default_factory=utcnow)
    fallback_used: bool = False
    confidence: Optional[float] = None


@dataclass(frozen=True)
class ToolResult:
    """
    Rules:
      - success=True  → data set (may be None), error is None
      - success=False → error set, data is None
    """
    success: bool
    metadata: ToolMetadata
    data: Any = None
    error: Optional[ToolErrorInfo] = None

    def __post_init__(self) -> None:
        if self.success and self.error is not None:
            raise ValueError("successful ToolResult cannot carry an error")
        if not self.success and self.error is None:
            raise ValueError("failed ToolResult must carry an error")
        if not self.success and self.data is not None:
            raise ValueError("failed ToolResult cannot carry data")

    @classmethod
    def ok(cls, data: Any, metadata: ToolMetadata) -> "ToolResult":
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def fail(
        cls,
        tool_name: str,
        kind: ToolErrorKind,
        message: str,
        error_type: str = "ToolError",
        execution_ms: float = 0.0,
        retry_count: int = 0,
    ) -> "ToolResult":
        return cls(
            success=False,
            error=ToolErrorInfo(kind=kind, message=message, error_type=error_type),
            metadata=ToolMetadata(
                tool_name=tool_name,
                execution_ms=execution_ms,
                retry_count=retry_count,
            ),
        )

    @property
    def confidence(self) -> float:
        """Step-level confidence: explicit metadata value, else 1.0/0.0."""
        if self.metadata.confidence is not None:
            return self.metadata.confidence
        if isinstance(self.data, dict) and isinstance(self.data.get("confidence"), (int, float)):
            return float(self.data["confidence"])
        return 1.0 if self.success else 0.0

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "success": self.success,
            "tool": self.metadata.tool_name,
            "execution_ms": round(self.metadata.execution_ms, 2),
            "retry_count": self.metadata.retry_count,
            "fallback_used": self.metadata.fallback_used,
        }
        if self.success:
            out["data"] = self.data
        else:
            assert self.error is not None
            out["error"] = {"kind": self.error.kind.value, "message": self.error.message}
        return out
