"""
tools/ — Tool Registry, Circuit Breaker, Executor

Public API:
    from fitcoach.tools import ToolRegistry, ToolExecutor, ToolDefinition, ToolResult

Built-in workout / exercise tools live in fitcoach.tools.builtin and are
registered by kernel.bootstrap.
"""

from fitcoach.tools.circuit_breaker import CircuitBreaker, CircuitState
from fitcoach.tools.executor import ChainCall, ToolExecutor
from fitcoach.tools.registry import ToolRegistry
from fitcoach.tools.types import (
    CircuitBreakerConfig,
    RetryConfig,
    ToolDefinition,
    ToolErrorKind,
    ToolExecutionContext,
    ToolParams,
    ToolResult,
)

__all__ = [
    "ToolRegistry",
    "ToolExecutor",
    "ChainCall",
    "CircuitBreaker",
    "CircuitState",
    "CircuitBreakerConfig",
    "RetryConfig",
    "ToolDefinition",
    "ToolErrorKind",
    "ToolExecutionContext",
    "ToolParams",
    "ToolResult",
]
