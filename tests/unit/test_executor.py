"""
tests/unit/test_executor.py — Tool Registry + Executor Tests

Covers:
  - registry: register / replace / lookup / describe / parse_params
  - success path: data, metadata, metrics
  - retry: transient errors retried with exponential backoff, at most N+1 calls
  - non-retryable errors fail after one attempt
  - validation (schema + validate hook) never retried, never trips the breaker
  - per-attempt timeout
  - fallback: flagged result, confidence 0.5, counted as a breaker failure
  - circuit: OPEN rejects without calling execute, probe closes it again
  - execute_chain: dependency order, failed dependency, cycles
  - CancelledError propagates
"""

from __future__ import annotations

import asyncio
from typing import Optional

import pytest

from fitcoach.exceptions import (
    CircuitOpenError,
    InvalidStateError,
    ToolNotFoundError,
    TransientError,
    ValidationError,
)
from fitcoach.tools.circuit_breaker import CircuitState
from fitcoach.tools.executor import ChainCall, ToolExecutor
from fitcoach.tools.registry import ToolRegistry
from fitcoach.tools.types import (
    CircuitBreakerConfig,
    RetryConfig,
    ToolDefinition,
    ToolErrorKind,
    ToolExecutionContext,
    ToolParams,
)


# ── Helpers ───────────────────────────────────────────────────────────────────

class EchoParams(ToolParams):
    text: str


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class Script:
    """Tool body that raises / returns the queued items in order."""

    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self, params, ctx):
        self.calls += 1
        item = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(item, BaseException):
            raise item
        return item


def _ctx() -> ToolExecutionContext:
    return ToolExecutionContext(session_id="s1", user_id="u1")


def _tool(name="t", execute=None, **kwargs) -> ToolDefinition:
    return ToolDefinition(name=name, description=f"{name} tool", execute=execute or Script({"ok": True}), **kwargs)


def _executor(*tools, retry: Optional[RetryConfig] = None, circuit: Optional[CircuitBreakerConfig] = None):
    registry = ToolRegistry()
    for t in tools:
        registry.register_tool(t)
    sleeps: list[float] = []

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    clock = FakeClock()
    executor = ToolExecutor(
        registry,
        default_retry=retry or RetryConfig(max_retries=3, base_delay=1.0, max_delay=10.0),
        default_circuit=circuit or CircuitBreakerConfig(failure_threshold=5, reset_timeout=60.0),
        sleep=fake_sleep,
        clock=clock,
    )
    return executor, sleeps, clock


# ── Registry ──────────────────────────────────────────────────────────────────

class TestRegistry:
    def test_register_and_get(self):
        registry = ToolRegistry()
        tool = _tool("echo", params_model=EchoParams)
        registry.register_tool(tool)
        assert registry.get("echo") is tool
        assert "echo" in registry
        assert registry.is_registered("echo")
        assert len(registry) == 1

    def test_unknown_raises(self):
        with pytest.raises(ToolNotFoundError) as exc_info:
            ToolRegistry().get("nope")
        assert exc_info.value.tool_name == "nope"

    def test_reregister_replaces(self):
        registry = ToolRegistry()
        registry.register_tool(_tool("a"))
        replacement = _tool("a")
        registry.register_tool(replacement)
        assert registry.get("a") is replacement
        assert len(registry) == 1

    def test_list_is_sorted(self):
        registry = ToolRegistry()
        for name in ("zeta", "alpha", "mid"):
            registry.register_tool(_tool(name))
        assert registry.list_tools() == ["alpha", "mid", "zeta"]

    def test_unregister(self):
        registry = ToolRegistry()
        registry.register_tool(_tool("a"))
        registry.unregister_tool("a")
        assert registry.get_or_none("a") is None

    def test_describe_includes_schema(self):
        registry = ToolRegistry()
        registry.register_tool(_tool("echo", params_model=EchoParams))
        [described] = registry.describe_tools()
        assert described["name"] == "echo"
        assert "text" in described["parameters"]["properties"]

    def test_parse_params_reports_field(self):
        registry = ToolRegistry()
        registry.register_tool(_tool("echo", params_model=EchoParams))
        with pytest.raises(ValidationError) as exc_info:
            registry.parse_params("echo", {})
        assert exc_info.value.field == "text"

    def test_parse_params_rejects_unknown_keys(self):
        registry = ToolRegistry()
        registry.register_tool(_tool("echo", params_model=EchoParams))
        with pytest.raises(ValidationError):
            registry.parse_params("echo", {"text": "hi", "extra": 1})


# ── Success / retry ───────────────────────────────────────────────────────────

class TestExecuteTool:
    @pytest.mark.asyncio
    async def test_success(self):
        executor, sleeps, _ = _executor(_tool("t"))
        result = await executor.execute_tool("t", {}, _ctx())
        assert result.success
        assert result.data == {"ok": True}
        assert result.error is None
        assert result.metadata.retry_count == 0
        assert result.metadata.tool_name == "t"
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_unknown_tool_raises(self):
        executor, _, _ = _executor()
        with pytest.raises(ToolNotFoundError):
            await executor.execute_tool("missing", {}, _ctx())

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried_with_backoff(self):
        body = Script(TransientError("network down"), TransientError("network down"), {"ok": True})
        executor, sleeps, _ = _executor(_tool("t", body))
        result = await executor.execute_tool("t", {}, _ctx())
        assert result.success
        assert body.calls == 3
        assert result.metadata.retry_count == 2
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_at_most_n_plus_one_attempts(self):
        body = Script(TransientError("network down"))
        executor, sleeps, _ = _executor(_tool("t", body))
        result = await executor.execute_tool("t", {}, _ctx())
        assert not result.success
        assert body.calls == 4
        assert result.error.kind == ToolErrorKind.TRANSIENT
        assert result.metadata.retry_count == 3
        assert sleeps == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self):
        body = Script(TransientError("network down"))
        retry = RetryConfig(max_retries=4, base_delay=1.0, max_delay=3.0)
        executor, sleeps, _ = _executor(_tool("t", body), retry=retry)
        await executor.execute_tool("t", {}, _ctx())
        assert sleeps == [1.0, 2.0, 3.0, 3.0]

    @pytest.mark.asyncio
    async def test_retryable_by_message(self):
        body = Script(RuntimeError("temporary glitch"), {"ok": True})
        executor, _, _ = _executor(_tool("t", body))
        result = await executor.execute_tool("t", {}, _ctx())
        assert result.success
        assert body.calls == 2

    @pytest.mark.asyncio
    async def test_non_retryable_fails_once(self):
        body = Script(RuntimeError("boom"))
        executor, sleeps, _ = _executor(_tool("t", body))
        result = await executor.execute_tool("t", {}, _ctx())
        assert not result.success
        assert body.calls == 1
        assert result.error.kind == ToolErrorKind.EXECUTION
        assert result.error.error_type == "RuntimeError"
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_tool_level_retry_config_wins(self):
        body = Script(TransientError("network down"))
        executor, _, _ = _executor(_tool("t", body, retry_config=RetryConfig(max_retries=1, base_delay=0.5)))
        await executor.execute_tool("t", {}, _ctx())
        assert body.calls == 2

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def slow(params, ctx):
            await asyncio.sleep(1.0)

        executor, _, _ = _executor(
            _tool("t", slow, timeout_seconds=0.01), retry=RetryConfig(max_retries=0),
        )
        result = await executor.execute_tool("t", {}, _ctx())
        assert not result.success
        assert result.error.kind == ToolErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        body = Script(asyncio.CancelledError())
        executor, _, _ = _executor(_tool("t", body))
        with pytest.raises(asyncio.CancelledError):
            await executor.execute_tool("t", {}, _ctx())
        assert body.calls == 1


# ── Validation ────────────────────────────────────────────────────────────────

class TestValidation:
    @pytest.mark.asyncio
    async def test_schema_failure_not_executed(self):
        body = Script({"ok": True})
        executor, _, _ = _executor(_tool("echo", body, params_model=EchoParams))
        result = await executor.execute_tool("echo", {"wrong": 1}, _ctx())
        assert not result.success
        assert result.error.kind == ToolErrorKind.VALIDATION
        assert body.calls == 0

    @pytest.mark.asyncio
    async def test_validate_hook(self):
        def validate(params, ctx):
            if not params.text.strip():
                raise ValidationError("text must not be empty", field="text")

        body = Script({"ok": True})
        executor, _, _ = _executor(_tool("echo", body, params_model=EchoParams, validate=validate))
        result = await executor.execute_tool("echo", {"text": "  "}, _ctx())
        assert result.error.kind == ToolErrorKind.VALIDATION
        assert body.calls == 0

    @pytest.mark.asyncio
    async def test_validation_error_inside_execute_not_retried(self):
        body = Script(ValidationError("bad workout id"))
        executor, sleeps, _ = _executor(_tool("t", body))
        result = await executor.execute_tool("t", {}, _ctx())
        assert result.error.kind == ToolErrorKind.VALIDATION
        assert body.calls == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_validation_does_not_trip_breaker(self):
        executor, _, _ = _executor(
            _tool("echo", params_model=EchoParams),
            circuit=CircuitBreakerConfig(failure_threshold=1),
        )
        for _ in range(3):
            await executor.execute_tool("echo", {}, _ctx())
        assert executor.get_circuit_state("echo") == CircuitState.CLOSED


# ── Fallback ──────────────────────────────────────────────────────────────────

class TestFallback:
    @pytest.mark.asyncio
    async def test_fallback_result_is_flagged(self):
        async def fallback(params, error, ctx):
            return {"cached": True, "reason": str(error)}

        body = Script(RuntimeError("boom"))
        executor, _, _ = _executor(_tool("t", body, fallback=fallback))
        result = await executor.execute_tool("t", {}, _ctx())
        assert result.success
        assert result.data["cached"] is True
        assert result.metadata.fallback_used
        assert result.metadata.tool_name == "t_fallback"
        assert result.confidence == 0.5

    @pytest.mark.asyncio
    async def test_fallback_counts_as_breaker_failure(self):
        async def fallback(params, error, ctx):
            return {}

        executor, _, _ = _executor(
            _tool("t", Script(RuntimeError("boom")), fallback=fallback),
            circuit=CircuitBreakerConfig(failure_threshold=1),
        )
        await executor.execute_tool("t", {}, _ctx())
        assert executor.get_circuit_state("t") == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_failing_fallback_returns_original_error(self):
        async def fallback(params, error, ctx):
            raise RuntimeError("fallback broke")

        executor, _, _ = _executor(_tool("t", Script(RuntimeError("boom")), fallback=fallback))
        result = await executor.execute_tool("t", {}, _ctx())
        assert not result.success
        assert "boom" in result.error.message


# ── Circuit ───────────────────────────────────────────────────────────────────

class TestCircuit:
    @pytest.mark.asyncio
    async def test_open_circuit_rejects_without_executing(self):
        body = Script(RuntimeError("boom"))
        executor, _, _ = _executor(_tool("t", body), circuit=CircuitBreakerConfig(failure_threshold=2))
        await executor.execute_tool("t", {}, _ctx())
        await executor.execute_tool("t", {}, _ctx())
        assert executor.get_circuit_state("t") == CircuitState.OPEN

        with pytest.raises(CircuitOpenError) as exc_info:
            await executor.execute_tool("t", {}, _ctx())
        assert exc_info.value.retry_after > 0
        assert body.calls == 2

    @pytest.mark.asyncio
    async def test_probe_after_timeout_closes(self):
        body = Script(RuntimeError("boom"), {"ok": True})
        executor, _, clock = _executor(
            _tool("t", body), circuit=CircuitBreakerConfig(failure_threshold=1, reset_timeout=30.0),
        )
        await executor.execute_tool("t", {}, _ctx())
        assert executor.get_circuit_state("t") == CircuitState.OPEN
        clock.now = 31.0
        result = await executor.execute_tool("t", {}, _ctx())
        assert result.success
        assert executor.get_circuit_state("t") == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_reset_circuit(self):
        executor, _, _ = _executor(
            _tool("t", Script(RuntimeError("boom"))), circuit=CircuitBreakerConfig(failure_threshold=1),
        )
        await executor.execute_tool("t", {}, _ctx())
        executor.reset_circuit("t")
        assert executor.get_circuit_state("t") == CircuitState.CLOSED

    def test_unknown_tool_circuit_is_closed(self):
        executor, _, _ = _executor()
        assert executor.get_circuit_state("never-called") == CircuitState.CLOSED


# ── Metrics ───────────────────────────────────────────────────────────────────

class TestMetrics:
    @pytest.mark.asyncio
    async def test_counts(self):
        body = Script({"ok": True}, RuntimeError("boom"))
        executor, _, _ = _executor(_tool("t", body))
        await executor.execute_tool("t", {}, _ctx())
        await executor.execute_tool("t", {}, _ctx())
        stats = executor.get_metrics("t")
        assert stats["calls"] == 2
        assert stats["successes"] == 1
        assert stats["failures"] == 1
        assert stats["success_rate"] == 0.5
        assert len(stats["recent_errors"]) == 1

        executor.reset_metrics()
        assert executor.get_metrics() == {}


# ── Chains ────────────────────────────────────────────────────────────────────

class TestChain:
    @pytest.mark.asyncio
    async def test_dependencies_run_in_order(self):
        order: list[str] = []

        def recorder(name):
            async def execute(params, ctx):
                order.append(name)
                return name
            return execute

        executor, _, _ = _executor(_tool("a", recorder("a")), _tool("b", recorder("b")))
        results = await executor.execute_chain([ChainCall("b", dependencies=("a",)), ChainCall("a")], _ctx())
        assert order == ["a", "b"]
        assert results["a"].data == "a"
        assert results["b"].data == "b"

    @pytest.mark.asyncio
    async def test_failed_dependency_skips_dependent(self):
        b = Script({"ok": True})
        executor, _, _ = _executor(_tool("a", Script(RuntimeError("boom"))), _tool("b", b))
        results = await executor.execute_chain([ChainCall("a"), ChainCall("b", dependencies=("a",))], _ctx())
        assert not results["a"].success
        assert results["b"].error.kind == ToolErrorKind.DEPENDENCY
        assert b.calls == 0

    @pytest.mark.asyncio
    async def test_same_tool_twice_with_keys(self):
        executor, _, _ = _executor(_tool("t"))
        results = await executor.execute_chain(
            [ChainCall("t", key="first"), ChainCall("t", key="second", dependencies=("first",))], _ctx(),
        )
        assert set(results) == {"first", "second"}

    @pytest.mark.asyncio
    async def test_unknown_tool_in_chain_is_a_result(self):
        executor, _, _ = _executor()
        results = await executor.execute_chain([ChainCall("ghost")], _ctx())
        assert results["ghost"].error.kind == ToolErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_cycle_rejected(self):
        executor, _, _ = _executor(_tool("a"), _tool("b"))
        with pytest.raises(InvalidStateError):
            await executor.execute_chain(
                [ChainCall("a", dependencies=("b",)), ChainCall("b", dependencies=("a",))], _ctx(),
            )

    @pytest.mark.asyncio
    async def test_unknown_dependency_rejected(self):
        executor, _, _ = _executor(_tool("a"))
        with pytest.raises(InvalidStateError):
            await executor.execute_chain([ChainCall("a", dependencies=("zzz",))], _ctx())
