"""
tools/executor.py — Tool Executor

Runs a named tool through the full pipeline:
  1. Registry lookup     — ToolNotFoundError if absent (raised)
  2. Circuit gate        — CircuitOpenError while OPEN (raised, no work done)
  3. Param validation    — schema model + tool.validate(); never retried
  4. Execution           — per-attempt timeout, exponential backoff on
                           retryable errors, up to retry_config.max_retries
  5. Fallback            — tool.fallback(params, last_error) if every
                           attempt failed; result flagged fallback_used
  6. Circuit + metrics   — one outcome per call recorded on the breaker

Everything after step 2 returns a ToolResult; the executor never raises for
a tool's own failure. asyncio.CancelledError always propagates.

Usage:
    executor = ToolExecutor(registry, default_retry=RetryConfig())
    result = await executor.execute_tool("find_exercise", {"name": "squat"}, ctx)
    results = await executor.execute_chain([ChainCall("create_workout", {...}),
                                            ChainCall("save_workout", {}, ["create_workout"])], ctx)
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from fitcoach.exceptions import (
    CircuitOpenError,
    InvalidStateError,
    ToolNotFoundError,
    ToolTimeoutError,
    TransientError,
    ValidationError,
)
from fitcoach.observability.logger import get_logger
from fitcoach.tools.circuit_breaker import CircuitBreaker, CircuitState
from fitcoach.tools.registry import ToolRegistry
from fitcoach.tools.types import (
    CircuitBreakerConfig,
    RetryConfig,
    ToolDefinition,
    ToolErrorKind,
    ToolExecutionContext,
    ToolMetadata,
    ToolParams,
    ToolResult,
)

log = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
FALLBACK_CONFIDENCE = 0.5

SleepFn = Callable[[float], Awaitable[None]]


def _ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 2)


# ─────────────────────────────────────────────────────────────────────────────
# Metrics
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class ToolMetrics:
    calls: int = 0
    successes: int = 0
    failures: int = 0
    fallbacks: int = 0
    total_ms: float = 0.0
    recent_errors: deque = field(default_factory=lambda: deque(maxlen=10))

    def record(self, result: ToolResult) -> None:
        self.calls += 1
        self.total_ms += result.metadata.execution_ms
        if result.metadata.fallback_used:
            self.fallbacks += 1
        if result.success:
            self.successes += 1
        else:
            self.failures += 1
            if result.error is not None:
                self.recent_errors.append(result.error.message)

    def stats(self) -> dict[str, Any]:
        return {
            "calls": self.calls,
            "successes": self.successes,
            "failures": self.failures,
            "fallbacks": self.fallbacks,
            "success_rate": round(self.successes / self.calls, 4) if self.calls else 0.0,
            "avg_ms": round(self.total_ms / self.calls, 2) if self.calls else 0.0,
            "recent_errors": list(self.recent_errors),
        }


@dataclass(frozen=True)
class ChainCall:
    """One node of execute_chain(). key defaults to the tool name."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)
    dependencies: tuple[str, ...] = ()
    key: Optional[str] = None

    @property
    def result_key(self) -> str:
        return self.key or self.name


# ─────────────────────────────────────────────────────────────────────────────
# Executor
# ─────────────────────────────────────────────────────────────────────────────


class ToolExecutor:
    """
    Resilient tool dispatcher.

    Circuit breakers and metrics are keyed by tool name and shared by every
    session that uses this executor instance.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        default_retry: Optional[RetryConfig] = None,
        default_circuit: Optional[CircuitBreakerConfig] = None,
        default_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._default_retry = default_retry or RetryConfig()
        self._default_circuit = default_circuit or CircuitBreakerConfig()
        self._default_timeout = default_timeout_seconds
        self._sleep = sleep
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._metrics: dict[str, ToolMetrics] = {}

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def _breaker(self, tool: ToolDefinition) -> CircuitBreaker:
        breaker = self._breakers.get(tool.name)
        if breaker is None:
            breaker = CircuitBreaker(
                tool.name,
                tool.circuit_breaker_config or self._default_circuit,
                clock=self._clock,
            )
            self._breakers[tool.name] = breaker
        return breaker

    # ── Primary dispatch ──────────────────────────────────────────────────────

    async def execute_tool(
        self,
        name: str,
        params: dict[str, Any] | ToolParams | None,
        context: ToolExecutionContext,
    ) -> ToolResult:
        """
        Execute one tool call.

        Raises:
            ToolNotFoundError: name is not registered.
            CircuitOpenError:  the tool's circuit is OPEN (execute not called).
        """
        start = time.monotonic()

        # ── 1. Registry lookup ─────────────────────────────────────────────
        tool = self._registry.get(name)

        # ── 2. Circuit gate ────────────────────────────────────────────────
        breaker = self._breaker(tool)
        if not breaker.allow_request():
            log.warning("executor.circuit_open", tool=name, retry_after_s=round(breaker.retry_after(), 2))
            raise CircuitOpenError(name, breaker.retry_after())

        log.info("executor.tool.start", tool=name, step_id=context.step_id)

        try:
            # ── 3. Validation (never retried, no breaker outcome) ──────────
            try:
                parsed = self._registry.parse_params(name, params)
                if tool.validate is not None:
                    tool.validate(parsed, context)
            except ValidationError as e:
                breaker.release_probe()
                log.info("executor.tool.invalid", tool=name, error=str(e))
                result = ToolResult.fail(
                    name, ToolErrorKind.VALIDATION, str(e),
                    error_type=type(e).__name__, execution_ms=_ms(start),
                )
                self._record_metrics(name, result)
                return result

            # ── 4. Attempts ────────────────────────────────────────────────
            result = await self._run_with_retry(tool, parsed, context, start)
        except BaseException:
            # Cancellation (or a bug) mid-probe must not wedge HALF_OPEN.
            breaker.release_probe()
            raise

        # ── 6. Circuit + metrics ───────────────────────────────────────────
        if result.success and not result.metadata.fallback_used:
            breaker.record_success()
        else:
            breaker.record_failure()
        self._record_metrics(name, result)

        log.info(
            "executor.tool.complete",
            tool=name,
            success=result.success,
            fallback=result.metadata.fallback_used,
            retries=result.metadata.retry_count,
            duration_ms=result.metadata.execution_ms,
            circuit=breaker.state.value,
        )
        return result

    async def _run_with_retry(
        self,
        tool: ToolDefinition,
        params: ToolParams,
        context: ToolExecutionContext,
        start: float,
    ) -> ToolResult:
        policy = tool.retry_config or self._default_retry
        timeout = tool.timeout_seconds or self._default_timeout
        last_error: BaseException | None = None
        attempt = 0

        for attempt in range(policy.max_retries + 1):
            try:
                data = await asyncio.wait_for(tool.execute(params, context), timeout=timeout)
                return ToolResult.ok(
                    data,
                    ToolMetadata(tool_name=tool.name, execution_ms=_ms(start), retry_count=attempt),
                )
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                last_error = ToolTimeoutError(f"Tool '{tool.name}' timed out after {timeout}s")
            except ValidationError as e:
                # Raised from inside execute: still a caller error, never retried.
                last_error = e
                break
            except Exception as e:  # any other failure becomes a failed result
                last_error = e

            log.warning(
                "executor.tool.attempt_failed",
                tool=tool.name,
                attempt=attempt + 1,
                max_attempts=policy.max_retries + 1,
                error=str(last_error),
                error_type=type(last_error).__name__,
            )
            if attempt < policy.max_retries and policy.is_retryable(last_error):
                delay = policy.delay_for_attempt(attempt)
                log.info("executor.tool.retry", tool=tool.name, attempt=attempt + 1, delay_s=round(delay, 3))
                await self._sleep(delay)
                continue
            break

        assert last_error is not None

        # ── 5. Fallback ────────────────────────────────────────────────────
        if tool.fallback is not None:
            try:
                data = await tool.fallback(params, last_error, context)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error("executor.fallback_failed", tool=tool.name, error=str(e), error_type=type(e).__name__)
            else:
                log.info("executor.fallback_used", tool=tool.name, original_error=str(last_error))
                return ToolResult.ok(
                    data,
                    ToolMetadata(
                        tool_name=f"{tool.name}_fallback",
                        execution_ms=_ms(start),
                        retry_count=attempt,
                        fallback_used=True,
                        confidence=FALLBACK_CONFIDENCE,
                    ),
                )

        return ToolResult.fail(
            tool.name,
            _error_kind(last_error),
            f"Tool '{tool.name}' failed after {attempt + 1} attempt(s): {last_error}",
            error_type=type(last_error).__name__,
            execution_ms=_ms(start),
            retry_count=attempt,
        )

    # ── Chains ────────────────────────────────────────────────────────────────

    async def execute_chain(
        self,
        calls: list[ChainCall],
        context: ToolExecutionContext,
    ) -> dict[str, ToolResult]:
        """
        Execute calls in dependency order; independent calls run concurrently.

        A call whose dependency failed is not executed and gets a DEPENDENCY
        failure. Unknown dependency keys or cycles raise InvalidStateError
        before anything runs.
        """
        by_key = {c.result_key: c for c in calls}
        if len(by_key) != len(calls):
            raise InvalidStateError("execute_chain: duplicate call keys")
        for c in calls:
            missing = [d for d in c.dependencies if d not in by_key]
            if missing:
                raise InvalidStateError(f"execute_chain: '{c.result_key}' depends on unknown {missing}")
        _check_acyclic(by_key)

        results: dict[str, ToolResult] = {}
        pending = dict(by_key)
        while pending:
            ready = [c for c in pending.values() if all(d in results for d in c.dependencies)]
            for c in ready:
                del pending[c.result_key]

            runnable = []
            for c in ready:
                failed = [d for d in c.dependencies if not results[d].success]
                if failed:
                    results[c.result_key] = ToolResult.fail(
                        c.name, ToolErrorKind.DEPENDENCY,
                        f"Skipped: dependency {failed} failed", error_type="DependencyFailed",
                    )
                else:
                    runnable.append(c)

            outcomes = await asyncio.gather(*(self._safe_execute(c, context) for c in runnable))
            for c, r in zip(runnable, outcomes):
                results[c.result_key] = r
        return results

    async def _safe_execute(self, call: ChainCall, context: ToolExecutionContext) -> ToolResult:
        try:
            return await self.execute_tool(call.name, call.params, context)
        except ToolNotFoundError as e:
            return ToolResult.fail(call.name, ToolErrorKind.NOT_FOUND, str(e), error_type=type(e).__name__)
        except CircuitOpenError as e:
            return ToolResult.fail(call.name, ToolErrorKind.CIRCUIT_OPEN, str(e), error_type=type(e).__name__)

    # ── Introspection ─────────────────────────────────────────────────────────

    def _record_metrics(self, name: str, result: ToolResult) -> None:
        self._metrics.setdefault(name, ToolMetrics()).record(result)

    def get_metrics(self, name: Optional[str] = None) -> dict[str, Any]:
        if name is not None:
            return self._metrics.get(name, ToolMetrics()).stats()
        return {n: m.stats() for n, m in sorted(self._metrics.items())}

    def reset_metrics(self) -> None:
        self._metrics.clear()

    def get_circuit_state(self, name: str) -> CircuitState:
        breaker = self._breakers.get(name)
        return breaker.state if breaker else CircuitState.CLOSED

    def reset_circuit(self, name: str) -> None:
        breaker = self._breakers.get(name)
        if breaker is not None:
            breaker.reset()


def _error_kind(error: BaseException) -> ToolErrorKind:
    if isinstance(error, ToolTimeoutError):
        return ToolErrorKind.TIMEOUT
    if isinstance(error, ValidationError):
        return ToolErrorKind.VALIDATION
    if isinstance(error, TransientError):
        return ToolErrorKind.TRANSIENT
    return ToolErrorKind.EXECUTION


def _check_acyclic(by_key: dict[str, ChainCall]) -> None:
    visiting: set[str] = set()
    done: set[str] = set()

    def visit(key: str) -> None:
        if key in done:
            return
        if key in visiting:
            raise InvalidStateError(f"execute_chain: dependency cycle through '{key}'")
        visiting.add(key)
        for dep in by_key[key].dependencies:
            visit(dep)
        visiting.discard(key)
        done.add(key)

    for key in by_key:
        visit(key)
