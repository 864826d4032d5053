"""
tools/circuit_breaker.py — Per-tool Circuit Breaker

    CLOSED ──(failures ≥ threshold within window)──▶ OPEN
    OPEN ──(reset_timeout elapsed, next call)──────▶ HALF_OPEN
    HALF_OPEN ──(probe succeeds)──▶ CLOSED
    HALF_OPEN ──(probe fails)─────▶ OPEN

One breaker per tool, shared by every session, so all state changes go
through a threading.Lock. The clock is injectable for tests.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from enum import Enum
from typing import Callable, Optional

from fitcoach.observability.logger import get_logger
from fitcoach.tools.types import CircuitBreakerConfig

log = get_logger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures: deque[float] = deque()
        self._opened_at: float = 0.0
        self._probe_in_flight = False

    # ── Queries ───────────────────────────────────────────────────────────────

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return len(self._failures)

    def retry_after(self) -> float:
        """Seconds until an OPEN circuit will admit a probe (0 if not OPEN)."""
        with self._lock:
            if self._state != CircuitState.OPEN:
                return 0.0
            return max(0.0, self._opened_at + self._config.reset_timeout - self._clock())

    # ── Gate ──────────────────────────────────────────────────────────────────

    def allow_request(self) -> bool:
        """
        Return True if a call may proceed.

        The first call after reset_timeout moves OPEN → HALF_OPEN and is the
        single probe; other callers are rejected until the probe reports.
        """
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True
            now = self._clock()
            if self._state == CircuitState.OPEN:
                if now - self._opened_at < self._config.reset_timeout:
                    return False
                self._transition(CircuitState.HALF_OPEN)
                self._probe_in_flight = True
                return True
            # HALF_OPEN
            if self._probe_in_flight:
                return False
            self._probe_in_flight = True
            return True

    # ── Outcomes ──────────────────────────────────────────────────────────────

    def record_success(self) -> None:
        with self._lock:
            self._failures.clear()
            self._probe_in_flight = False
            if self._state != CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            self._probe_in_flight = False
            if self._state == CircuitState.HALF_OPEN:
                self._opened_at = now
                self._transition(CircuitState.OPEN)
                return
            self._failures.append(now)
            self._prune(now)
            if self._state == CircuitState.CLOSED and len(self._failures) >= self._config.failure_threshold:
                self._opened_at = now
                self._transition(CircuitState.OPEN)

    def release_probe(self) -> None:
        """Give back a HALF_OPEN probe slot without recording an outcome."""
        with self._lock:
            self._probe_in_flight = False

    def reset(self) -> None:
        with self._lock:
            self._failures.clear()
            self._probe_in_flight = False
            self._state = CircuitState.CLOSED

    # ── Internals (lock held) ─────────────────────────────────────────────────

    def _prune(self, now: float) -> None:
        horizon = now - self._config.monitoring_window
        while self._failures and self._failures[0] < horizon:
            self._failures.popleft()

    def _transition(self, new: CircuitState) -> None:
        old = self._state
        self._state = new
        log.warning(
            "circuit.state_change",
            tool=self.name,
            from_state=old.value,
            to_state=new.value,
            failures=len(self._failures),
        )

    def __repr__(self) -> str:
        return f"<CircuitBreaker {self.name} {self._state.value}>"
