from __future__ import annotations
"""Bounded retry with exponential backoff and per-name circuit breakers.

A circuit opens after ``failure_threshold`` consecutive failures inside the
monitoring period.  Once ``reset_timeout`` has passed since the last
failure, a *single* trial call is let through (half-open).  Success closes
the circuit; failure re-opens it.  Calls arriving while the trial is in
flight fail fast.
"""

import asyncio
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpx

from core.config import CircuitBreakerConfig, RetryConfig
from core.errors import (
    CircuitOpenError,
    ClientError,
    NoResponseChoiceError,
    ProviderError,
    RateLimitedError,
    ResponseFormatError,
)
from core.logging import logger
from core.monitoring import CIRCUIT_TRANSITIONS, RETRY_ATTEMPTS

__all__ = [
    "CircuitState",
    "CircuitStats",
    "CircuitBreaker",
    "RetryExecutor",
    "compute_delay",
    "default_retry_condition",
]

T = TypeVar("T")
Operation = Callable[[], Awaitable[T]]

# Failures that say nothing about the provider's health.
_NEUTRAL_ERRORS = (ClientError, CircuitOpenError, NoResponseChoiceError, ResponseFormatError)


def default_retry_condition(error: BaseException) -> bool:
    """Network errors, 5xx and 429 are transient; everything else is final."""
    if isinstance(error, ProviderError):
        return error.retryable
    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return True
    status = getattr(error, "status", None) or getattr(error, "status_code", None)
    if status is None and isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
    if isinstance(status, int):
        return status == 429 or status >= 500
    return False


def compute_delay(
    attempt: int,
    config: RetryConfig,
    rand: Callable[[], float] = random.random,
    error: Optional[BaseException] = None,
) -> float:
    """Backoff before retry number ``attempt`` (1-based)."""
    delay = min(config.max_delay, config.base_delay * config.exponential_base ** (attempt - 1))
    if config.jitter:
        delay *= 0.5 + rand() * 0.5
    if isinstance(error, RateLimitedError) and error.retry_after:
        delay = max(delay, min(error.retry_after, config.max_delay))
    return delay


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass
class CircuitStats:
    state: CircuitState
    failure_count: int
    success_count: int
    total_requests: int
    failure_rate: float
    last_failure_time: Optional[float]


# ---------------------------------------------------------------------------
# Circuit Breaker
# ---------------------------------------------------------------------------


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._first_failure_at: Optional[float] = None
        self._last_failure_at: Optional[float] = None
        self._success_count = 0
        self._total_requests = 0
        self._total_failures = 0
        self._trial_in_flight = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    async def before_call(self) -> None:
        """Raise CircuitOpenError if the call must not proceed."""
        async with self._lock:
            if self._state == CircuitState.OPEN:
                elapsed = self._clock() - (self._last_failure_at or 0.0)
                if elapsed < self._config.reset_timeout:
                    raise CircuitOpenError(self.name, f"circuit '{self.name}' is open")
                self._transition(CircuitState.HALF_OPEN)
            if self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(self.name, f"circuit '{self.name}' is probing recovery")
                self._trial_in_flight = True
            self._total_requests += 1

    async def on_success(self) -> None:
        async with self._lock:
            self._success_count += 1
            self._failure_count = 0
            self._first_failure_at = None
            self._trial_in_flight = False
            if self._state != CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED)

    async def on_failure(self) -> None:
        async with self._lock:
            now = self._clock()
            self._total_failures += 1
            self._last_failure_at = now
            if self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                self._transition(CircuitState.OPEN)
                return
            if (
                self._first_failure_at is None
                or now - self._first_failure_at > self._config.monitoring_period
            ):
                # Start a fresh counting window.
                self._first_failure_at = now
                self._failure_count = 0
            self._failure_count += 1
            if self._failure_count >= self._config.failure_threshold and self._state == CircuitState.CLOSED:
                self._transition(CircuitState.OPEN)

    def release_trial(self) -> None:
        """Give up a half-open trial slot without recording an outcome."""
        self._trial_in_flight = False

    def reset(self) -> None:
        self._failure_count = 0
        self._first_failure_at = None
        self._trial_in_flight = False
        if self._state != CircuitState.CLOSED:
            self._transition(CircuitState.CLOSED)

    def stats(self) -> CircuitStats:
        return CircuitStats(
            state=self._state,
            failure_count=self._failure_count,
            success_count=self._success_count,
            total_requests=self._total_requests,
            failure_rate=self._total_failures / self._total_requests if self._total_requests else 0.0,
            last_failure_time=self._last_failure_at,
        )

    def _transition(self, state: CircuitState) -> None:
        previous = self._state
        self._state = state
        if state == CircuitState.CLOSED:
            self._failure_count = 0
        CIRCUIT_TRANSITIONS.labels(circuit=self.name, state=state.value).inc()
        log = logger.warning if state == CircuitState.OPEN else logger.info
        log(
            f"Circuit '{self.name}' {previous.value} -> {state.value}",
            extra={"circuit": self.name, "state": state.value},
        )


# ---------------------------------------------------------------------------
# Retry executor
# ---------------------------------------------------------------------------


class RetryExecutor:
    """Runs async operations with retries and named circuit breakers."""

    def __init__(
        self,
        retry_config: Optional[RetryConfig] = None,
        circuit_config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self._retry_config = retry_config or RetryConfig()
        self._circuit_config = circuit_config or CircuitBreakerConfig()
        self._clock = clock
        self._sleep = sleep
        self._rand = rand
        self._breakers: Dict[str, CircuitBreaker] = {}

    def breaker(self, name: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
        if name not in self._breakers:
            self._breakers[name] = CircuitBreaker(name, config or self._circuit_config, self._clock)
        return self._breakers[name]

    # ------------------------------------------------------------------
    async def with_retry(
        self,
        operation: Operation[T],
        config: Optional[RetryConfig] = None,
        operation_name: str = "operation",
        retry_condition: Optional[Callable[[BaseException], bool]] = None,
    ) -> T:
        """
        Await ``operation()`` up to ``max_attempts`` times.

        The last error is re-raised once attempts are exhausted or the error
        is not retryable.  Cancellation is never retried.
        """
        cfg = config or self._retry_config
        should_retry = retry_condition or default_retry_condition
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except Exception as exc:
                if attempt >= cfg.max_attempts or not should_retry(exc):
                    if attempt > 1:
                        logger.error(f"{operation_name} failed after {attempt} attempts: {type(exc).__name__}")
                    raise
                delay = compute_delay(attempt, cfg, self._rand, exc)
                RETRY_ATTEMPTS.labels(operation=operation_name).inc()
                logger.warning(
                    f"{operation_name} attempt {attempt}/{cfg.max_attempts} failed "
                    f"({type(exc).__name__}) – retrying in {delay:.2f}s",
                    extra={"attempt": attempt, "delay": delay},
                )
                await self._sleep(delay)

    async def with_circuit_breaker(
        self,
        operation: Operation[T],
        circuit_name: str,
        config: Optional[CircuitBreakerConfig] = None,
    ) -> T:
        breaker = self.breaker(circuit_name, config)
        await breaker.before_call()
        try:
            result = await operation()
        except asyncio.CancelledError:
            breaker.release_trial()
            raise
        except _NEUTRAL_ERRORS:
            breaker.release_trial()
            raise
        except Exception:
            await breaker.on_failure()
            raise
        await breaker.on_success()
        return result

    async def with_retry_and_circuit_breaker(
        self,
        operation: Operation[T],
        circuit_name: str,
        retry_config: Optional[RetryConfig] = None,
        circuit_config: Optional[CircuitBreakerConfig] = None,
        retry_condition: Optional[Callable[[BaseException], bool]] = None,
    ) -> T:
        """Circuit breaker around the whole retry sequence."""
        return await self.with_circuit_breaker(
            lambda: self.with_retry(operation, retry_config, circuit_name, retry_condition),
            circuit_name,
            circuit_config,
        )

    # ------------------------------------------------------------------
    def get_circuit_state(self, circuit_name: str) -> CircuitState:
        breaker = self._breakers.get(circuit_name)
        return breaker.state if breaker else CircuitState.CLOSED

    def get_circuit_stats(self, circuit_name: str) -> Optional[CircuitStats]:
        breaker = self._breakers.get(circuit_name)
        return breaker.stats() if breaker else None

    def reset_circuit(self, circuit_name: str) -> None:
        breaker = self._breakers.get(circuit_name)
        if breaker is not None:
            breaker.reset()
