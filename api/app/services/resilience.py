from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TypeVar

from app.core.config import Settings
from app.core.errors import CircuitOpenError, RetryCategory, RetryExhaustedError, SearchError

logger = logging.getLogger(__name__)

T = TypeVar("T")
Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]

# Categories that indicate the upstream itself is unhealthy.
BREAKER_CATEGORIES = frozenset({RetryCategory.NETWORK, RetryCategory.UPSTREAM})


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(slots=True, frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    recovery_timeout_seconds: float = 45.0
    monitoring_period_seconds: float = 300.0

    @classmethod
    def from_settings(cls, settings: Settings) -> CircuitBreakerConfig:
        return cls(
            failure_threshold=settings.breaker_failure_threshold,
            recovery_timeout_seconds=settings.breaker_recovery_timeout_seconds,
            monitoring_period_seconds=settings.breaker_monitoring_period_seconds,
        )


@dataclass(slots=True, frozen=True)
class CircuitBreakerState:
    key: str
    state: CircuitState
    failures: int
    next_attempt_at: float | None


def counts_toward_breaker(error: Exception) -> bool:
    if isinstance(error, CircuitOpenError):
        return False
    if isinstance(error, SearchError):
        return error.category in BREAKER_CATEGORIES
    return True


class CircuitBreaker:
    def __init__(self, key: str, config: CircuitBreakerConfig | None = None, clock: Clock = time.monotonic) -> None:
        self.key = key
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures: deque[float] = deque()
        self._next_attempt_at: float | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    def snapshot(self) -> CircuitBreakerState:
        self._prune(self._clock())
        return CircuitBreakerState(
            key=self.key,
            state=self._state,
            failures=len(self._failures),
            next_attempt_at=self._next_attempt_at,
        )

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        self._admit()
        try:
            result = await operation()
        except asyncio.CancelledError:
            self._trial_in_flight = False
            raise
        except Exception as exc:
            self._on_failure(exc)
            raise
        self._on_success()
        return result

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failures.clear()
        self._next_attempt_at = None
        self._trial_in_flight = False

    def _admit(self) -> None:
        now = self._clock()
        if self._state is CircuitState.OPEN:
            assert self._next_attempt_at is not None
            if now < self._next_attempt_at:
                raise CircuitOpenError(
                    f"circuit open for {self.key}",
                    retry_after_seconds=self._next_attempt_at - now,
                    details={"breaker": self.key},
                )
            self._state = CircuitState.HALF_OPEN
            logger.info("circuit breaker %s half-open; admitting trial call", self.key)

        if self._state is CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(
                    f"circuit half-open for {self.key}; trial call in progress",
                    details={"breaker": self.key},
                )
            self._trial_in_flight = True

    def _on_success(self) -> None:
        if self._state is not CircuitState.CLOSED:
            logger.info("circuit breaker %s closed after successful trial", self.key)
        self.reset()

    def _on_failure(self, error: Exception) -> None:
        now = self._clock()
        if not counts_toward_breaker(error):
            # The upstream answered; a half-open trial slot is released without a verdict.
            self._trial_in_flight = False
            return

        if self._state is CircuitState.HALF_OPEN:
            self._open(now)
            return

        self._failures.append(now)
        self._prune(now)
        if len(self._failures) >= self.config.failure_threshold:
            self._open(now)

    def _open(self, now: float) -> None:
        self._state = CircuitState.OPEN
        self._trial_in_flight = False
        self._next_attempt_at = now + self.config.recovery_timeout_seconds
        logger.warning(
            "circuit breaker %s opened failures=%s retry_in=%.1fs",
            self.key,
            len(self._failures),
            self.config.recovery_timeout_seconds,
        )

    def _prune(self, now: float) -> None:
        horizon = now - self.config.monitoring_period_seconds
        while self._failures and self._failures[0] < horizon:
            self._failures.popleft()


class CircuitBreakerRegistry:
    def __init__(self, config: CircuitBreakerConfig | None = None, clock: Clock = time.monotonic) -> None:
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, key: str) -> CircuitBreaker:
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(key, self._config, clock=self._clock)
            self._breakers[key] = breaker
        return breaker

    def snapshots(self) -> dict[str, CircuitBreakerState]:
        return {key: breaker.snapshot() for key, breaker in self._breakers.items()}

    def reset(self, key: str | None = None) -> None:
        if key is None:
            for breaker in self._breakers.values():
                breaker.reset()
            return
        if key in self._breakers:
            self._breakers[key].reset()


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 15.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    retryable_categories: frozenset[RetryCategory] = field(default_factory=lambda: frozenset(RetryCategory))

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay_seconds=settings.retry_base_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
            backoff_multiplier=settings.retry_backoff_multiplier,
            jitter=settings.retry_jitter,
        )

    def base_delay_for(self, attempt: int) -> float:
        exponent = max(0, attempt - 1)
        return min(self.base_delay_seconds * (self.backoff_multiplier**exponent), self.max_delay_seconds)

    def delay_for(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        delay = self.base_delay_for(attempt)
        if self.jitter:
            # +/-25% around the computed delay.
            delay *= 0.75 + 0.5 * rng()
        return min(max(delay, 0.0), self.max_delay_seconds)

    def is_retryable(self, error: SearchError) -> bool:
        return error.retryable and error.category in self.retryable_categories


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    breaker: CircuitBreaker | None = None,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run `operation` under the retry policy, optionally through a circuit breaker.

    Circuit rejections and non-retryable errors propagate untouched, as does a
    Retry-After hint longer than `max_delay_seconds`. When every
    attempt fails with a retryable error, `RetryExhaustedError` wraps the last one.
    """
    last_error: SearchError | None = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            if breaker is not None:
                return await breaker.call(operation)
            return await operation()
        except CircuitOpenError:
            raise
        except SearchError as exc:
            if not policy.is_retryable(exc):
                raise
            last_error = exc

        if attempt >= policy.max_attempts:
            break
        delay = policy.delay_for(attempt)
        retry_after = last_error.retry_after_seconds
        if retry_after is not None:
            if retry_after > policy.max_delay_seconds:
                # Never call back inside the upstream's Retry-After window.
                logger.info(
                    "not retrying %s retry_after=%.1fs exceeds max_delay=%.1fs",
                    last_error.code.value,
                    retry_after,
                    policy.max_delay_seconds,
                )
                raise last_error
            delay = max(delay, retry_after)
        logger.info(
            "retrying after %s attempt=%s/%s delay=%.2fs",
            last_error.code.value,
            attempt,
            policy.max_attempts,
            delay,
        )
        await sleep(delay)

    assert last_error is not None
    raise RetryExhaustedError(last_error, policy.max_attempts)
