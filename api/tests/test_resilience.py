from __future__ import annotations

import asyncio

import pytest

from app.core.errors import (
    AuthenticationFailedError,
    CircuitOpenError,
    RateLimitedError,
    RetryExhaustedError,
    UpstreamUnavailableError,
    ValidationFailedError,
)
from app.services.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
    RetryPolicy,
    run_with_retry,
)


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class Recorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


async def _fail_upstream() -> str:
    raise UpstreamUnavailableError("upstream 503")


def _trip(breaker: CircuitBreaker, times: int) -> None:
    async def run() -> None:
        for _ in range(times):
            with pytest.raises(UpstreamUnavailableError):
                await breaker.call(_fail_upstream)

    asyncio.run(run())


def test_breaker_opens_after_threshold_and_rejects_without_calling() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("exa", CircuitBreakerConfig(failure_threshold=5, recovery_timeout_seconds=45.0), clock=clock)
    _trip(breaker, 5)
    assert breaker.state is CircuitState.OPEN

    calls = 0

    async def operation() -> str:
        nonlocal calls
        calls += 1
        return "ok"

    with pytest.raises(CircuitOpenError) as exc_info:
        asyncio.run(breaker.call(operation))
    assert calls == 0
    assert exc_info.value.retry_after_seconds == pytest.approx(45.0)


def test_breaker_ignores_failures_outside_monitoring_period() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker(
        "exa",
        CircuitBreakerConfig(failure_threshold=3, monitoring_period_seconds=10.0),
        clock=clock,
    )
    _trip(breaker, 2)
    clock.now = 20.0
    _trip(breaker, 2)
    assert breaker.state is CircuitState.CLOSED
    assert breaker.snapshot().failures == 2


def test_breaker_does_not_count_caller_errors() -> None:
    breaker = CircuitBreaker("exa", CircuitBreakerConfig(failure_threshold=2), clock=FakeClock())

    async def invalid() -> str:
        raise ValidationFailedError("bad request")

    async def run() -> None:
        for _ in range(4):
            with pytest.raises(ValidationFailedError):
                await breaker.call(invalid)

    asyncio.run(run())
    assert breaker.state is CircuitState.CLOSED


def test_half_open_admits_a_single_trial_then_closes() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("exa", CircuitBreakerConfig(failure_threshold=1, recovery_timeout_seconds=30.0), clock=clock)
    _trip(breaker, 1)
    clock.now = 31.0

    async def run() -> str:
        release = asyncio.Event()

        async def slow() -> str:
            await release.wait()
            return "trial"

        trial = asyncio.create_task(breaker.call(slow))
        await asyncio.sleep(0)
        assert breaker.state is CircuitState.HALF_OPEN
        with pytest.raises(CircuitOpenError):
            await breaker.call(slow)
        release.set()
        return await trial

    assert asyncio.run(run()) == "trial"
    assert breaker.state is CircuitState.CLOSED


def test_failed_trial_reopens_breaker() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("exa", CircuitBreakerConfig(failure_threshold=1, recovery_timeout_seconds=30.0), clock=clock)
    _trip(breaker, 1)
    clock.now = 31.0
    _trip(breaker, 1)
    snapshot = breaker.snapshot()
    assert snapshot.state is CircuitState.OPEN
    assert snapshot.next_attempt_at == pytest.approx(61.0)


def test_registry_reuses_breakers_per_key() -> None:
    registry = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=1), clock=FakeClock())
    assert registry.get("exa") is registry.get("exa")
    _trip(registry.get("exa"), 1)
    assert registry.snapshots()["exa"].state is CircuitState.OPEN
    registry.reset("exa")
    assert registry.get("exa").state is CircuitState.CLOSED


def test_retry_delays_grow_and_are_capped() -> None:
    policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=15.0, backoff_multiplier=2.0, jitter=True)
    base = [policy.base_delay_for(attempt) for attempt in range(1, 7)]
    assert base == [1.0, 2.0, 4.0, 8.0, 15.0, 15.0]
    assert policy.delay_for(3, rng=lambda: 0.0) == pytest.approx(3.0)
    assert policy.delay_for(3, rng=lambda: 1.0) == pytest.approx(5.0)
    assert policy.delay_for(6, rng=lambda: 1.0) == 15.0


def test_run_with_retry_recovers_after_transient_failures() -> None:
    sleep = Recorder()
    attempts = 0

    async def flaky() -> str:
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise UpstreamUnavailableError("upstream 502")
        return "done"

    policy = RetryPolicy(max_attempts=3, jitter=False)
    assert asyncio.run(run_with_retry(flaky, policy, sleep=sleep)) == "done"
    assert sleep.delays == [1.0, 2.0]


def test_run_with_retry_wraps_last_error_when_exhausted() -> None:
    sleep = Recorder()
    policy = RetryPolicy(max_attempts=3, jitter=False)

    with pytest.raises(RetryExhaustedError) as exc_info:
        asyncio.run(run_with_retry(_fail_upstream, policy, sleep=sleep))

    assert exc_info.value.attempts == 3
    assert isinstance(exc_info.value.last_error, UpstreamUnavailableError)
    assert exc_info.value.code.value == "UPSTREAM_UNAVAILABLE"
    assert len(sleep.delays) == 2


def test_run_with_retry_does_not_retry_auth_failures() -> None:
    sleep = Recorder()
    calls = 0

    async def rejected() -> str:
        nonlocal calls
        calls += 1
        raise AuthenticationFailedError("bad key")

    with pytest.raises(AuthenticationFailedError):
        asyncio.run(run_with_retry(rejected, RetryPolicy(jitter=False), sleep=sleep))
    assert calls == 1
    assert sleep.delays == []


def test_run_with_retry_honours_retry_after_hint() -> None:
    sleep = Recorder()
    attempts = 0

    async def throttled() -> str:
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise RateLimitedError("slow down", retry_after_seconds=10.0)
        return "ok"

    assert asyncio.run(run_with_retry(throttled, RetryPolicy(jitter=False), sleep=sleep)) == "ok"
    assert sleep.delays == [10.0]


def test_run_with_retry_surfaces_hint_longer_than_max_delay() -> None:
    sleep = Recorder()
    calls = 0

    async def throttled() -> str:
        nonlocal calls
        calls += 1
        raise RateLimitedError("slow down", retry_after_seconds=60.0)

    with pytest.raises(RateLimitedError) as exc_info:
        asyncio.run(run_with_retry(throttled, RetryPolicy(jitter=False, max_delay_seconds=15.0), sleep=sleep))

    assert calls == 1
    assert sleep.delays == []
    assert exc_info.value.retry_after_seconds == 60.0


def test_run_with_retry_stops_on_open_circuit() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("exa", CircuitBreakerConfig(failure_threshold=1), clock=clock)
    _trip(breaker, 1)
    sleep = Recorder()

    with pytest.raises(CircuitOpenError):
        asyncio.run(run_with_retry(_fail_upstream, RetryPolicy(jitter=False), breaker=breaker, sleep=sleep))
    assert sleep.delays == []
