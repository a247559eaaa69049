from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from mailcourier.core.errors import CircuitOpenError
from mailcourier.domain.models import CircuitState
from mailcourier.services.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
)


class Boom(Exception):
    pass


def _registry(clock) -> CircuitBreakerRegistry:
    return CircuitBreakerRegistry(
        config=CircuitBreakerConfig(failure_threshold=5, success_threshold=2, open_seconds=60),
        time_source=clock,
    )


async def _fail() -> None:
    raise Boom("downstream failed")


async def _ok() -> str:
    return "ok"


async def _trip(registry: CircuitBreakerRegistry, name: str, times: int = 5) -> None:
    for _ in range(times):
        with pytest.raises(Boom):
            await registry.execute(_fail, name)


@pytest.mark.asyncio
async def test_five_failures_open_the_circuit(clock) -> None:
    registry = _registry(clock)
    await _trip(registry, "x", times=4)
    assert registry.get_circuit_status("x").state == CircuitState.CLOSED
    await _trip(registry, "x", times=1)
    status = registry.get_circuit_status("x")
    assert status.state == CircuitState.OPEN
    assert status.next_attempt_time == clock.now + 60


@pytest.mark.asyncio
async def test_open_circuit_fails_fast_without_invoking_operation(clock) -> None:
    registry = _registry(clock)
    await _trip(registry, "x")
    calls = {"count": 0}

    async def operation() -> str:
        calls["count"] += 1
        return "ok"

    clock.advance(59)
    with pytest.raises(CircuitOpenError):
        await registry.execute(operation, "x")
    assert calls["count"] == 0


@pytest.mark.asyncio
async def test_timeout_admits_half_open_probe_and_two_successes_close(clock) -> None:
    registry = _registry(clock)
    await _trip(registry, "x")
    clock.advance(60)

    assert await registry.execute(_ok, "x") == "ok"
    status = registry.get_circuit_status("x")
    assert status.state == CircuitState.HALF_OPEN
    assert status.success_count == 1

    assert await registry.execute(_ok, "x") == "ok"
    status = registry.get_circuit_status("x")
    assert status.state == CircuitState.CLOSED
    assert status.failure_count == 0
    assert status.success_count == 0


@pytest.mark.asyncio
async def test_half_open_failure_reopens_immediately(clock) -> None:
    registry = _registry(clock)
    await _trip(registry, "x")
    clock.advance(61)
    with pytest.raises(Boom):
        await registry.execute(_fail, "x")
    status = registry.get_circuit_status("x")
    assert status.state == CircuitState.OPEN
    assert status.next_attempt_time == clock.now + 60
    with pytest.raises(CircuitOpenError):
        await registry.execute(_ok, "x")


@pytest.mark.asyncio
async def test_success_in_closed_state_resets_failure_count(clock) -> None:
    registry = _registry(clock)
    await _trip(registry, "x", times=4)
    await registry.execute(_ok, "x")
    assert registry.get_circuit_status("x").failure_count == 0
    await _trip(registry, "x", times=4)
    assert registry.get_circuit_status("x").state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_execute_propagates_result_and_error_unchanged(clock) -> None:
    registry = _registry(clock)
    sentinel = object()

    async def returns_sentinel() -> object:
        return sentinel

    assert await registry.execute(returns_sentinel, "x") is sentinel
    error = Boom("exact instance")

    async def raises_error() -> None:
        raise error

    with pytest.raises(Boom) as excinfo:
        await registry.execute(raises_error, "x")
    assert excinfo.value is error


@pytest.mark.asyncio
async def test_circuits_are_isolated_by_name_and_registry(clock) -> None:
    first = _registry(clock)
    second = _registry(clock)
    await _trip(first, "email_send")
    assert first.get_circuit_status("email_send").state == CircuitState.OPEN
    assert first.get_circuit_status("other") is None
    assert second.get_circuit_status("email_send") is None
    assert await second.execute(_ok, "email_send") == "ok"


@pytest.mark.asyncio
async def test_get_all_circuits_returns_snapshots_and_reset_drops_state(clock) -> None:
    registry = _registry(clock)
    await _trip(registry, "a", times=2)
    await registry.execute(_ok, "b")
    circuits = registry.get_all_circuits()
    assert set(circuits) == {"a", "b"}
    circuits["a"].failure_count = 99
    assert registry.get_circuit_status("a").failure_count == 2

    registry.reset_circuit("a")
    assert registry.get_circuit_status("a") is None


def test_transition_callback_sees_each_state_change(clock) -> None:
    seen: list[tuple[str, CircuitState]] = []
    breaker = CircuitBreaker(
        "cb",
        config=CircuitBreakerConfig(failure_threshold=1, success_threshold=1, open_seconds=5),
        time_source=clock,
        on_transition=lambda name, state: seen.append((name, state)),
    )
    breaker.before_call()
    breaker.record_failure()
    clock.advance(5)
    breaker.before_call()
    breaker.record_success()
    assert seen == [
        ("cb", CircuitState.OPEN),
        ("cb", CircuitState.HALF_OPEN),
        ("cb", CircuitState.CLOSED),
    ]


def test_concurrent_failures_are_counted_exactly(clock) -> None:
    breaker = CircuitBreaker(
        "shared",
        config=CircuitBreakerConfig(failure_threshold=10_000, success_threshold=2, open_seconds=60),
        time_source=clock,
    )
    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda _: breaker.record_failure(), range(2000)))
    snapshot = breaker.snapshot()
    assert snapshot.failure_count == 2000
    assert snapshot.state == CircuitState.CLOSED


def test_concurrent_failures_open_exactly_once(clock) -> None:
    transitions: list[CircuitState] = []
    breaker = CircuitBreaker(
        "shared",
        config=CircuitBreakerConfig(failure_threshold=5, success_threshold=2, open_seconds=60),
        time_source=clock,
        on_transition=lambda _name, state: transitions.append(state),
    )
    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda _: breaker.record_failure(), range(50)))
    assert transitions == [CircuitState.OPEN]
    assert breaker.state == CircuitState.OPEN


def test_late_success_keeps_open_circuit_failure_count(clock) -> None:
    breaker = CircuitBreaker(
        "cb",
        config=CircuitBreakerConfig(failure_threshold=5, success_threshold=2, open_seconds=60),
        time_source=clock,
    )
    # A call admitted while CLOSED that completes only after the circuit opened.
    breaker.before_call()
    for _ in range(5):
        breaker.record_failure()
    breaker.record_success()

    snapshot = breaker.snapshot()
    assert snapshot.state == CircuitState.OPEN
    assert snapshot.failure_count == 5
    assert snapshot.success_count == 0


def test_half_open_probe_success_keeps_count_until_close(clock) -> None:
    breaker = CircuitBreaker(
        "cb",
        config=CircuitBreakerConfig(failure_threshold=2, success_threshold=2, open_seconds=10),
        time_source=clock,
    )
    breaker.record_failure()
    breaker.record_failure()
    clock.advance(10)
    breaker.before_call()
    breaker.record_success()
    assert breaker.snapshot().failure_count == 2
    breaker.record_success()
    assert breaker.snapshot().state == CircuitState.CLOSED
    assert breaker.snapshot().failure_count == 0
