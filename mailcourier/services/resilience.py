from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from threading import Lock
from typing import Awaitable, Callable, TypeVar

from mailcourier.core.config import get_settings
from mailcourier.core.errors import CircuitOpenError
from mailcourier.domain.models import CircuitRecord, CircuitState
from mailcourier.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

T = TypeVar("T")

_STATE_GAUGE = {
    CircuitState.CLOSED: 0.0,
    CircuitState.HALF_OPEN: 0.5,
    CircuitState.OPEN: 1.0,
}


@dataclass(frozen=True)
class CircuitBreakerConfig:
    # Store thresholds in settings so operators can tune without code changes.
    failure_threshold: int
    success_threshold: int
    open_seconds: float


def default_breaker_config() -> CircuitBreakerConfig:
    settings = get_settings()
    return CircuitBreakerConfig(
        failure_threshold=max(1, settings.cb_failure_threshold),
        success_threshold=max(1, settings.cb_success_threshold),
        open_seconds=max(0, settings.cb_open_seconds),
    )


class CircuitBreaker:
    """Failure-isolation state machine for one named operation.

    The state lives in process memory only. Every read-modify-write of the
    record happens under ``self._lock`` and never spans an ``await``, so the
    OPEN fast-fail path resolves without suspending the caller.
    """

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
        on_transition: Callable[[str, CircuitState], None] | None = None,
    ) -> None:
        self._name = name
        self._config = config or default_breaker_config()
        self._time = time_source or time.monotonic
        self._on_transition = on_transition
        self._record = CircuitRecord()
        self._lock = Lock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._record.state

    def snapshot(self) -> CircuitRecord:
        with self._lock:
            return replace(self._record)

    def _transition(self, target: CircuitState) -> None:
        # Emit logs on state transitions for operator visibility.
        record = self._record
        if record.state == target:
            return
        logger.warning(
            "circuit_breaker_transition name=%s from=%s to=%s failures=%s",
            self._name,
            record.state.value,
            target.value,
            record.failure_count,
        )
        record.state = target
        increment_counter(f"circuit_breaker_transition_total.{self._name}.{target.value.lower()}")
        set_gauge(f"circuit_breaker_state.{self._name}", _STATE_GAUGE[target])
        if self._on_transition is not None:
            self._on_transition(self._name, target)

    def _open(self, now: float) -> None:
        self._transition(CircuitState.OPEN)
        self._record.next_attempt_time = now + self._config.open_seconds
        self._record.success_count = 0

    def before_call(self) -> CircuitState:
        # Decide whether the call may run; an expired OPEN window admits it as a half-open probe.
        with self._lock:
            record = self._record
            if record.state == CircuitState.OPEN:
                if self._time() < record.next_attempt_time:
                    increment_counter(f"circuit_breaker_rejected_total.{self._name}")
                    logger.warning("circuit_breaker_rejected name=%s", self._name)
                    raise CircuitOpenError(self._name)
                self._transition(CircuitState.HALF_OPEN)
                record.success_count = 0
            return record.state

    def record_success(self) -> None:
        with self._lock:
            record = self._record
            if record.state == CircuitState.CLOSED:
                record.failure_count = 0
                return
            # A straggler finishing after the circuit opened leaves the open window intact.
            if record.state != CircuitState.HALF_OPEN:
                return
            record.success_count += 1
            if record.success_count >= self._config.success_threshold:
                self._transition(CircuitState.CLOSED)
                record.failure_count = 0
                record.success_count = 0

    def record_failure(self) -> None:
        with self._lock:
            record = self._record
            now = self._time()
            record.failure_count += 1
            record.last_failure_time = now
            if record.state == CircuitState.HALF_OPEN:
                # A failed probe reopens immediately regardless of the failure count.
                self._open(now)
            elif record.state == CircuitState.CLOSED and record.failure_count >= self._config.failure_threshold:
                self._open(now)


class CircuitBreakerRegistry:
    """Named circuits owned by one pipeline instance.

    Each ``DeliveryOrchestrator`` gets its registry injected, so two pipelines in
    one process (tests included) never share breaker state by accident.
    """

    def __init__(
        self,
        *,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._config = config
        self._time = time_source
        self._circuits: dict[str, CircuitBreaker] = {}
        self._lock = Lock()

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._circuits.get(name)
            if breaker is None:
                breaker = CircuitBreaker(name, config=self._config, time_source=self._time)
                self._circuits[name] = breaker
            return breaker

    async def execute(self, operation: Callable[[], Awaitable[T]], name: str) -> T:
        # Run one call through the named circuit; the operation's result or error is returned unchanged.
        breaker = self.get(name)
        breaker.before_call()
        try:
            result = await operation()
        except Exception:
            breaker.record_failure()
            raise
        breaker.record_success()
        return result

    def get_circuit_status(self, name: str) -> CircuitRecord | None:
        with self._lock:
            breaker = self._circuits.get(name)
        return breaker.snapshot() if breaker is not None else None

    def get_all_circuits(self) -> dict[str, CircuitRecord]:
        # Hand out copies so health reporting never observes a half-applied transition.
        with self._lock:
            breakers = list(self._circuits.values())
        return {breaker.name: breaker.snapshot() for breaker in breakers}

    def reset_circuit(self, name: str) -> None:
        with self._lock:
            removed = self._circuits.pop(name, None)
        if removed is not None:
            logger.info("circuit_breaker_reset name=%s", name)
