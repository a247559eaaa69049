from __future__ import annotations

import random
from dataclasses import dataclass

import pytest

from mailcourier.core.config import get_settings
from mailcourier.persistence.kv import RedisKeyValueStore
from mailcourier.services.container import DeliveryPipeline, assemble_pipeline
from mailcourier.services.resilience import CircuitBreakerConfig, CircuitBreakerRegistry
from mailcourier.services.retry import RetryConfig, RetryPolicy
from mailcourier.services.status import RecordingStatusSink
from mailcourier.services.telemetry import reset_telemetry
from mailcourier.tests.utils.fakes import (
    FakeRedis,
    ScriptedTransport,
    StaticLookup,
    make_subject,
    make_template,
)


@pytest.fixture(autouse=True)
def isolate_settings_and_telemetry():
    # Keep env overrides and counters from leaking between tests.
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def store(fake_redis: FakeRedis) -> RedisKeyValueStore:
    return RedisKeyValueStore(fake_redis, prefix="")


class ManualClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@dataclass
class PipelineHarness:
    pipeline: DeliveryPipeline
    redis: FakeRedis
    sink: RecordingStatusSink
    subjects: StaticLookup
    templates: StaticLookup
    transport: ScriptedTransport
    clock: ManualClock


@pytest.fixture
def harness(fake_redis: FakeRedis, store: RedisKeyValueStore, clock: ManualClock) -> PipelineHarness:
    sink = RecordingStatusSink()
    subjects = StaticLookup({"u1": make_subject("u1")})
    templates = StaticLookup({"welcome": make_template("welcome")})
    transport = ScriptedTransport()
    breakers = CircuitBreakerRegistry(
        config=CircuitBreakerConfig(failure_threshold=5, success_threshold=2, open_seconds=60),
        time_source=clock,
    )
    retry_policy = RetryPolicy(
        store,
        config=RetryConfig(
            max_attempts=3,
            initial_delay_ms=1000,
            multiplier=2,
            max_delay_ms=300000,
            jitter_ratio=0.2,
            ttl_seconds=86400,
        ),
        rng=random.Random(7),
    )
    pipeline = assemble_pipeline(
        store=store,
        sink=sink,
        transport=transport,
        subjects=subjects,
        templates=templates,
        breakers=breakers,
        retry_policy=retry_policy,
    )
    return PipelineHarness(
        pipeline=pipeline,
        redis=fake_redis,
        sink=sink,
        subjects=subjects,
        templates=templates,
        transport=transport,
        clock=clock,
    )
