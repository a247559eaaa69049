from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from redis.asyncio import Redis

from mailcourier.persistence.kv import KeyValueStore, RedisKeyValueStore, get_redis
from mailcourier.providers.email.base import EmailTransport
from mailcourier.providers.email.factory import get_email_transport
from mailcourier.services.delivery import DeliveryOrchestrator, SubjectLookup, TemplateLookup
from mailcourier.services.idempotency import IdempotencyGuard
from mailcourier.services.lookups import build_subject_directory, build_template_catalog
from mailcourier.services.resilience import CircuitBreakerRegistry
from mailcourier.services.retry import RetryPolicy
from mailcourier.services.status import RedisStatusSink, StatusReporter, StatusSink


logger = logging.getLogger(__name__)


@dataclass
class DeliveryPipeline:
    # One construction scope owns every stateful collaborator, breaker registry included.
    store: KeyValueStore
    guard: IdempotencyGuard
    retry_policy: RetryPolicy
    breakers: CircuitBreakerRegistry
    reporter: StatusReporter
    subjects: SubjectLookup
    templates: TemplateLookup
    transport: EmailTransport
    orchestrator: DeliveryOrchestrator

    async def aclose(self) -> None:
        for lookup in (self.subjects, self.templates):
            close = getattr(lookup, "aclose", None)
            if close is not None:
                await close()


def assemble_pipeline(
    *,
    store: KeyValueStore,
    sink: StatusSink,
    transport: EmailTransport,
    subjects: SubjectLookup | None = None,
    templates: TemplateLookup | None = None,
    breakers: CircuitBreakerRegistry | None = None,
    retry_policy: RetryPolicy | None = None,
    time_source: Callable[[], float] | None = None,
) -> DeliveryPipeline:
    guard = IdempotencyGuard(store)
    retry_policy = retry_policy or RetryPolicy(store)
    breakers = breakers or CircuitBreakerRegistry(time_source=time_source)
    reporter = StatusReporter(sink, store)
    subjects = subjects or build_subject_directory(store)
    templates = templates or build_template_catalog(store)
    orchestrator = DeliveryOrchestrator(
        guard=guard,
        retry_policy=retry_policy,
        breakers=breakers,
        reporter=reporter,
        subjects=subjects,
        templates=templates,
        transport=transport,
    )
    return DeliveryPipeline(
        store=store,
        guard=guard,
        retry_policy=retry_policy,
        breakers=breakers,
        reporter=reporter,
        subjects=subjects,
        templates=templates,
        transport=transport,
        orchestrator=orchestrator,
    )


async def build_pipeline(*, redis: Redis | None = None, transport: EmailTransport | None = None) -> DeliveryPipeline:
    # Wire the production pipeline against Redis, the HTTP lookups and the configured transport.
    redis = redis or await get_redis()
    store = RedisKeyValueStore(redis)
    pipeline = assemble_pipeline(
        store=store,
        sink=RedisStatusSink(redis),
        transport=transport or get_email_transport(),
    )
    logger.info("delivery_pipeline_ready transport=%s", type(pipeline.transport).__name__)
    return pipeline
