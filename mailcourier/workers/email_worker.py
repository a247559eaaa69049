from __future__ import annotations

import logging
from typing import Awaitable, Callable

from arq.connections import RedisSettings
from fastapi import FastAPI

from mailcourier.apps.health import EmbeddedHealthServer, create_app, load_port
from mailcourier.core.config import get_settings
from mailcourier.core.logging import configure_logging
from mailcourier.persistence.kv import get_redis
from mailcourier.services.container import DeliveryPipeline, build_pipeline
from mailcourier.services.queue import DeadLetterQueue, consume_notification


logger = logging.getLogger(__name__)


async def deliver_email_notification(ctx, payload: dict) -> str:
    # One queued message per call; arq runs up to max_jobs of these concurrently.
    pipeline: DeliveryPipeline = ctx["pipeline"]
    return await consume_notification(
        orchestrator=pipeline.orchestrator,
        dead_letters=ctx["dead_letters"],
        payload=payload,
        job_try=ctx.get("job_try", 1),
    )


def attach_health_app(ctx, *, queue_depth: Callable[[], Awaitable[int | None]] | None = None) -> FastAPI:
    # The health app reads the consumer's own pipeline, breaker registry included.
    app = create_app(ctx["pipeline"], queue_depth=queue_depth)
    ctx["health_app"] = app
    return app


async def _startup(ctx) -> None:
    # Build the pipeline once per worker process so the breaker registry spans every job.
    configure_logging()
    settings = get_settings()
    redis = await get_redis()
    ctx["pipeline"] = await build_pipeline(redis=redis)
    ctx["dead_letters"] = DeadLetterQueue(redis)
    if settings.health_enabled:
        server = EmbeddedHealthServer(attach_health_app(ctx), host=settings.health_host, port=load_port())
        await server.start()
        ctx["health_server"] = server
    logger.info("email_worker_started queue=%s max_jobs=%s", WorkerSettings.queue_name, WorkerSettings.max_jobs)


async def _shutdown(ctx) -> None:
    server: EmbeddedHealthServer | None = ctx.get("health_server")
    if server is not None:
        await server.stop()
    pipeline: DeliveryPipeline | None = ctx.get("pipeline")
    if pipeline is not None:
        await pipeline.aclose()
    logger.info("email_worker_stopped")


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.email_queue_name
    max_jobs = max(1, settings.email_prefetch_count)
    # One more try than the retry policy allows so the policy, not arq, decides when to stop.
    max_tries = max(1, settings.retry_max_attempts) + 1
    functions = [deliver_email_notification]
    on_startup = _startup
    on_shutdown = _shutdown
