from __future__ import annotations

import asyncio
import json
import logging
from datetime import timedelta
from typing import Any

from arq import Retry, create_pool
from arq.connections import ArqRedis, RedisSettings
from pydantic import ValidationError
from redis.asyncio import Redis

from mailcourier.core.config import get_settings
from mailcourier.domain.models import NotificationRequest, utc_now
from mailcourier.services.delivery import DeliveryOrchestrator
from mailcourier.services.retry import RetryPolicy
from mailcourier.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

DELIVER_FUNCTION = "deliver_email_notification"

OUTCOME_DELIVERED = "delivered"
OUTCOME_DEAD_LETTERED = "dead_lettered"

_queue_pool: ArqRedis | None = None
_queue_pool_loop: asyncio.AbstractEventLoop | None = None
_queue_lock = asyncio.Lock()


def _queue_key(queue_name: str) -> str:
    # arq keeps pending jobs in a sorted set under this key.
    return f"arq:queue:{queue_name}"


async def get_queue_pool() -> ArqRedis:
    # Cache the arq pool per event loop to avoid reconnect churn.
    global _queue_pool, _queue_pool_loop
    current_loop = asyncio.get_running_loop()
    if _queue_pool is not None and _queue_pool_loop == current_loop:
        return _queue_pool
    if _queue_pool is not None and _queue_pool_loop != current_loop:
        _queue_pool = None
    async with _queue_lock:
        if _queue_pool is None:
            settings = get_settings()
            _queue_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.email_queue_name,
            )
            _queue_pool_loop = current_loop
    return _queue_pool


async def enqueue_email_notification(request: NotificationRequest, *, defer_ms: int = 0) -> str | None:
    # Key the job by request_id so arq drops a second enqueue while the first is pending; None means skipped.
    settings = get_settings()
    redis = await get_queue_pool()
    defer = timedelta(milliseconds=max(0, int(defer_ms)))
    job = await redis.enqueue_job(
        DELIVER_FUNCTION,
        request.model_dump(mode="json"),
        _job_id=request.request_id,
        _queue_name=settings.email_queue_name,
        _defer_by=defer if defer.total_seconds() > 0 else None,
    )
    if job is None:
        logger.warning("notification_enqueue_skipped request_id=%s reason=duplicate_job_id", request.request_id)
        increment_counter("enqueue_duplicates_total")
        return None
    logger.info("notification_enqueued request_id=%s job_id=%s", request.request_id, job.job_id)
    return job.job_id


async def get_queue_depth() -> int | None:
    # Return None to signal Redis unavailability to the health surface.
    settings = get_settings()
    try:
        redis = await get_queue_pool()
        return int(await redis.zcard(_queue_key(settings.email_queue_name)))
    except Exception:  # noqa: BLE001 - health handles degraded Redis
        return None


class DeadLetterQueue:
    # Terminal routing for messages that will not be retried; operators drain the list by hand.

    def __init__(self, redis: Redis, *, key: str | None = None) -> None:
        self._redis = redis
        self._key = key or get_settings().email_dlq_key

    async def push(self, payload: Any, *, reason: str, error: str | None) -> None:
        entry = {
            "payload": payload,
            "reason": reason,
            "error": error,
            "dead_lettered_at": utc_now().isoformat(),
        }
        await self._redis.lpush(self._key, json.dumps(entry, default=str))
        increment_counter(f"dead_letter_total.{reason}")

    async def entries(self, limit: int = 50) -> list[dict[str, Any]]:
        raw_items = await self._redis.lrange(self._key, 0, max(0, limit - 1))
        items = []
        for raw in raw_items:
            value = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else str(raw)
            items.append(json.loads(value))
        return items

    async def size(self) -> int:
        return int(await self._redis.llen(self._key))


async def _requeue_delay_ms(policy: RetryPolicy, request_id: str) -> int:
    # Prefer the advisory next_retry_at stored with the attempt; fall back to a fresh backoff.
    record = await policy.get_record(request_id)
    if record is None:
        return policy.backoff_delay_ms(1)
    remaining = (record.next_retry_at - utc_now()).total_seconds() * 1000.0
    return max(0, int(remaining))


async def consume_notification(
    *,
    orchestrator: DeliveryOrchestrator,
    dead_letters: DeadLetterQueue,
    payload: dict[str, Any],
    job_try: int = 1,
) -> str:
    """Apply the ack / requeue / dead-letter contract to one queued message.

    Returning acknowledges the job. Raising ``arq.Retry`` requeues it with the
    backoff delay. Terminal failures, exhausted retries and any unexpected
    exception are dead-lettered and then acknowledged.
    """
    try:
        request = NotificationRequest.model_validate(payload)
    except ValidationError as exc:
        logger.error("notification_payload_invalid job_try=%s error=%s", job_try, exc)
        await dead_letters.push(payload, reason="invalid_payload", error=str(exc))
        return OUTCOME_DEAD_LETTERED

    request_id = request.request_id
    logger.info("notification_received request_id=%s job_try=%s", request_id, job_try)
    try:
        result = await orchestrator.process(request)
        if result.success:
            logger.info("notification_acked request_id=%s message_id=%s", request_id, result.message_id)
            return OUTCOME_DELIVERED
        if not result.retryable:
            logger.error("notification_dead_lettered request_id=%s reason=non_retryable", request_id)
            await dead_letters.push(payload, reason="non_retryable", error=result.error)
            return OUTCOME_DEAD_LETTERED
        if await orchestrator.should_retry(request_id):
            delay_ms = await _requeue_delay_ms(orchestrator.retry_policy, request_id)
            logger.warning("notification_requeued request_id=%s defer_ms=%s", request_id, delay_ms)
            increment_counter("requeue_total")
            raise Retry(defer=timedelta(milliseconds=delay_ms))
    except Retry:
        raise
    except Exception as exc:  # noqa: BLE001 - unanticipated conditions go to operators, not back to the queue
        logger.exception("notification_unhandled_error request_id=%s", request_id)
        await dead_letters.push(payload, reason="unhandled_exception", error=str(exc) or exc.__class__.__name__)
        return OUTCOME_DEAD_LETTERED

    logger.error("notification_dead_lettered request_id=%s reason=max_attempts_exceeded", request_id)
    await dead_letters.push(payload, reason="max_attempts_exceeded", error=result.error)
    return OUTCOME_DEAD_LETTERED
