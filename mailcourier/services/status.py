from __future__ import annotations

import logging
from typing import Any, Protocol

from pydantic import ValidationError
from redis.asyncio import Redis

from mailcourier.core.config import get_settings
from mailcourier.domain.models import NotificationStatus, StatusUpdate
from mailcourier.persistence.kv import KeyValueStore
from mailcourier.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def status_key(notification_id: str) -> str:
    return f"status:{notification_id}"


class StatusSink(Protocol):
    async def emit(self, topic: str, update: StatusUpdate) -> None:
        ...


class RedisStatusSink:
    # Publish status transitions on a pub/sub channel; subscribers own durability.

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def emit(self, topic: str, update: StatusUpdate) -> None:
        await self._redis.publish(topic, update.model_dump_json())


class RecordingStatusSink:
    # Keep emitted updates in memory for local runs and tests.

    def __init__(self) -> None:
        self.events: list[tuple[str, StatusUpdate]] = []

    async def emit(self, topic: str, update: StatusUpdate) -> None:
        self.events.append((topic, update))

    def statuses(self, notification_id: str | None = None) -> list[NotificationStatus]:
        return [
            update.status
            for _topic, update in self.events
            if notification_id is None or update.notification_id == notification_id
        ]


class StatusReporter:
    """Publishes lifecycle transitions and caches the latest one per notification.

    Status reporting never fails the pipeline: sink and cache errors are logged
    and swallowed here.
    """

    def __init__(
        self,
        sink: StatusSink,
        store: KeyValueStore,
        *,
        topic: str | None = None,
        ttl_seconds: int | None = None,
    ) -> None:
        settings = get_settings()
        self._sink = sink
        self._store = store
        self._topic = topic or settings.status_topic
        self._ttl_seconds = ttl_seconds or settings.status_cache_ttl_s

    async def publish(self, update: StatusUpdate) -> None:
        try:
            await self._sink.emit(self._topic, update)
        except Exception as exc:  # noqa: BLE001 - status is observability, not a delivery dependency
            increment_counter("status_publish_failures_total")
            logger.error(
                "status_emit_failed notification_id=%s status=%s",
                update.notification_id,
                update.status.value,
                exc_info=exc,
            )
        try:
            await self._store.set(status_key(update.notification_id), update.model_dump_json(), self._ttl_seconds)
        except Exception as exc:  # noqa: BLE001 - cache writes are best-effort
            increment_counter("status_cache_failures_total")
            logger.error(
                "status_cache_failed notification_id=%s status=%s",
                update.notification_id,
                update.status.value,
                exc_info=exc,
            )

    async def update(
        self,
        notification_id: str,
        status: NotificationStatus,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> StatusUpdate:
        update = StatusUpdate(notification_id=notification_id, status=status, error=error, metadata=metadata)
        await self.publish(update)
        return update

    async def get_status(self, notification_id: str) -> StatusUpdate | None:
        raw = await self._store.get(status_key(notification_id))
        if not raw:
            return None
        try:
            return StatusUpdate.model_validate_json(raw)
        except ValidationError:
            return None
