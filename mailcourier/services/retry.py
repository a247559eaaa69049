from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from pydantic import ValidationError

from mailcourier.core.config import get_settings
from mailcourier.domain.models import RetryRecord, utc_now
from mailcourier.persistence.kv import KeyValueStore


logger = logging.getLogger(__name__)


def retry_key(request_id: str) -> str:
    return f"retry:{request_id}"


@dataclass(frozen=True)
class RetryConfig:
    # Centralize requeue behavior for deterministic policy changes.
    max_attempts: int
    initial_delay_ms: int
    multiplier: float
    max_delay_ms: int
    jitter_ratio: float
    ttl_seconds: int


def default_retry_config() -> RetryConfig:
    settings = get_settings()
    return RetryConfig(
        max_attempts=max(1, settings.retry_max_attempts),
        initial_delay_ms=max(1, settings.retry_initial_delay_ms),
        multiplier=max(1.0, settings.retry_backoff_multiplier),
        max_delay_ms=max(1, settings.retry_max_delay_ms),
        jitter_ratio=max(0.0, settings.retry_jitter_ratio),
        ttl_seconds=max(1, settings.retry_record_ttl_s),
    )


class RetryPolicy:
    """Attempt counting and backoff for failed deliveries.

    Attempt records live in the KV store under ``retry:<request_id>`` so the
    count survives redelivery to a different worker. The read-modify-write in
    :meth:`record_attempt` is not atomic; two workers failing the same request
    at the same instant can lose one increment.

    ``next_retry_at`` is advisory. The queue's own deferral provides the real
    delay; the worker passes :meth:`backoff_delay_ms` to it.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        config: RetryConfig | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store
        self._config = config or default_retry_config()
        # OS entropy keeps jitter sequences independent across worker processes.
        self._rng = rng or random.SystemRandom()

    @property
    def config(self) -> RetryConfig:
        return self._config

    async def get_record(self, request_id: str) -> RetryRecord | None:
        raw = await self._store.get(retry_key(request_id))
        if not raw:
            return None
        try:
            return RetryRecord.model_validate_json(raw)
        except ValidationError:
            logger.warning("retry_record_unreadable request_id=%s", request_id)
            return None

    async def get_attempt_count(self, request_id: str) -> int:
        record = await self.get_record(request_id)
        return record.attempt_count if record is not None else 0

    async def record_attempt(self, request_id: str, error: str) -> RetryRecord:
        now = utc_now()
        record = await self.get_record(request_id)
        if record is None:
            record = RetryRecord(
                request_id=request_id,
                attempt_count=1,
                first_attempt_at=now,
                last_attempt_at=now,
                next_retry_at=now,
                errors=[error],
            )
        else:
            record.attempt_count += 1
            record.last_attempt_at = now
            record.errors.append(error)
        delay_ms = self.backoff_delay_ms(record.attempt_count)
        record.next_retry_at = now + timedelta(milliseconds=delay_ms)
        await self._store.set(retry_key(request_id), record.model_dump_json(), self._config.ttl_seconds)
        logger.info(
            "retry_recorded request_id=%s attempt=%s/%s next_retry_ms=%s",
            request_id,
            record.attempt_count,
            self._config.max_attempts,
            delay_ms,
        )
        return record

    async def should_retry(self, request_id: str) -> bool:
        count = await self.get_attempt_count(request_id)
        allowed = count < self._config.max_attempts
        if not allowed:
            logger.warning(
                "retry_exhausted request_id=%s attempts=%s max_attempts=%s",
                request_id,
                count,
                self._config.max_attempts,
            )
        return allowed

    async def clear(self, request_id: str) -> None:
        await self._store.delete(retry_key(request_id))
        logger.debug("retry_cleared request_id=%s", request_id)

    def base_delay_ms(self, attempt_count: int) -> int:
        # delay = initial * multiplier^(attempt - 1), capped at max_delay.
        exponent = max(0, int(attempt_count) - 1)
        cap = self._config.max_delay_ms
        delay = self._config.initial_delay_ms
        for _ in range(exponent):
            delay = delay * self._config.multiplier
            if delay >= cap:
                return cap
        return int(min(delay, cap))

    def backoff_delay_ms(self, attempt_count: int) -> int:
        base = self.base_delay_ms(attempt_count)
        jitter = self._rng.uniform(0, self._config.jitter_ratio * base)
        return int(base + jitter)

    def describe(self) -> dict[str, Any]:
        return {
            "max_attempts": self._config.max_attempts,
            "initial_delay_ms": self._config.initial_delay_ms,
            "max_delay_ms": self._config.max_delay_ms,
            "backoff_multiplier": self._config.multiplier,
            "jitter_ratio": self._config.jitter_ratio,
        }
