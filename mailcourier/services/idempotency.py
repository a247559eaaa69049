from __future__ import annotations

import logging
from typing import Literal

from pydantic import ValidationError

from mailcourier.core.config import get_settings
from mailcourier.domain.models import ProcessedRecord
from mailcourier.persistence.kv import KeyValueStore


logger = logging.getLogger(__name__)


def processed_key(request_id: str) -> str:
    return f"processed:{request_id}"


class IdempotencyGuard:
    # Best-effort duplicate suppression: check and mark are separate KV calls, so
    # two workers racing on the same request id can both pass the check.

    def __init__(self, store: KeyValueStore, *, ttl_seconds: int | None = None) -> None:
        self._store = store
        self._ttl_seconds = ttl_seconds or get_settings().idempotency_ttl_s

    async def is_processed(self, request_id: str) -> bool:
        # Presence alone counts; the record body is never inspected on the fast path.
        return await self._store.exists(processed_key(request_id))

    async def mark_processed(
        self,
        request_id: str,
        outcome: Literal["success", "failure"],
        result_detail: str | None = None,
    ) -> ProcessedRecord:
        # Last write wins; a duplicate mark is not an error.
        record = ProcessedRecord(request_id=request_id, outcome=outcome, result_detail=result_detail)
        await self._store.set(processed_key(request_id), record.model_dump_json(), self._ttl_seconds)
        return record

    async def get_record(self, request_id: str) -> ProcessedRecord | None:
        raw = await self._store.get(processed_key(request_id))
        if not raw:
            return None
        try:
            return ProcessedRecord.model_validate_json(raw)
        except ValidationError:
            logger.warning("processed_record_unreadable request_id=%s", request_id)
            return None
