from __future__ import annotations

import logging
import time
from typing import Generic, TypeVar
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from mailcourier.core.config import get_settings
from mailcourier.core.errors import LookupUnavailableError
from mailcourier.domain.models import EmailTemplate, SubjectData
from mailcourier.persistence.kv import KeyValueStore
from mailcourier.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class CachedHttpLookup(Generic[ModelT]):
    """Read-through KV cache in front of an HTTP lookup service.

    404 is a typed "not found" outcome and returns ``None``. Any other HTTP
    status, network error or malformed body raises ``LookupUnavailableError``
    so the orchestrator treats it as transient. Cache failures never fail the
    lookup.
    """

    integration: str = "lookup"
    cache_prefix: str = "lookup"
    path_template: str = "/{key}"
    model: type[ModelT]

    def __init__(
        self,
        store: KeyValueStore,
        *,
        base_url: str,
        cache_ttl_s: int,
        timeout_s: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._store = store
        self._base_url = base_url.rstrip("/")
        self._cache_ttl_s = cache_ttl_s
        self._timeout_s = timeout_s if timeout_s is not None else get_settings().lookup_timeout_ms / 1000.0
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per lookup for connection pooling.
        self._client = httpx.AsyncClient(timeout=self._timeout_s)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _cache_key(self, key: str) -> str:
        return f"{self.cache_prefix}:{key}"

    def _url(self, key: str) -> str:
        return self._base_url + self.path_template.format(key=quote(key, safe=""))

    async def _read_cache(self, key: str) -> ModelT | None:
        try:
            raw = await self._store.get(self._cache_key(key))
        except Exception as exc:  # noqa: BLE001 - fall through to the lookup service
            logger.warning("%s_cache_read_failed key=%s", self.integration, key, exc_info=exc)
            return None
        if not raw:
            return None
        try:
            return self.model.model_validate_json(raw)
        except ValidationError:
            logger.warning("%s_cache_entry_invalid key=%s", self.integration, key)
            return None

    async def _write_cache(self, key: str, value: ModelT) -> None:
        try:
            await self._store.set(self._cache_key(key), value.model_dump_json(), self._cache_ttl_s)
        except Exception as exc:  # noqa: BLE001 - cache writes are best-effort
            logger.warning("%s_cache_write_failed key=%s", self.integration, key, exc_info=exc)

    async def fetch(self, key: str) -> ModelT | None:
        cached = await self._read_cache(key)
        if cached is not None:
            logger.debug("%s_cache_hit key=%s", self.integration, key)
            return cached

        start = time.monotonic()
        try:
            response = await self._get_client().get(
                self._url(key),
                headers={"X-Service": get_settings().app_name},
                timeout=self._timeout_s,
            )
        except httpx.HTTPError as exc:
            record_external_call(
                integration=self.integration,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise LookupUnavailableError(f"{self.integration} lookup failed for {key}: {exc!r}") from exc

        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code == 404:
            record_external_call(integration=self.integration, latency_ms=latency_ms, success=True)
            logger.warning("%s_not_found key=%s", self.integration, key)
            return None
        if response.status_code >= 400:
            record_external_call(integration=self.integration, latency_ms=latency_ms, success=False)
            raise LookupUnavailableError(
                f"{self.integration} lookup for {key} returned HTTP {response.status_code}"
            )
        record_external_call(integration=self.integration, latency_ms=latency_ms, success=True)

        try:
            payload = response.json()
            # Services wrap the resource in a {"data": ...} envelope; accept bare bodies too.
            data = payload.get("data", payload) if isinstance(payload, dict) else payload
            value = self.model.model_validate(data)
        except (ValueError, ValidationError) as exc:
            raise LookupUnavailableError(f"{self.integration} returned a malformed body for {key}") from exc

        await self._write_cache(key, value)
        return value

    async def invalidate(self, key: str) -> None:
        await self._store.delete(self._cache_key(key))
        logger.info("%s_cache_invalidated key=%s", self.integration, key)


class SubjectDirectory(CachedHttpLookup[SubjectData]):
    integration = "user_service"
    cache_prefix = "user"
    path_template = "/api/v1/users/{key}"
    model = SubjectData


class TemplateCatalog(CachedHttpLookup[EmailTemplate]):
    integration = "template_service"
    cache_prefix = "template"
    path_template = "/api/v1/templates/{key}"
    model = EmailTemplate


def build_subject_directory(store: KeyValueStore, *, client: httpx.AsyncClient | None = None) -> SubjectDirectory:
    settings = get_settings()
    return SubjectDirectory(
        store,
        base_url=settings.user_service_url,
        cache_ttl_s=settings.user_cache_ttl_s,
        client=client,
    )


def build_template_catalog(store: KeyValueStore, *, client: httpx.AsyncClient | None = None) -> TemplateCatalog:
    settings = get_settings()
    return TemplateCatalog(
        store,
        base_url=settings.template_service_url,
        cache_ttl_s=settings.template_cache_ttl_s,
        client=client,
    )
