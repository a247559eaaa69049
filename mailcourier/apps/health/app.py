from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Literal

from fastapi import FastAPI, Request
from pydantic import BaseModel

from mailcourier.core.config import get_settings
from mailcourier.services.container import DeliveryPipeline
from mailcourier.services.queue import get_queue_depth
from mailcourier.services.telemetry import counters_snapshot, external_latency_by_integration, gauges_snapshot


logger = logging.getLogger("mailcourier.health")

SERVICE_NAME = "email-service"
SERVICE_VERSION = "1.0.0"
# Latency samples older than this fall out of the health view.
EXTERNAL_CALL_WINDOW_S = 300


class DependencyStatus(BaseModel):
    status: Literal["up", "down"]


class CircuitSummary(BaseModel):
    name: str
    state: str
    failure_count: int


class HealthResponse(BaseModel):
    status: Literal["healthy", "unhealthy"]
    timestamp: str
    service: str
    version: str | None = None
    dependencies: dict[str, DependencyStatus] | None = None
    circuit_breakers: list[CircuitSummary] | None = None
    queue_depth: int | None = None
    counters: dict[str, int] | None = None
    gauges: dict[str, float] | None = None
    external_calls: dict[str, dict[str, float | int]] | None = None
    retry_policy: dict[str, float | int] | None = None
    uptime: float | None = None
    error: str | None = None


class ReadinessResponse(BaseModel):
    status: Literal["ready", "not_ready"]
    message: str | None = None
    error: str | None = None


class LivenessResponse(BaseModel):
    status: Literal["alive"]
    timestamp: str


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _up(flag: bool) -> DependencyStatus:
    return DependencyStatus(status="up" if flag else "down")


def create_app(
    pipeline: DeliveryPipeline,
    *,
    queue_depth: Callable[[], Awaitable[int | None]] | None = None,
) -> FastAPI:
    # The pipeline is the one the consumer in this process uses, so circuits and counters are live.
    started_at = time.monotonic()
    queue_depth = queue_depth or get_queue_depth

    app = FastAPI(title="mailcourier health")
    app.state.pipeline = pipeline

    def _pipeline(request: Request) -> DeliveryPipeline:
        return request.app.state.pipeline

    @app.get("/health", response_model=HealthResponse, response_model_exclude_none=True)
    async def health(request: Request) -> HealthResponse:
        timestamp = _utc_now_iso()
        try:
            current = _pipeline(request)
            kv_up = await current.store.ping()
            transport_up = await current.transport.verify()
            circuits = [
                CircuitSummary(name=name, state=record.state.value, failure_count=record.failure_count)
                for name, record in sorted(current.breakers.get_all_circuits().items())
            ]
            return HealthResponse(
                status="healthy" if kv_up and transport_up else "unhealthy",
                timestamp=timestamp,
                service=SERVICE_NAME,
                version=SERVICE_VERSION,
                dependencies={"redis": _up(kv_up), "email_transporter": _up(transport_up)},
                circuit_breakers=circuits,
                queue_depth=await queue_depth(),
                counters=counters_snapshot(),
                gauges=gauges_snapshot(),
                external_calls=external_latency_by_integration(EXTERNAL_CALL_WINDOW_S),
                retry_policy=current.retry_policy.describe(),
                uptime=round(time.monotonic() - started_at, 3),
            )
        except Exception as exc:  # noqa: BLE001 - health must answer even when wiring is broken
            logger.error("health_check_failed", exc_info=exc)
            return HealthResponse(status="unhealthy", timestamp=timestamp, service=SERVICE_NAME, error=str(exc))

    @app.get("/health/ready", response_model=ReadinessResponse, response_model_exclude_none=True)
    async def ready(request: Request) -> ReadinessResponse:
        try:
            if not await _pipeline(request).store.ping():
                return ReadinessResponse(status="not_ready", message="Redis connection not available")
        except Exception as exc:  # noqa: BLE001 - readiness reports instead of raising
            return ReadinessResponse(status="not_ready", error=str(exc))
        return ReadinessResponse(status="ready", message="Service is ready to accept traffic")

    @app.get("/health/live", response_model=LivenessResponse)
    async def live() -> LivenessResponse:
        return LivenessResponse(status="alive", timestamp=_utc_now_iso())

    return app


def load_port() -> int:
    return get_settings().health_port
