"""Health reporting endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ...monitoring.health import HealthStatus
from ...runtime import Runtime
from ..deps import get_runtime

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

ONE_HOUR_MS = 3_600_000


class ServiceMetricsResponse(BaseModel):
    service: str
    uptimePct: float
    avgResponseTimeMs: float
    errorRatePct: float
    sampleCount: int
    windowMs: int


def _status_code(status: HealthStatus) -> int:
    return 503 if status == HealthStatus.UNHEALTHY else 200


@router.head("/health")
async def health_probe(runtime: Runtime = Depends(get_runtime)) -> Response:
    """Liveness probe: 200 or 503, no body."""
    health = await runtime.health.check_all_services()
    return Response(status_code=_status_code(health.overall))


@router.get("/health")
async def get_health(
    service: Optional[str] = None,
    metrics: bool = False,
    runtime: Runtime = Depends(get_runtime),
) -> JSONResponse:
    """System health, or a single service's health with ?service=name."""
    if service:
        result = await runtime.health.check_service_health(service)
        return JSONResponse(result.to_dict(), status_code=_status_code(result.status))

    health = await runtime.health.check_all_services()
    body = health.to_dict()

    if metrics:
        body["errorMetrics"] = runtime.error_log.get_error_metrics(ONE_HOUR_MS / 1000).to_dict()
        body["circuitBreakers"] = [b.get_status() for b in runtime.breakers.values()]
        body["cache"] = runtime.cache.health()

    return JSONResponse(body, status_code=_status_code(health.overall))


@router.get("/health/{service}/metrics", response_model=ServiceMetricsResponse)
async def get_service_metrics(
    service: str,
    window: int = Query(ONE_HOUR_MS, ge=1, description="Window in milliseconds"),
    runtime: Runtime = Depends(get_runtime),
):
    """Uptime, latency and error rate derived from a service's history."""
    if service not in runtime.health.services:
        raise HTTPException(status_code=404, detail=f"Service not registered: {service}")

    metrics = runtime.health.get_service_metrics(service, window / 1000)
    return ServiceMetricsResponse(service=service, windowMs=window, **metrics.to_dict())
