"""Health and metrics endpoints."""

from __future__ import annotations

import time
from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response, status

from albumsync.api.deps import get_sync_engine
from albumsync.schemas.metrics import (
    HealthResponse,
    HealthStatus,
    MetricsResponse,
)
from albumsync.services.datetime_service import now_utc
from albumsync.services.sync_engine import SyncEngine

router = APIRouter(tags=["health"])


def _health_status(request: Request, engine: SyncEngine) -> HealthStatus:
    """Starting until the startup auth check ran, then auth and last cycle decide."""
    if not getattr(request.app.state, "ready", False):
        return HealthStatus.STARTING
    metrics = engine.metrics
    if not metrics.target_authenticated:
        return HealthStatus.UNHEALTHY
    if metrics.last_run is not None and not metrics.last_run.success:
        return HealthStatus.UNHEALTHY
    return HealthStatus.HEALTHY


def _uptime(request: Request) -> float:
    started: float = request.app.state.started_monotonic
    return round(time.monotonic() - started, 3)


def _set_status_code(response: Response, health: HealthStatus) -> None:
    if health is not HealthStatus.HEALTHY:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE


@router.get("/health", response_model=HealthResponse)
async def health_check(
    request: Request,
    response: Response,
    engine: Annotated[SyncEngine, Depends(get_sync_engine)],
) -> HealthResponse:
    """Liveness for monitoring: 200 when healthy, 503 otherwise."""
    health = _health_status(request, engine)
    _set_status_code(response, health)
    return HealthResponse(status=health, uptime=_uptime(request), timestamp=now_utc())


@router.get("/metrics", response_model=MetricsResponse)
async def metrics(
    request: Request,
    response: Response,
    engine: Annotated[SyncEngine, Depends(get_sync_engine)],
) -> MetricsResponse:
    """Health plus the last run and lifetime counters."""
    health = _health_status(request, engine)
    _set_status_code(response, health)
    return MetricsResponse(
        status=health,
        uptime=_uptime(request),
        timestamp=now_utc(),
        sync_running=engine.is_running,
        deletion_policy=str(engine.deletion_policy),
        **engine.metrics.to_dict(),
    )
