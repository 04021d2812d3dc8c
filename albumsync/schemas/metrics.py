"""Health and metrics schemas."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STARTING = "starting"


class HealthResponse(BaseModel):
    status: HealthStatus
    uptime: float
    timestamp: datetime


class LastRunResponse(BaseModel):
    timestamp: datetime
    duration_ms: int
    added: int
    removed: int
    failed: int
    skipped_removals: int
    success: bool
    error: str | None = None


class MetricsResponse(HealthResponse):
    """Health plus the full run metrics snapshot."""

    last_run: LastRunResponse | None = None
    total_runs: int
    total_failures: int
    target_authenticated: bool
    sync_running: bool
    deletion_policy: str


class SyncRunResponse(BaseModel):
    started: bool
