"""Manual sync trigger."""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Request

from albumsync.api.deps import get_scheduler, get_sync_engine, require_admin_token
from albumsync.schemas.metrics import SyncRunResponse
from albumsync.services.scheduler import SyncScheduler
from albumsync.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/sync",
    tags=["sync"],
    dependencies=[Depends(require_admin_token)],
)


@router.post("/run", response_model=SyncRunResponse)
async def run_sync(
    request: Request,
    engine: Annotated[SyncEngine, Depends(get_sync_engine)],
    scheduler: Annotated[SyncScheduler, Depends(get_scheduler)],
) -> SyncRunResponse:
    """Start a cycle in the background unless one is already running."""
    if engine.is_running:
        return SyncRunResponse(started=False)

    task = asyncio.create_task(scheduler.run_once(), name="manual-sync")
    # Keep a strong reference until the task finishes.
    tasks: set[asyncio.Task[bool]] = request.app.state.background_tasks
    tasks.add(task)
    task.add_done_callback(tasks.discard)
    logger.info("Manual sync triggered")
    return SyncRunResponse(started=True)
