"""Shared API dependencies: settings, store, engine, admin auth."""

from __future__ import annotations

import secrets
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from albumsync.config import Settings
from albumsync.services.mapping_store import MappingStore
from albumsync.services.scheduler import SyncScheduler
from albumsync.services.sync_engine import SyncEngine

security = HTTPBearer(auto_error=False)


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


def get_store(request: Request) -> MappingStore:
    """Get the mapping store from app state."""
    store: MappingStore = request.app.state.store
    return store


def get_sync_engine(request: Request) -> SyncEngine:
    """Get the sync engine from app state."""
    engine: SyncEngine = request.app.state.sync_engine
    return engine


def get_scheduler(request: Request) -> SyncScheduler:
    """Get the sync scheduler from app state."""
    scheduler: SyncScheduler = request.app.state.scheduler
    return scheduler


async def require_admin_token(
    settings: Annotated[Settings, Depends(get_settings)],
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
) -> None:
    """Require the admin bearer token when one is configured. Raises 401 otherwise."""
    expected = settings.admin_token
    if not expected:
        return
    if credentials is None or not secrets.compare_digest(
        credentials.credentials.encode(), expected.encode()
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
