"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.config import Settings, get_settings
from src.healthsync.sync.scheduler import SyncManager


async def get_sync_manager(request: Request) -> SyncManager:
    """Return the SyncManager built during application startup.

    The lifespan hook sets ``app.state.sync_manager`` before routes run.
    """
    manager: SyncManager | None = getattr(request.app.state, "sync_manager", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="Sync engine not initialised")
    return manager


# Annotated shortcuts for route signatures
Manager = Annotated[SyncManager, Depends(get_sync_manager)]
AppSettings = Annotated[Settings, Depends(get_settings)]
