"""Health check endpoint — public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from src.dependencies import AppSettings

router = APIRouter(tags=["system"])
logger = logging.getLogger("healthsync.health")


@router.get("/health")
async def health_check(request: Request, settings: AppSettings) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also reports whether the device data source is reachable.
    """
    manager = getattr(request.app.state, "sync_manager", None)
    source_ok = False
    if manager is not None:
        try:
            source_ok = manager.engine.source.is_available()
        except OSError as exc:
            logger.warning("Health check source probe failed: %s", exc)

    return {
        "status": "healthy" if source_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "data_source": "available" if source_ok else "unavailable",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
