"""Sync endpoints: run incremental sync, toggle categories, drive the backfill."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from src.dependencies import Manager
from src.healthsync.errors import (
    NoEnabledCategoriesError,
    PersistenceError,
    SourceUnavailableError,
    SyncError,
    SyncInProgressError,
)
from src.models.sync import (
    BackfillProgressRead,
    CategoryRead,
    CategoryUpdate,
    RetryFailedResponse,
    SyncOutcomeRead,
    SyncRunResponse,
    SyncStatusRead,
)

router = APIRouter(prefix="/sync", tags=["sync"])
logger = logging.getLogger("healthsync.routers.sync")


# ---------- Incremental sync ----------

@router.get("/status", response_model=SyncStatusRead)
async def sync_status(manager: Manager) -> Any:
    try:
        last = manager.last_outcome()
        return SyncStatusRead(
            last_sync_date=manager.last_sync_date(),
            last_outcome=SyncOutcomeRead.from_outcome(last) if last else None,
            checkpoints=manager.checkpoints(),
            backfill_running=manager.backfill_running,
        )
    except PersistenceError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@router.post("", response_model=SyncRunResponse)
async def run_sync(manager: Manager, force: bool = Query(default=False)) -> Any:
    outcome = await manager.sync(force=force)
    if outcome is None:
        return SyncRunResponse(throttled=True)
    return SyncRunResponse(outcome=SyncOutcomeRead.from_outcome(outcome))


# ---------- Categories ----------

@router.get("/categories", response_model=list[CategoryRead])
async def list_categories(manager: Manager) -> Any:
    try:
        toggles = manager.categories()
    except PersistenceError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return [
        CategoryRead(
            id=cid,
            enabled=enabled,
            source_types=list(manager.config.categories.get(cid, [])),
        )
        for cid, enabled in toggles.items()
    ]


@router.put("/categories/{category_id}", response_model=CategoryRead)
async def update_category(category_id: str, body: CategoryUpdate, manager: Manager) -> Any:
    try:
        manager.set_category_enabled(category_id, body.enabled)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown category '{category_id}'")
    except PersistenceError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return CategoryRead(
        id=category_id,
        enabled=body.enabled,
        source_types=list(manager.config.categories[category_id]),
    )


# ---------- Backfill ----------

@router.post("/backfill/discover", response_model=BackfillProgressRead)
async def discover_backfill(manager: Manager) -> Any:
    try:
        progress = await manager.discover_backfill()
    except SourceUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except NoEnabledCategoriesError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PersistenceError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except SyncError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    if progress is None:
        raise HTTPException(status_code=404, detail="No data available to backfill")
    return BackfillProgressRead.from_progress(progress, running=manager.backfill_running)


@router.get("/backfill", response_model=BackfillProgressRead)
async def get_backfill(manager: Manager) -> Any:
    try:
        progress = manager.tracker.progress
    except PersistenceError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    if progress is None:
        raise HTTPException(status_code=404, detail="Backfill has not been discovered")
    return BackfillProgressRead.from_progress(progress, running=manager.backfill_running)


@router.post("/backfill/start", status_code=202)
async def start_backfill(manager: Manager) -> dict:
    try:
        manager.start_backfill()
    except SyncInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"started": True}


@router.post("/backfill/cancel")
async def cancel_backfill(manager: Manager) -> dict:
    cancelled = await manager.cancel_backfill()
    return {"cancelled": cancelled}


@router.post("/backfill/retry-failed", response_model=RetryFailedResponse)
async def retry_failed(manager: Manager) -> Any:
    try:
        return RetryFailedResponse(reset=manager.retry_failed())
    except PersistenceError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@router.delete("/backfill", status_code=204)
async def reset_backfill(manager: Manager) -> None:
    try:
        manager.reset_backfill()
    except SyncInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except PersistenceError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    logger.info("Backfill progress reset via API")
