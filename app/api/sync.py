"""Sync status and control API endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from app.api.deps import get_sync_service
from app.database import set_setting
from app.jobs.sync_job import is_sync_paused
from app.sync.history import get_last_sync_status, get_sync_history, get_sync_progress

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["sync"])


class SyncStatusResponse(BaseModel):
    """Last run summary plus the current run state."""
    running: bool
    sync_paused: bool = False
    last_sync: Optional[dict] = None


class SyncHistoryResponse(BaseModel):
    runs: list[dict]
    total: int


class MessageResponse(BaseModel):
    status: str
    message: str


@router.post("/run", response_model=MessageResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_sync(service=Depends(get_sync_service)):
    """Start a sync run in the background."""
    if not service.start_background_run():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A sync run is already in progress",
        )

    logger.info("Manual sync run triggered")
    return MessageResponse(status="started", message="Sync run started")


@router.get("/progress")
async def get_progress(service=Depends(get_sync_service)):
    """Progress of the current or last run."""
    progress = await get_sync_progress()
    if progress is None:
        progress = {"state": "idle", "message": "No sync has run yet"}
    progress["running"] = service.is_running
    return progress


@router.get("/history", response_model=SyncHistoryResponse)
async def get_history(limit: int = Query(10, ge=1, le=100)):
    """The last ``limit`` run summaries, newest first."""
    runs = await get_sync_history(limit)
    return SyncHistoryResponse(runs=runs, total=len(runs))


@router.get("/status", response_model=SyncStatusResponse)
async def get_status(service=Depends(get_sync_service)):
    """Summary of the last finished run."""
    return SyncStatusResponse(
        running=service.is_running,
        sync_paused=await is_sync_paused(),
        last_sync=await get_last_sync_status(),
    )


@router.get("/stats")
async def get_stats(service=Depends(get_sync_service)):
    """Loop-detection statistics and request-gate usage."""
    return service.get_statistics()


@router.post("/reset", response_model=MessageResponse)
async def reset_sync_state(service=Depends(get_sync_service)):
    """Clear loop-detection history and the stored last status."""
    if service.is_running:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Cannot reset state while a sync run is in progress",
        )

    await service.reset_state()
    return MessageResponse(status="ok", message="Sync state has been reset")


@router.post("/pause", response_model=MessageResponse)
async def pause_sync():
    """Pause scheduled syncing."""
    await set_setting("sync_paused", "true")
    logger.info("Scheduled sync paused")
    return MessageResponse(status="ok", message="Scheduled sync paused")


@router.post("/resume", response_model=MessageResponse)
async def resume_sync():
    """Resume scheduled syncing."""
    await set_setting("sync_paused", "false")
    logger.info("Scheduled sync resumed")
    return MessageResponse(status="ok", message="Scheduled sync resumed")
