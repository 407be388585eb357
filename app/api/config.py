"""Sync configuration API endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from app.api.deps import get_sync_service
from app.config import SyncConfig, get_settings
from app.sync.configuration import (
    InvalidConfigurationError,
    check_calendar_access,
    clear_sync_config,
    load_stored_config,
    load_sync_config,
    save_sync_config,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/config", tags=["config"])


class SyncConfigUpdate(BaseModel):
    """New sync configuration; omitted tuning values keep their defaults."""
    source_calendar_ids: list[str]
    target_calendar_id: str
    days_back: Optional[int] = None
    days_forward: Optional[int] = None
    loop_detection_window_ms: Optional[int] = None
    max_sync_attempts: Optional[int] = None
    min_update_interval_ms: Optional[int] = None


class SyncConfigResponse(BaseModel):
    source: str
    config: dict
    errors: list[str] = []


def _probe_access(service, config: SyncConfig) -> tuple[list[dict], Optional[str]]:
    try:
        client = service.get_client()
    except Exception as e:
        logger.error(f"Cannot create calendar client: {e}")
        return [], f"Cannot create calendar client: {e}"
    return check_calendar_access(client, config), None


@router.get("", response_model=SyncConfigResponse)
async def get_config():
    """Current run configuration and where it comes from."""
    config = await load_sync_config()
    source = "stored" if await load_stored_config() is not None else "environment"
    return SyncConfigResponse(source=source, config=config.to_dict(), errors=config.validate())


@router.put("")
async def update_config(update: SyncConfigUpdate, service=Depends(get_sync_service)):
    """Validate and store a new configuration, then check calendar access."""
    defaults = SyncConfig.from_settings(get_settings())
    data = {key: value for key, value in update.model_dump().items() if value is not None}
    config = SyncConfig.from_dict(data, defaults)

    try:
        await save_sync_config(config)
    except InvalidConfigurationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": "Invalid configuration", "errors": e.errors},
        )

    access, error = _probe_access(service, config)
    return {
        "status": "saved",
        "config": config.to_dict(),
        "access": access,
        "access_error": error,
    }


@router.delete("")
async def delete_config():
    """Fall back to the environment configuration."""
    await clear_sync_config()
    config = await load_sync_config()
    return {"status": "cleared", "config": config.to_dict()}


@router.post("/test")
async def test_config(service=Depends(get_sync_service)):
    """Check that every configured calendar can be reached."""
    config = await load_sync_config()
    errors = config.validate()
    access, error = _probe_access(service, config)

    ok = not errors and error is None and all(item["accessible"] for item in access)
    return {
        "ok": ok,
        "errors": errors,
        "access": access,
        "access_error": error,
    }
