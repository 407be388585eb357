"""API endpoints module."""

from fastapi import APIRouter, Depends

from app.api.config import router as config_router
from app.api.deps import require_api_token
from app.api.sync import router as sync_router

api_router = APIRouter(prefix="/api", dependencies=[Depends(require_api_token)])

api_router.include_router(sync_router)
api_router.include_router(config_router)

__all__ = ["api_router"]
