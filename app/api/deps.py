"""Shared API dependencies."""

import secrets
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from app.config import get_settings


async def require_api_token(authorization: Optional[str] = Header(None)) -> None:
    """Require ``Authorization: Bearer <api_token>`` when a token is configured."""
    expected = get_settings().api_token
    if not expected:
        return

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(token.strip(), expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_sync_service(request: Request):
    """The process-wide sync service created at start-up."""
    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync service is not running",
        )
    return service
