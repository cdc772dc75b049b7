"""
app/api/dependencies.py

Shared FastAPI dependencies for request validation.
"""

from __future__ import annotations

import hmac

from fastapi import Depends, Header, HTTPException, status

from app.config import TriggerSettings, get_trigger_settings


def require_sync_token(
    x_sync_token: str | None = Header(default=None, alias="X-Sync-Token"),
    settings: TriggerSettings = Depends(get_trigger_settings),
) -> None:
    """
    Guard the sync control endpoints with the shared trigger secret.

    Remote triggering is disabled outright when no token is configured.
    """

    if not settings.token:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Remote sync triggering is not configured.",
        )
    if not x_sync_token or not hmac.compare_digest(x_sync_token.encode("utf-8"), settings.token.encode("utf-8")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid sync token.",
        )
