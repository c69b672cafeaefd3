from __future__ import annotations

import hmac

from fastapi import Header, HTTPException, Request, status

from relay.core.config import settings
from relay.services.accounts import AccountManager


def require_sync_secret(x_sync_secret: str | None = Header(default=None)) -> None:
    provided = (x_sync_secret or "").encode("utf-8")
    expected = settings.SYNC_SECRET.encode("utf-8")
    if not provided or not hmac.compare_digest(provided, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def get_manager(request: Request) -> AccountManager:
    manager = getattr(request.app.state, "manager", None)
    if manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Relay is not running",
        )
    return manager
