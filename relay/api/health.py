from __future__ import annotations

from fastapi import APIRouter, Depends

from relay.api.deps import get_manager
from relay.services.accounts import AccountManager
from relay.utils.time import isoformat_utc, utc_now

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(manager: AccountManager = Depends(get_manager)) -> dict:
    return {
        "status": "ok",
        **manager.health(),
        "timestamp": isoformat_utc(utc_now()),
    }


@router.get("/status/{account_id}")
async def account_status(
    account_id: str,
    manager: AccountManager = Depends(get_manager),
) -> dict:
    session = manager.registry.get(account_id)
    state = manager.supervisor.state_of(account_id).value
    if session is None:
        return {"connected": False, "botId": account_id, "state": state}
    return {
        "connected": session.is_live(),
        "botId": account_id,
        "botName": session.name,
        "botUsername": session.username,
        "connectedAt": isoformat_utc(session.connected_at),
        "state": state,
    }
