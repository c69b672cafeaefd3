from __future__ import annotations

import structlog
from fastapi import APIRouter, Body, Depends, HTTPException, status

from relay.api.deps import get_manager, require_sync_secret
from relay.schemas.admin import (
    DeleteManyPayload,
    DeletePayload,
    EditPayload,
    ReloadPayload,
    SendPayload,
)
from relay.services.accounts import AccountManager, SessionUnavailableError
from relay.services.backend import AccountNotFoundError, BackendError

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["accounts"], dependencies=[Depends(require_sync_secret)])


def _not_connected() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not connected")


def _unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Account session is reconnecting",
    )


def _protocol_failure(action: str, account_id: str, exc: Exception) -> HTTPException:
    logger.error(
        "errors",
        stage="protocol_action",
        action=action,
        account_id=account_id,
        error=str(exc) or type(exc).__name__,
    )
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


@router.post("/reload-bots")
async def reload_bots(
    payload: ReloadPayload | None = Body(default=None),
    manager: AccountManager = Depends(get_manager),
) -> dict:
    payload = payload or ReloadPayload()
    logger.info("reload_requested", action=payload.action or "full_reload", bot_id=payload.bot_id)
    try:
        await manager.reload()
    except (BackendError, AccountNotFoundError) as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return {
        "success": True,
        "message": "Bots reloaded successfully",
        "connectedBots": len(manager.registry),
        "action": payload.action,
        "botId": payload.bot_id,
    }


@router.post("/reload")
async def reload_legacy(manager: AccountManager = Depends(get_manager)) -> dict:
    logger.info("reload_requested", action="legacy")
    try:
        await manager.reload()
    except BackendError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return {"status": "reloaded", "connectedBots": len(manager.registry)}


@router.post("/connect/{account_id}")
async def connect_account(
    account_id: str,
    manager: AccountManager = Depends(get_manager),
) -> dict:
    try:
        success, record = await manager.connect_by_id(account_id)
    except AccountNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Bot not found") from exc
    except BackendError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return {"success": success, "botId": account_id, "botName": record.name}


@router.post("/disconnect/{account_id}")
async def disconnect_account(
    account_id: str,
    manager: AccountManager = Depends(get_manager),
) -> dict:
    await manager.disconnect_account(account_id)
    return {"success": True, "botId": account_id}


@router.post("/send/{account_id}")
async def send_message(
    account_id: str,
    payload: SendPayload,
    manager: AccountManager = Depends(get_manager),
) -> dict:
    try:
        message_id = await manager.send_message(account_id, payload.chat_id, payload.text)
    except AccountNotFoundError as exc:
        raise _not_connected() from exc
    except SessionUnavailableError as exc:
        raise _unavailable() from exc
    except Exception as exc:
        raise _protocol_failure("send", account_id, exc) from exc
    return {"success": True, "messageId": message_id}


@router.post("/edit/{account_id}")
async def edit_message(
    account_id: str,
    payload: EditPayload,
    manager: AccountManager = Depends(get_manager),
) -> dict:
    try:
        await manager.edit_message(
            account_id, payload.chat_id, payload.message_id, payload.text
        )
    except AccountNotFoundError as exc:
        raise _not_connected() from exc
    except SessionUnavailableError as exc:
        raise _unavailable() from exc
    except Exception as exc:
        raise _protocol_failure("edit", account_id, exc) from exc
    return {"success": True, "messageId": payload.message_id, "chatId": payload.chat_id}


@router.post("/delete/{account_id}")
async def delete_message(
    account_id: str,
    payload: DeletePayload,
    manager: AccountManager = Depends(get_manager),
) -> dict:
    try:
        await manager.delete_messages(account_id, payload.chat_id, [payload.message_id])
    except AccountNotFoundError as exc:
        raise _not_connected() from exc
    except SessionUnavailableError as exc:
        raise _unavailable() from exc
    except Exception as exc:
        raise _protocol_failure("delete", account_id, exc) from exc
    return {"success": True, "messageId": payload.message_id, "chatId": payload.chat_id}


@router.post("/delete-messages/{account_id}")
async def delete_messages(
    account_id: str,
    payload: DeleteManyPayload,
    manager: AccountManager = Depends(get_manager),
) -> dict:
    try:
        deleted = await manager.delete_messages(
            account_id, payload.chat_id, payload.message_ids
        )
    except AccountNotFoundError as exc:
        raise _not_connected() from exc
    except SessionUnavailableError as exc:
        raise _unavailable() from exc
    except Exception as exc:
        raise _protocol_failure("delete_many", account_id, exc) from exc
    return {"success": True, "deletedCount": deleted, "chatId": payload.chat_id}
