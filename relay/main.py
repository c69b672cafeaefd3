from __future__ import annotations

import asyncio

import structlog
from fastapi import FastAPI

from relay.api import router as api_router
from relay.core.config import settings
from relay.core.logging import report_settings, setup_logging
from relay.services.accounts import AccountManager
from relay.services.backend import BackendClient

logger = structlog.get_logger(__name__)

app = FastAPI(title="Telegram Event Relay")


async def _initial_load(manager: AccountManager) -> None:
    try:
        await manager.load_and_connect()
    except Exception as exc:
        logger.error("roster_load_failed", error=str(exc) or type(exc).__name__)


@app.on_event("startup")
async def on_startup() -> None:
    setup_logging()
    report_settings()
    backend = BackendClient(settings)
    manager = AccountManager(settings, backend)
    manager.start()
    app.state.backend = backend
    app.state.manager = manager
    app.state.initial_load = asyncio.create_task(_initial_load(manager))


@app.on_event("shutdown")
async def on_shutdown() -> None:
    logger.info("shutdown_started")
    task = getattr(app.state, "initial_load", None)
    if task and not task.done():
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    manager = getattr(app.state, "manager", None)
    if manager:
        await manager.shutdown()
    backend = getattr(app.state, "backend", None)
    if backend:
        await backend.aclose()
    logger.info("shutdown_finished")


app.include_router(api_router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
