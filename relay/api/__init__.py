from fastapi import APIRouter

from relay.api.accounts import router as accounts_router
from relay.api.health import router as health_router

router = APIRouter()
router.include_router(health_router)
router.include_router(accounts_router)
