from fastapi import APIRouter

from apps.adsheet.api.v1.endpoints import (
    accounts,
    health,
    realtime,
)

router = APIRouter(prefix="/v1")
router.include_router(health.router, tags=["health"])
router.include_router(accounts.router, tags=["ad-accounts"])
router.include_router(realtime.router, tags=["realtime"])
