from fastapi import APIRouter

from listing_sync.api.v1.endpoints.health import router as health_router
from listing_sync.api.v1.endpoints.sync import router as sync_router
from listing_sync.api.v1.endpoints.upstream import router as upstream_router
from listing_sync.api.v1.endpoints.webhook import router as webhook_router


router = APIRouter(prefix="/v1")
router.include_router(health_router, tags=["health"])
router.include_router(sync_router, tags=["sync"])
router.include_router(webhook_router, tags=["webhook"])
router.include_router(upstream_router, tags=["upstream"])
