"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: Auth is applied per route through Depends(get_current_identity),
because the asset routes need the identity itself (the owner id scopes
every call). Health and queue metrics are open.
"""

from fastapi import APIRouter

from vaultsync.api.assets import router as assets_router
from vaultsync.api.health import router as health_router
from vaultsync.api.queue import router as queue_router

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(health_router, tags=["health"])
api_router.include_router(assets_router, tags=["assets"])
api_router.include_router(queue_router, tags=["queue"])
