from fastapi import APIRouter
from dashboard.api.routes_health import router as health_router
from dashboard.api.routes_jobs import router as jobs_router
from dashboard.api.routes_waves import router as waves_router
from dashboard.api.routes_webhooks import router as webhooks_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
router.include_router(jobs_router, tags=["jobs"])
router.include_router(webhooks_router, tags=["webhooks"])
router.include_router(waves_router, tags=["waves"])
