from fastapi import APIRouter

from auditor.api.routes import admin, audits, health, watchdog

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(audits.router, prefix="/audits", tags=["audits"])
api_router.include_router(watchdog.router, prefix="/watchdog", tags=["watchdog"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
