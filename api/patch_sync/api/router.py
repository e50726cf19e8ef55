from fastapi import APIRouter

from patch_sync.api.routes import admin, coordinators, health, hierarchy, jobs

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(coordinators.router, prefix="/coordinators", tags=["scope"])
api_router.include_router(hierarchy.router, prefix="/hierarchy", tags=["hierarchy"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["processor"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
