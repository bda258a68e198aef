"""Aggregate all v1 API routers."""

from fastapi import APIRouter
from hlsconvert.api.v1.health import router as health_router
from hlsconvert.api.v1.jobs import router as jobs_router
from hlsconvert.api.v1.convert import router as convert_router

v1_router = APIRouter(prefix="/api/v1")
v1_router.include_router(health_router, tags=["health"])
v1_router.include_router(jobs_router, tags=["jobs"])

# Compatibility shim: mounts POST /api/convert-m3u8 used by the existing frontend
convert_router_compat = APIRouter(prefix="/api")
convert_router_compat.include_router(convert_router, tags=["convert"])
