"""Aggregate all v1 API routers."""

from fastapi import APIRouter
from ci_provisioner.api.v1.health import router as health_router
from ci_provisioner.api.v1.hosts import router as hosts_router
from ci_provisioner.api.v1.jobs import router as jobs_router
from ci_provisioner.api.v1.tools import router as tools_router

v1_router = APIRouter(prefix="/api/v1")
v1_router.include_router(health_router, tags=["health"])
v1_router.include_router(tools_router, tags=["tools"])
v1_router.include_router(jobs_router, tags=["jobs"])
v1_router.include_router(hosts_router, tags=["hosts"])
