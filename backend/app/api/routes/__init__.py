from fastapi import APIRouter

from app.api.routes import commits, health, jobs, legacy, push, staging, ws

# Mounted under /api
api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(legacy.router, tags=["legacy"])

# Mounted under /v2
v2_router = APIRouter()

v2_router.include_router(staging.router, tags=["staging"])
v2_router.include_router(commits.router, tags=["commits"])
v2_router.include_router(push.router, tags=["push"])
v2_router.include_router(jobs.router, tags=["jobs"])
v2_router.include_router(ws.router, tags=["realtime"])
