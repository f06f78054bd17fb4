import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.base import get_session_factory, ping_db
from app.db.redis import get_redis
from app.realtime.hub import JobStatusHub, get_hub

logger = structlog.get_logger(__name__)

router = APIRouter()

SERVICE = "curation-backend"


@router.get("/health")
async def health_check(request: Request):
    """Liveness check. Returns 503 during graceful shutdown."""
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(status_code=503, content={"status": "shutting_down", "service": SERVICE})
    return {"status": "healthy", "service": SERVICE}


@router.get("/ready")
async def readiness_check(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    redis: Redis = Depends(get_redis),
    hub: JobStatusHub = Depends(get_hub),
):
    """Ready when staging storage and job state answer and job events reach WebSocket clients."""
    checks = {"database": False, "redis": False, "job_events": hub.listening}

    try:
        await ping_db(session_factory)
        checks["database"] = True
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e))

    try:
        await redis.ping()
        checks["redis"] = True
    except Exception as e:
        logger.error("redis_health_check_failed", error=str(e))

    if not checks["job_events"]:
        logger.error("job_event_listener_down")

    all_healthy = all(checks.values())
    return JSONResponse(
        status_code=200 if all_healthy else 503,
        content={"status": "ready" if all_healthy else "degraded", "checks": checks},
    )
