"""FastAPI dependencies wiring services to the shared engine and Redis pool.

Tests override ``get_session_factory``, ``get_redis`` and the backend
factories through ``app.dependency_overrides``.
"""

from fastapi import Depends
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import get_settings
from app.db.base import get_session_factory
from app.db.redis import get_redis
from app.domain.workflow import Target
from app.integrations.backends import get_enrichment_backend, get_portfolio_backend
from app.queue.push_jobs import PushJobStore
from app.queue.worker import PushWorker
from app.services.commit_service import CommitService
from app.services.push_service import PushService
from app.services.staging_service import StagingService


def get_staging_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> StagingService:
    return StagingService(session_factory)


def get_commit_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> CommitService:
    return CommitService(session_factory)


def get_push_job_store(redis: Redis = Depends(get_redis)) -> PushJobStore:
    settings = get_settings()
    return PushJobStore(
        redis,
        retention_seconds=settings.push_job_retention_seconds,
        lock_ttl_seconds=settings.push_lock_ttl_seconds,
    )


def get_push_service(
    commits: CommitService = Depends(get_commit_service),
    jobs: PushJobStore = Depends(get_push_job_store),
    portfolio=Depends(get_portfolio_backend),
    enrichment=Depends(get_enrichment_backend),
) -> PushService:
    worker = PushWorker(jobs, commits, {Target.PORTFOLIO: portfolio, Target.ENRICHMENT: enrichment})
    return PushService(commits, jobs, worker)
