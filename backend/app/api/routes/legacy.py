"""Read-only views of the staging queue in the older per-backend shape.

The single-shot apply path these views once fed is gone; changes reach the
backends only through commits and pushes.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.deps import get_staging_service
from app.core.auth import AccessUser, require_auth
from app.db.base import get_session_factory
from app.db.models.commit import Commit
from app.domain.workflow import Target, target_includes
from app.schemas.staging import StagedChangeOut
from app.services.staging_service import StagingService

router = APIRouter()


@router.get("/staged")
async def legacy_staged(
    user: AccessUser = Depends(require_auth),
    staging: StagingService = Depends(get_staging_service),
):
    """Uncommitted changes split by backend; a ``both`` change appears in each list."""
    changes = [StagedChangeOut.model_validate(c).model_dump(mode="json") for c in await staging.list_uncommitted()]
    d1cv = [c for c in changes if target_includes(c["target"], Target.PORTFOLIO)]
    ai = [c for c in changes if target_includes(c["target"], Target.ENRICHMENT)]
    return {"d1cv": d1cv, "ai": ai, "counts": {"d1cv": len(d1cv), "ai": len(ai), "total": len(changes)}}


@router.get("/staged/count")
async def legacy_staged_count(
    user: AccessUser = Depends(require_auth),
    staging: StagingService = Depends(get_staging_service),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    changes = await staging.list_uncommitted()
    start_of_day = datetime.now(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
    async with session_factory() as session:
        applied_today = await session.scalar(
            select(func.count()).select_from(Commit).where(Commit.applied_at >= start_of_day)
        )
    return {
        "pending": len(changes),
        "d1cvPending": sum(1 for c in changes if target_includes(c.target, Target.PORTFOLIO)),
        "aiPending": sum(1 for c in changes if target_includes(c.target, Target.ENRICHMENT)),
        "appliedToday": applied_today or 0,
    }
