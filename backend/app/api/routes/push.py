"""Push routes. Each returns a job id immediately; backend work runs in the background."""

from fastapi import APIRouter, BackgroundTasks, Depends

from app.api.deps import get_push_service
from app.core.auth import AccessUser, require_auth
from app.domain.workflow import Target
from app.schemas.staging import PushRequest, PushResponse
from app.services.push_service import PushService

router = APIRouter()

_LABELS = {
    Target.PORTFOLIO: "portfolio",
    Target.ENRICHMENT: "enrichment",
    Target.BOTH: "portfolio and enrichment",
}


async def _accept(
    target: Target,
    request: PushRequest,
    user: AccessUser,
    push: PushService,
    background_tasks: BackgroundTasks,
) -> PushResponse:
    job = await push.push(request.commit_id, target, requested_by=user.email, background_tasks=background_tasks)
    return PushResponse(
        job_id=job.job_id,
        commit_id=job.commit_id,
        target=target,
        message=f"Push to {_LABELS[target]} accepted; subscribe to job {job.job_id} for progress",
    )


@router.post("/push/d1cv", response_model=PushResponse, status_code=202)
async def push_portfolio(
    request: PushRequest,
    background_tasks: BackgroundTasks,
    user: AccessUser = Depends(require_auth),
    push: PushService = Depends(get_push_service),
):
    return await _accept(Target.PORTFOLIO, request, user, push, background_tasks)


@router.post("/push/ai", response_model=PushResponse, status_code=202)
async def push_enrichment(
    request: PushRequest,
    background_tasks: BackgroundTasks,
    user: AccessUser = Depends(require_auth),
    push: PushService = Depends(get_push_service),
):
    return await _accept(Target.ENRICHMENT, request, user, push, background_tasks)


@router.post("/push/all", response_model=PushResponse, status_code=202)
async def push_both(
    request: PushRequest,
    background_tasks: BackgroundTasks,
    user: AccessUser = Depends(require_auth),
    push: PushService = Depends(get_push_service),
):
    """Push both sides in one job; sides already applied start as skipped."""
    return await _accept(Target.BOTH, request, user, push, background_tasks)
