"""Push job routes: the pull path over the same state the WebSocket hub streams."""

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_push_job_store
from app.core.auth import AccessUser, require_auth
from app.core.exceptions import InvalidArgumentError, NotFoundError
from app.queue.push_jobs import PushJobStore

router = APIRouter()


@router.get("/jobs")
async def list_jobs(
    active: bool = Query(default=True),
    user: AccessUser = Depends(require_auth),
    jobs: PushJobStore = Depends(get_push_job_store),
):
    """Jobs still running. Finished jobs are reached by id or through their commit."""
    if not active:
        raise InvalidArgumentError("Only active=true is supported; query finished jobs by id or commit")
    return {"jobs": [j.to_wire() for j in await jobs.list_active()]}


@router.get("/jobs/{job_id}")
async def get_job(
    job_id: str,
    user: AccessUser = Depends(require_auth),
    jobs: PushJobStore = Depends(get_push_job_store),
):
    """Current job state, terminal or not, for as long as it is retained."""
    job = await jobs.get_job(job_id)
    if job is None:
        raise NotFoundError(f"Job {job_id} not found")
    return job.to_wire()
