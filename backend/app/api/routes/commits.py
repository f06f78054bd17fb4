"""Commit routes: group staged changes and inspect commits with their push jobs."""

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_commit_service, get_push_job_store
from app.core.auth import AccessUser, require_auth
from app.domain.workflow import CommitStatus
from app.queue.push_jobs import PushJobStore
from app.schemas.staging import CommitOut, CommitWithChanges, CreateCommitRequest
from app.services.commit_service import CommitService

router = APIRouter()


@router.get("/commits", response_model=list[CommitOut])
async def list_commits(
    status: CommitStatus | None = Query(default=None),
    user: AccessUser = Depends(require_auth),
    commits: CommitService = Depends(get_commit_service),
):
    """Commits in creation order, optionally filtered by status."""
    return [CommitOut.model_validate(c) for c in await commits.list_commits(status)]


@router.get("/commits/{commit_id}", response_model=CommitWithChanges)
async def get_commit(
    commit_id: str,
    user: AccessUser = Depends(require_auth),
    commits: CommitService = Depends(get_commit_service),
):
    return CommitWithChanges.model_validate(await commits.get_commit(commit_id))


@router.post("/commit", response_model=CommitWithChanges, status_code=201)
async def create_commit(
    request: CreateCommitRequest,
    user: AccessUser = Depends(require_auth),
    commits: CommitService = Depends(get_commit_service),
):
    """Absorb all (or the listed) uncommitted changes into a new pending commit.

    Returns 422 for a blank message or empty change list, 404 for unknown ids
    and 409 when another commit already absorbed one of the ids.
    """
    commit = await commits.create_commit(request.message, request.change_ids, created_by=user.email)
    return CommitWithChanges.model_validate(commit)


@router.get("/commits/{commit_id}/jobs")
async def list_commit_jobs(
    commit_id: str,
    user: AccessUser = Depends(require_auth),
    commits: CommitService = Depends(get_commit_service),
    jobs: PushJobStore = Depends(get_push_job_store),
):
    """Push jobs still retained for a commit, newest first."""
    await commits.get_commit(commit_id)
    return {"commit_id": commit_id, "jobs": [j.to_wire() for j in await jobs.list_for_commit(commit_id)]}
