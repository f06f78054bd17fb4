"""Staging routes: propose, amend and withdraw changes before they are committed."""

from fastapi import APIRouter, Depends

from app.api.deps import get_staging_service
from app.core.auth import AccessUser, require_auth
from app.schemas.staging import (
    AmendChangeRequest,
    ClearStagedResponse,
    StageChangeRequest,
    StagedChangeOut,
    StagedListResponse,
    StagingStats,
)
from app.services.staging_service import StagingService

router = APIRouter()


@router.get("/staged", response_model=StagedListResponse)
async def list_staged(
    user: AccessUser = Depends(require_auth),
    staging: StagingService = Depends(get_staging_service),
):
    """Uncommitted changes in creation order."""
    changes = await staging.list_uncommitted()
    return StagedListResponse(
        changes=[StagedChangeOut.model_validate(c) for c in changes],
        count=len(changes),
    )


@router.post("/stage", response_model=StagedChangeOut, status_code=201)
async def stage_change(
    request: StageChangeRequest,
    user: AccessUser = Depends(require_auth),
    staging: StagingService = Depends(get_staging_service),
):
    change = await staging.stage(
        entity_type=request.entity_type,
        action=request.action,
        target=request.target,
        payload=request.payload,
        entity_id=request.entity_id,
        stable_id=request.stable_id,
        created_by=user.email,
    )
    return StagedChangeOut.model_validate(change)


@router.get("/staged/{change_id}", response_model=StagedChangeOut)
async def get_staged_change(
    change_id: str,
    user: AccessUser = Depends(require_auth),
    staging: StagingService = Depends(get_staging_service),
):
    return StagedChangeOut.model_validate(await staging.get(change_id))


@router.patch("/staged/{change_id}", response_model=StagedChangeOut)
async def amend_staged_change(
    change_id: str,
    request: AmendChangeRequest,
    user: AccessUser = Depends(require_auth),
    staging: StagingService = Depends(get_staging_service),
):
    """Replace payload and/or target. 409 once the change belongs to a commit."""
    change = await staging.amend(change_id, payload=request.payload, target=request.target)
    return StagedChangeOut.model_validate(change)


@router.delete("/staged/{change_id}", status_code=204)
async def delete_staged_change(
    change_id: str,
    user: AccessUser = Depends(require_auth),
    staging: StagingService = Depends(get_staging_service),
):
    await staging.delete(change_id)


@router.delete("/staged", response_model=ClearStagedResponse)
async def clear_staged(
    user: AccessUser = Depends(require_auth),
    staging: StagingService = Depends(get_staging_service),
):
    """Drop every uncommitted change. Committed changes are never touched."""
    return ClearStagedResponse(deleted=await staging.clear_uncommitted())


@router.get("/stats", response_model=StagingStats)
async def staging_stats(
    user: AccessUser = Depends(require_auth),
    staging: StagingService = Depends(get_staging_service),
):
    return StagingStats(**await staging.stats())
