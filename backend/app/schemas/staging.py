"""Pydantic schemas for the staging, commit and push API (/v2)."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.domain.workflow import ChangeAction, CommitStatus, EntityType, Target


def _coerce_identity(value: Any) -> str | None:
    """Portfolio ids arrive as numbers from older clients; store them as strings."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("identity must be a string or integer")
    if isinstance(value, int):
        return str(value)
    return value


class StageChangeRequest(BaseModel):
    """Request to stage a single change."""

    entity_type: EntityType
    entity_id: str | None = None
    stable_id: str | None = None
    action: ChangeAction
    target: Target
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("entity_id", "stable_id", mode="before")
    @classmethod
    def normalize_identity(cls, value: Any) -> str | None:
        return _coerce_identity(value)


class AmendChangeRequest(BaseModel):
    """Partial update of an uncommitted change."""

    payload: dict[str, Any] | None = None
    target: Target | None = None


class StagedChangeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    entity_type: EntityType
    entity_id: str | None = None
    stable_id: str | None = None
    action: ChangeAction
    target: Target
    payload: dict[str, Any] = Field(default_factory=dict)
    commit_id: str | None = None
    created_by: str | None = None
    created_at: datetime


class StagedListResponse(BaseModel):
    """Uncommitted changes in creation order. ``changes`` is never null."""

    changes: list[StagedChangeOut] = Field(default_factory=list)
    count: int = 0


class ClearStagedResponse(BaseModel):
    deleted: int


class CreateCommitRequest(BaseModel):
    """Create a commit from all (or the listed) uncommitted changes."""

    message: str
    change_ids: list[str] | None = None


class CommitOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    message: str
    target: Target
    status: CommitStatus
    error_message: str | None = None
    error_target: str | None = None
    portfolio_applied_at: datetime | None = None
    enrichment_applied_at: datetime | None = None
    created_by: str | None = None
    created_at: datetime
    applied_at: datetime | None = None
    applied_by: str | None = None


class CommitWithChanges(CommitOut):
    changes: list[StagedChangeOut] = Field(default_factory=list)


class PushRequest(BaseModel):
    commit_id: str = Field(..., min_length=1)


class PushResponse(BaseModel):
    """Returned immediately; progress arrives over /v2/ws or GET /v2/jobs/{id}."""

    success: bool = True
    accepted: bool = True
    job_id: str
    commit_id: str
    target: Target
    message: str


class StagingStats(BaseModel):
    uncommitted: int = 0
    pending_commits: int = 0
    applied_portfolio: int = 0
    applied_enrichment: int = 0
    applied_all: int = 0
    failed: int = 0
