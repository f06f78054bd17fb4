"""Push job document: the unit of state the broadcaster owns and fans out."""

import json
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.domain.workflow import (
    LegStatus,
    OverallStatus,
    Target,
    derive_overall_status,
    is_job_terminal,
)

# Redis keys
JOB_KEY = "push:{job_id}"
ACTIVE_JOBS_KEY = "push:active"
COMMIT_JOBS_KEY = "push:commit:{commit_id}"
EVENTS_CHANNEL = "push:events"
SIDE_LOCK_KEY = "push:lock:{commit_id}:{side}"


class LegResult(BaseModel):
    """Outcome reported by one backend adapter."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    message: str | None = None
    error: str | None = None
    counts: dict[str, int] = Field(default_factory=dict)  # inserted/updated/deleted from the portfolio leg


class PushJob(BaseModel):
    """Status of one push of a commit to one or both backends.

    Serialized with camelCase aliases (jobId, overallStatus, ...) on every wire:
    REST job endpoints, the WebSocket channel and the Redis fan-out channel.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    job_id: str
    commit_id: str
    target: Target
    overall_status: OverallStatus = OverallStatus.PENDING
    portfolio_status: LegStatus = LegStatus.PENDING
    enrichment_status: LegStatus = LegStatus.PENDING
    portfolio_result: LegResult | None = None
    enrichment_result: LegResult | None = None
    requested_by: str | None = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return is_job_terminal(self.portfolio_status, self.enrichment_status)

    def leg_status(self, side: Target) -> LegStatus:
        return self.portfolio_status if side == Target.PORTFOLIO else self.enrichment_status

    def with_leg(self, side: Target, status: LegStatus, result: LegResult | None, now: datetime) -> "PushJob":
        """Return a copy with one leg moved and the overall status recomputed."""
        update: dict[str, Any] = {"updated_at": now}
        if side == Target.PORTFOLIO:
            update["portfolio_status"] = status
            if result is not None:
                update["portfolio_result"] = result
        else:
            update["enrichment_status"] = status
            if result is not None:
                update["enrichment_result"] = result
        job = self.model_copy(update=update)
        job.overall_status = derive_overall_status(job.portfolio_status, job.enrichment_status)
        if job.is_terminal and job.completed_at is None:
            job.completed_at = now
        return job

    def to_hash(self) -> dict[str, str]:
        """Flatten into a Redis hash mapping (empty string stands for None)."""
        return {
            "job_id": self.job_id,
            "commit_id": self.commit_id,
            "target": self.target.value,
            "overall_status": self.overall_status.value,
            "portfolio_status": self.portfolio_status.value,
            "enrichment_status": self.enrichment_status.value,
            "portfolio_result": self.portfolio_result.model_dump_json() if self.portfolio_result else "",
            "enrichment_result": self.enrichment_result.model_dump_json() if self.enrichment_result else "",
            "requested_by": self.requested_by or "",
            "started_at": self.started_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else "",
        }

    @classmethod
    def from_hash(cls, data: dict[str, str]) -> "PushJob":
        def _result(raw: str) -> LegResult | None:
            return LegResult.model_validate(json.loads(raw)) if raw else None

        return cls(
            job_id=data["job_id"],
            commit_id=data["commit_id"],
            target=Target(data["target"]),
            overall_status=OverallStatus(data["overall_status"]),
            portfolio_status=LegStatus(data["portfolio_status"]),
            enrichment_status=LegStatus(data["enrichment_status"]),
            portfolio_result=_result(data.get("portfolio_result", "")),
            enrichment_result=_result(data.get("enrichment_result", "")),
            requested_by=data.get("requested_by") or None,
            started_at=datetime.fromisoformat(data["started_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            completed_at=datetime.fromisoformat(data["completed_at"]) if data.get("completed_at") else None,
        )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
