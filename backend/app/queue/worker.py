"""PushWorker: executes the legs of a push job against the backends.

Runs as a FastAPI background task after the push request has already
returned its job id. Every leg ends in success or failed; no exception
escapes the worker, so a job never stays in-progress forever.
"""

import asyncio
from typing import Any

import structlog

from app.core.exceptions import BackendFailure
from app.domain.workflow import LegStatus, Target, target_includes
from app.integrations.backends import BackendAdapter
from app.queue.push_jobs import PushJobStore
from app.queue.schemas import LegResult, PushJob
from app.services.commit_service import CommitService

logger = structlog.get_logger(__name__)


def change_to_wire(change) -> dict[str, Any]:
    """Shape a staged change the way both backend apply endpoints expect."""
    return {
        "id": change.id,
        "entity_type": change.entity_type,
        "entity_id": change.entity_id,
        "stable_id": change.stable_id,
        "action": change.action,
        "payload": change.payload or {},
    }


class PushWorker:
    def __init__(
        self,
        jobs: PushJobStore,
        commits: CommitService,
        backends: dict[Target, BackendAdapter],
    ):
        self.jobs = jobs
        self.commits = commits
        self.backends = backends

    async def run(self, job_id: str, requested_by: str | None = None) -> PushJob | None:
        """Drive a pending job to its terminal state and record the outcome on the commit.

        Returns:
            Terminal PushJob, or None if the job vanished before it could run
        """
        job = await self.jobs.get_job(job_id)
        if job is None:
            logger.error("push_job_metadata_missing", job_id=job_id)
            return None

        log = logger.bind(job_id=job_id, commit_id=job.commit_id)
        sides = [side for side in (Target.PORTFOLIO, Target.ENRICHMENT) if job.leg_status(side) == LegStatus.PENDING]

        try:
            commit = await self.commits.get_commit(job.commit_id)
            legs = []
            for side in sides:
                changes = [change_to_wire(c) for c in commit.changes if target_includes(c.target, side)]
                legs.append(self._run_leg(job_id, job.commit_id, side, changes))
            await asyncio.gather(*legs)
        except Exception:
            log.exception("push_job_crashed")
            await self._fail_remaining(job_id, "Push worker crashed")

        try:
            final = await self.jobs.get_job(job_id)
            if final is None:
                log.error("push_job_vanished")
                return None

            try:
                await self.commits.record_push_outcome(final.commit_id, final, applied_by=requested_by)
            except Exception:
                log.exception("push_outcome_record_failed", overall_status=final.overall_status.value)
        finally:
            # Only after the outcome is on the commit may the next push of these sides start
            await self.jobs.release_sides(job.commit_id, sides, job_id)

        log.info("push_job_finished", overall_status=final.overall_status.value)
        return final

    async def _run_leg(self, job_id: str, commit_id: str, side: Target, changes: list[dict[str, Any]]) -> None:
        log = logger.bind(job_id=job_id, commit_id=commit_id, side=side.value)

        if not changes:
            # Nothing on this side; count it as applied
            await self.jobs.update_leg(
                job_id, side, LegStatus.SUCCESS, LegResult(success=True, message="No changes for this target")
            )
            return

        await self.jobs.update_leg(job_id, side, LegStatus.IN_PROGRESS)
        backend = self.backends[side]
        try:
            outcome = await backend.apply_changes(commit_id, changes)
        except BackendFailure as exc:
            log.warning("push_leg_failed", error=exc.message)
            await self.jobs.update_leg(job_id, side, LegStatus.FAILED, LegResult(success=False, error=exc.message))
            return
        except Exception as exc:
            log.exception("push_leg_unexpected_error")
            await self.jobs.update_leg(
                job_id, side, LegStatus.FAILED, LegResult(success=False, error=f"Unexpected error: {exc}")
            )
            return

        await self.jobs.update_leg(
            job_id,
            side,
            LegStatus.SUCCESS,
            LegResult(success=True, message=outcome.get("message"), counts=outcome.get("counts") or {}),
        )

    async def _fail_remaining(self, job_id: str, reason: str) -> None:
        job = await self.jobs.get_job(job_id)
        if job is None:
            return
        for side in (Target.PORTFOLIO, Target.ENRICHMENT):
            if job.leg_status(side) in (LegStatus.PENDING, LegStatus.IN_PROGRESS):
                await self.jobs.update_leg(job_id, side, LegStatus.FAILED, LegResult(success=False, error=reason))
