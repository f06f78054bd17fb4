"""PushService: validates a push request, creates the job and schedules the worker.

The caller gets the job id back immediately; the backends are only
contacted by the worker after the response has gone out.
"""

import asyncio

import structlog
from fastapi import BackgroundTasks

from app.core.exceptions import InvalidStateError
from app.domain.workflow import LegStatus, Target, check_push_eligible, initial_leg_statuses, target_includes
from app.queue.push_jobs import PushJobStore, new_job_id
from app.queue.schemas import PushJob
from app.queue.worker import PushWorker
from app.services.commit_service import CommitService

logger = structlog.get_logger(__name__)


class PushService:
    def __init__(self, commits: CommitService, jobs: PushJobStore, worker: PushWorker):
        self.commits = commits
        self.jobs = jobs
        self.worker = worker
        self._tasks: set[asyncio.Task] = set()

    async def push_to_portfolio(
        self, commit_id: str, requested_by: str | None = None, background_tasks: BackgroundTasks | None = None
    ) -> PushJob:
        return await self.push(commit_id, Target.PORTFOLIO, requested_by, background_tasks)

    async def push_to_enrichment(
        self, commit_id: str, requested_by: str | None = None, background_tasks: BackgroundTasks | None = None
    ) -> PushJob:
        return await self.push(commit_id, Target.ENRICHMENT, requested_by, background_tasks)

    async def push(
        self,
        commit_id: str,
        target: Target,
        requested_by: str | None = None,
        background_tasks: BackgroundTasks | None = None,
    ) -> PushJob:
        """Accept a push of ``commit_id`` to ``target`` (portfolio, enrichment or both).

        Each side runs at most one push at a time. The sides are claimed
        before the commit is (re)read, so a push racing a finishing one sees
        the outcome that push recorded.

        Raises:
            NotFoundError: unknown commit
            InvalidStateError: commit not eligible for this target, or a push
                to one of its sides is still running
        """
        commit = await self.commits.get_commit(commit_id)
        wanted = [
            side
            for side in (Target.PORTFOLIO, Target.ENRICHMENT)
            if target_includes(target, side) and target_includes(commit.target, side)
        ]

        job_id = new_job_id()
        busy = await self.jobs.claim_sides(commit_id, wanted, job_id)
        if busy is not None:
            raise InvalidStateError(f"A push of commit {commit_id} to {busy} is already running")

        try:
            commit = await self.commits.get_commit(commit_id)
            portfolio_applied = commit.portfolio_applied_at is not None
            enrichment_applied = commit.enrichment_applied_at is not None

            check_push_eligible(target, commit.status, commit.target, portfolio_applied, enrichment_applied)
            portfolio_status, enrichment_status = initial_leg_statuses(
                target, commit.target, portfolio_applied, enrichment_applied
            )

            idle = [
                side
                for side, leg in ((Target.PORTFOLIO, portfolio_status), (Target.ENRICHMENT, enrichment_status))
                if side in wanted and leg != LegStatus.PENDING
            ]
            await self.jobs.release_sides(commit_id, idle, job_id)

            job = await self.jobs.create_job(
                commit_id=commit_id,
                target=target,
                portfolio_status=portfolio_status,
                enrichment_status=enrichment_status,
                requested_by=requested_by,
                job_id=job_id,
            )
        except Exception:
            await self.jobs.release_sides(commit_id, wanted, job_id)
            raise

        if background_tasks is not None:
            background_tasks.add_task(self.worker.run, job.job_id, requested_by)
        else:
            task = asyncio.create_task(self.worker.run(job.job_id, requested_by))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        logger.info("push_accepted", job_id=job.job_id, commit_id=commit_id, target=target.value)
        return job

    async def drain(self) -> None:
        """Wait for pushes scheduled outside a request (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
