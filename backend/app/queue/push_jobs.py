"""Push job state store: authoritative job state in Redis plus the fan-out channel."""

import uuid
from datetime import UTC, datetime

import structlog
from redis.asyncio import Redis
from redis.exceptions import WatchError

from app.domain.workflow import LegStatus, Target, can_transition_leg, derive_overall_status
from app.queue.schemas import (
    ACTIVE_JOBS_KEY,
    COMMIT_JOBS_KEY,
    EVENTS_CHANNEL,
    JOB_KEY,
    SIDE_LOCK_KEY,
    LegResult,
    PushJob,
)

logger = structlog.get_logger(__name__)

DEFAULT_RETENTION_SECONDS = 86400
DEFAULT_LOCK_TTL_SECONDS = 900


def new_job_id() -> str:
    return str(uuid.uuid4())


class PushJobStore:
    """Owns PushJob state; every accepted change is published to ``push:events``.

    Leg updates are monotonic: once a leg is success/failed/skipped it never
    moves again, and refused updates are logged but not applied.
    """

    def __init__(
        self,
        redis: Redis,
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
        lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
    ):
        self.redis = redis
        self.retention_seconds = retention_seconds
        self.lock_ttl_seconds = lock_ttl_seconds

    async def create_job(
        self,
        commit_id: str,
        target: Target,
        portfolio_status: LegStatus,
        enrichment_status: LegStatus,
        requested_by: str | None = None,
        now: datetime | None = None,
        job_id: str | None = None,
    ) -> PushJob:
        """Create a job hash, register it as active and publish its initial state.

        Args:
            commit_id: Commit being pushed
            target: Side(s) requested for this push
            portfolio_status: Initial portfolio leg (pending or skipped)
            enrichment_status: Initial enrichment leg (pending or skipped)
            requested_by: Operator email
            now: Current time (for deterministic testing)
            job_id: Id reserved earlier through claim_sides
        """
        now = now or datetime.now(UTC)
        job = PushJob(
            job_id=job_id or new_job_id(),
            commit_id=commit_id,
            target=target,
            overall_status=derive_overall_status(portfolio_status, enrichment_status),
            portfolio_status=portfolio_status,
            enrichment_status=enrichment_status,
            requested_by=requested_by,
            started_at=now,
            updated_at=now,
        )

        index_key = COMMIT_JOBS_KEY.format(commit_id=commit_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(JOB_KEY.format(job_id=job.job_id), mapping=job.to_hash())
            pipe.sadd(ACTIVE_JOBS_KEY, job.job_id)
            pipe.lpush(index_key, job.job_id)
            pipe.expire(index_key, self.retention_seconds)
            await pipe.execute()

        logger.info(
            "push_job_created",
            job_id=job.job_id,
            commit_id=commit_id,
            target=target.value,
            portfolio_status=portfolio_status.value,
            enrichment_status=enrichment_status.value,
        )
        await self.publish(job)
        return job

    async def get_job(self, job_id: str) -> PushJob | None:
        """Current state of a job, or None if unknown or past retention."""
        data = await self.redis.hgetall(JOB_KEY.format(job_id=job_id))
        return PushJob.from_hash(data) if data else None

    async def list_active(self) -> list[PushJob]:
        """Jobs not yet terminal, oldest first."""
        job_ids = await self.redis.smembers(ACTIVE_JOBS_KEY)
        jobs = []
        for job_id in job_ids:
            job = await self.get_job(job_id)
            if job is None:
                # Hash expired or vanished; drop the dangling id
                await self.redis.srem(ACTIVE_JOBS_KEY, job_id)
                continue
            jobs.append(job)
        jobs.sort(key=lambda j: j.started_at)
        return jobs

    async def list_for_commit(self, commit_id: str) -> list[PushJob]:
        """Jobs pushed for a commit, newest first (only those still retained)."""
        job_ids = await self.redis.lrange(COMMIT_JOBS_KEY.format(commit_id=commit_id), 0, -1)
        jobs = []
        for job_id in job_ids:
            job = await self.get_job(job_id)
            if job is not None:
                jobs.append(job)
        return jobs

    async def update_leg(
        self,
        job_id: str,
        side: Target,
        status: LegStatus,
        result: LegResult | None = None,
        now: datetime | None = None,
    ) -> PushJob | None:
        """Move one leg of a job and publish the new state.

        Uses WATCH/MULTI so the two legs of a ``both`` push can report
        concurrently without losing either update.

        Returns:
            Updated PushJob, or None if the job is unknown or the transition is illegal
        """
        now = now or datetime.now(UTC)
        key = JOB_KEY.format(job_id=job_id)

        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    data = await pipe.hgetall(key)
                    if not data:
                        logger.warning("push_job_missing", job_id=job_id, side=side.value)
                        return None

                    current = PushJob.from_hash(data)
                    previous = current.leg_status(side)
                    if not can_transition_leg(previous, status):
                        logger.warning(
                            "push_leg_transition_refused",
                            job_id=job_id,
                            side=side.value,
                            current=previous.value,
                            requested=status.value,
                        )
                        return None

                    job = current.with_leg(side, status, result, now)

                    pipe.multi()
                    pipe.hset(key, mapping=job.to_hash())
                    if job.is_terminal:
                        pipe.srem(ACTIVE_JOBS_KEY, job_id)
                        pipe.expire(key, self.retention_seconds)
                        pipe.expire(COMMIT_JOBS_KEY.format(commit_id=job.commit_id), self.retention_seconds)
                    await pipe.execute()
                    break
                except WatchError:
                    logger.debug("push_job_update_retry", job_id=job_id, side=side.value)
                    continue

        logger.info(
            "push_leg_updated",
            job_id=job_id,
            side=side.value,
            status=status.value,
            overall_status=job.overall_status.value,
        )
        await self.publish(job)
        return job

    async def publish(self, job: PushJob) -> None:
        """Publish the full job document to the fan-out channel."""
        await self.redis.publish(EVENTS_CHANNEL, job.model_dump_json(by_alias=True))

    async def claim_sides(self, commit_id: str, sides: list[Target], job_id: str) -> Target | None:
        """Reserve each side of a commit for ``job_id`` (SET NX with a TTL).

        All or nothing: when another push holds one of the sides, the sides
        claimed so far are released again.

        Returns:
            None when every side was claimed, otherwise the side that is busy
        """
        claimed: list[Target] = []
        for side in sides:
            key = SIDE_LOCK_KEY.format(commit_id=commit_id, side=side.value)
            if await self.redis.set(key, job_id, nx=True, ex=self.lock_ttl_seconds):
                claimed.append(side)
                continue
            holder = await self.redis.get(key)
            logger.info("push_side_busy", commit_id=commit_id, side=side.value, held_by=holder, job_id=job_id)
            await self.release_sides(commit_id, claimed, job_id)
            return side
        return None

    async def release_sides(self, commit_id: str, sides: list[Target], job_id: str) -> None:
        """Release the side locks ``job_id`` holds; locks held by other jobs are left alone."""
        for side in sides:
            key = SIDE_LOCK_KEY.format(commit_id=commit_id, side=side.value)
            async with self.redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    if await pipe.get(key) != job_id:
                        continue
                    pipe.multi()
                    pipe.delete(key)
                    await pipe.execute()
                except WatchError:
                    # Lock expired and was re-claimed by another push in between
                    logger.info("push_side_release_skipped", commit_id=commit_id, side=side.value, job_id=job_id)
