"""Tests for the Redis push job store."""

import json
from datetime import UTC, datetime, timedelta

import pytest

from app.domain.workflow import LegStatus, OverallStatus, Target
from app.queue.schemas import ACTIVE_JOBS_KEY, EVENTS_CHANNEL, JOB_KEY, SIDE_LOCK_KEY, LegResult, PushJob

pytestmark = pytest.mark.unit


async def _portfolio_job(job_store, commit_id="c-1"):
    return await job_store.create_job(commit_id, Target.PORTFOLIO, LegStatus.PENDING, LegStatus.SKIPPED)


async def test_create_job_registers_active(job_store, redis):
    job = await _portfolio_job(job_store)

    assert job.overall_status == OverallStatus.PENDING
    assert await redis.sismember(ACTIVE_JOBS_KEY, job.job_id)
    stored = await job_store.get_job(job.job_id)
    assert stored == job


async def test_get_unknown_job(job_store):
    assert await job_store.get_job("nope") is None


async def test_leg_progress_and_terminal(job_store, redis):
    job = await _portfolio_job(job_store)

    running = await job_store.update_leg(job.job_id, Target.PORTFOLIO, LegStatus.IN_PROGRESS)
    assert running.overall_status == OverallStatus.IN_PROGRESS
    assert running.completed_at is None

    done = await job_store.update_leg(
        job.job_id,
        Target.PORTFOLIO,
        LegStatus.SUCCESS,
        LegResult(success=True, message="ok", counts={"inserted": 2}),
    )
    assert done.overall_status == OverallStatus.PORTFOLIO_DONE
    assert done.completed_at is not None
    assert done.portfolio_result.counts == {"inserted": 2}

    # Terminal: leaves the active set, stays queryable with a TTL
    assert not await redis.sismember(ACTIVE_JOBS_KEY, job.job_id)
    assert 0 < await redis.ttl(JOB_KEY.format(job_id=job.job_id)) <= 3600
    assert (await job_store.get_job(job.job_id)).overall_status == OverallStatus.PORTFOLIO_DONE


async def test_terminal_leg_refuses_regression(job_store):
    job = await _portfolio_job(job_store)
    await job_store.update_leg(job.job_id, Target.PORTFOLIO, LegStatus.IN_PROGRESS)
    await job_store.update_leg(job.job_id, Target.PORTFOLIO, LegStatus.FAILED, LegResult(success=False, error="x"))

    for status in (LegStatus.PENDING, LegStatus.IN_PROGRESS, LegStatus.SUCCESS):
        assert await job_store.update_leg(job.job_id, Target.PORTFOLIO, status) is None

    stored = await job_store.get_job(job.job_id)
    assert stored.portfolio_status == LegStatus.FAILED
    assert stored.portfolio_result.error == "x"


async def test_skipped_leg_cannot_start(job_store):
    job = await _portfolio_job(job_store)
    assert await job_store.update_leg(job.job_id, Target.ENRICHMENT, LegStatus.IN_PROGRESS) is None


async def test_update_unknown_job(job_store):
    assert await job_store.update_leg("nope", Target.PORTFOLIO, LegStatus.IN_PROGRESS) is None


async def test_list_active_oldest_first(job_store):
    base = datetime(2026, 1, 1, tzinfo=UTC)
    newer = await job_store.create_job("c-2", Target.PORTFOLIO, LegStatus.PENDING, LegStatus.SKIPPED, now=base + timedelta(minutes=1))
    older = await job_store.create_job("c-1", Target.ENRICHMENT, LegStatus.SKIPPED, LegStatus.PENDING, now=base)

    assert [j.job_id for j in await job_store.list_active()] == [older.job_id, newer.job_id]


async def test_list_active_drops_dangling_ids(job_store, redis):
    await redis.sadd(ACTIVE_JOBS_KEY, "ghost")
    assert await job_store.list_active() == []
    assert not await redis.sismember(ACTIVE_JOBS_KEY, "ghost")


async def test_list_for_commit_newest_first(job_store):
    first = await _portfolio_job(job_store, "c-9")
    second = await job_store.create_job("c-9", Target.ENRICHMENT, LegStatus.SKIPPED, LegStatus.PENDING)

    assert [j.job_id for j in await job_store.list_for_commit("c-9")] == [second.job_id, first.job_id]


async def test_create_job_uses_reserved_id(job_store):
    job = await job_store.create_job("c-1", Target.PORTFOLIO, LegStatus.PENDING, LegStatus.SKIPPED, job_id="j-fixed")
    assert job.job_id == "j-fixed"
    assert (await job_store.get_job("j-fixed")).commit_id == "c-1"


async def test_claim_sides_is_all_or_nothing(job_store, redis):
    assert await job_store.claim_sides("c-1", [Target.ENRICHMENT], "j-1") is None
    assert await redis.ttl(SIDE_LOCK_KEY.format(commit_id="c-1", side="enrichment")) > 0

    busy = await job_store.claim_sides("c-1", [Target.PORTFOLIO, Target.ENRICHMENT], "j-2")

    assert busy == Target.ENRICHMENT
    # j-2 handed its portfolio claim back
    assert await redis.get(SIDE_LOCK_KEY.format(commit_id="c-1", side="portfolio")) is None
    assert await job_store.claim_sides("c-1", [Target.PORTFOLIO], "j-3") is None


async def test_release_sides_leaves_other_holders(job_store, redis):
    key = SIDE_LOCK_KEY.format(commit_id="c-1", side="portfolio")
    await job_store.claim_sides("c-1", [Target.PORTFOLIO], "j-1")

    await job_store.release_sides("c-1", [Target.PORTFOLIO], "j-2")
    assert await redis.get(key) == "j-1"

    await job_store.release_sides("c-1", [Target.PORTFOLIO], "j-1")
    assert await redis.get(key) is None


async def test_every_update_is_published(job_store, redis):
    pubsub = redis.pubsub()
    await pubsub.subscribe(EVENTS_CHANNEL)
    await pubsub.get_message(timeout=1.0)  # subscribe confirmation

    job = await _portfolio_job(job_store)
    await job_store.update_leg(job.job_id, Target.PORTFOLIO, LegStatus.IN_PROGRESS)

    received = []
    for _ in range(2):
        message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
        received.append(json.loads(message["data"]))
    await pubsub.aclose()

    assert [m["portfolioStatus"] for m in received] == ["pending", "in-progress"]
    assert all(m["jobId"] == job.job_id for m in received)


def test_hash_round_trip_keeps_none_fields():
    now = datetime(2026, 3, 1, tzinfo=UTC)
    job = PushJob(job_id="j", commit_id="c", target=Target.BOTH, started_at=now, updated_at=now)

    restored = PushJob.from_hash(job.to_hash())

    assert restored == job
    assert restored.requested_by is None
    assert restored.completed_at is None


def test_wire_format_uses_camel_case():
    now = datetime(2026, 3, 1, tzinfo=UTC)
    wire = PushJob(job_id="j", commit_id="c", target=Target.PORTFOLIO, started_at=now, updated_at=now).to_wire()

    assert set(wire) >= {"jobId", "commitId", "overallStatus", "portfolioStatus", "enrichmentStatus", "startedAt"}
