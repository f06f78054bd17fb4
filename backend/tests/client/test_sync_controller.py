"""Tests for the client sync controller's optimistic commit updates."""

import json

import pytest

from app.client.job_socket import JobSocket
from app.client.sync_controller import SyncController

pytestmark = pytest.mark.unit


class FakeApi:
    def __init__(self):
        self.staged = [{"id": "s-1", "target": "both"}, {"id": "s-2", "target": "portfolio"}]
        self.commits = []

    async def list_staged(self):
        return {"changes": list(self.staged), "count": len(self.staged)}

    async def list_commits(self):
        return list(self.commits)

    async def delete_staged(self, change_id):
        self.staged = [c for c in self.staged if c["id"] != change_id]

    async def create_commit(self, message, change_ids=None):
        return {"id": "c-1", "message": message, "status": "pending", "target": "both", "changes": self.staged}

    async def push_portfolio(self, commit_id):
        return {"job_id": "j-1", "commit_id": commit_id, "accepted": True}

    async def push_enrichment(self, commit_id):
        return {"job_id": "j-2", "commit_id": commit_id, "accepted": True}


class FakeSocket:
    def __init__(self):
        self.subscriptions = set()
        self.subscribed = []
        self.unsubscribed = []
        self.listeners = []

    def add_listener(self, listener):
        self.listeners.append(listener)

    async def subscribe(self, job_id):
        self.subscriptions.add(job_id)
        self.subscribed.append(job_id)

    async def unsubscribe(self, job_id):
        self.subscriptions.discard(job_id)
        self.unsubscribed.append(job_id)


def _job(job_id, portfolio, enrichment, completed_at=None, **extra):
    job = {
        "jobId": job_id,
        "commitId": "c-1",
        "portfolioStatus": portfolio,
        "enrichmentStatus": enrichment,
        **extra,
    }
    if completed_at:
        job["completedAt"] = completed_at
    return job


def _status(job):
    return {"type": "status", "jobId": job["jobId"], "data": job}


@pytest.fixture
async def controller():
    ctrl = SyncController(FakeApi(), FakeSocket())
    await ctrl.refresh()
    return ctrl


async def test_commit_removes_absorbed_changes(controller):
    notified = []
    controller.add_listener(notified.append)

    commit = await controller.create_commit("both")

    assert controller.changes == []
    assert controller.commits["c-1"] is commit
    assert notified


async def test_push_subscribes_to_returned_job(controller):
    await controller.create_commit("both")

    job_id = await controller.push_portfolio("c-1")

    assert job_id == "j-1"
    assert controller.socket.subscribed == ["j-1"]


async def test_terminal_job_updates_commit_optimistically(controller):
    await controller.create_commit("both")

    controller.apply_job_status(_job("j-1", "in-progress", "skipped"))
    assert controller.commits["c-1"]["status"] == "pending"

    controller.apply_job_status(_job("j-1", "success", "skipped", "2026-10-19T10:00:00Z"))
    assert controller.commits["c-1"]["status"] == "applied_portfolio"

    controller.apply_job_status(_job("j-2", "skipped", "success", "2026-10-19T10:05:00Z"))
    assert controller.commits["c-1"]["status"] == "applied_all"


async def test_failed_leg_marks_commit_failed(controller):
    await controller.create_commit("both")

    await controller.socket.listeners[0](
        _status(_job("j-1", "success", "failed", enrichmentResult={"success": False, "error": "quota"}))
    )

    commit = controller.commits["c-1"]
    assert commit["status"] == "failed"
    assert commit["error_target"] == "enrichment"
    assert commit["error_message"] == "quota"
    assert commit["portfolio_applied_at"]


async def test_partial_failure_then_enrichment_repush_applies_all(controller):
    await controller.create_commit("both")

    controller.apply_job_status(
        _job("j-1", "success", "failed", "2026-10-19T10:00:00Z", enrichmentResult={"error": "quota"})
    )
    assert controller.commits["c-1"]["status"] == "failed"

    controller.apply_job_status(_job("j-2", "skipped", "success", "2026-10-19T10:05:00Z"))

    commit = controller.commits["c-1"]
    assert commit["status"] == "applied_all"
    assert commit["error_target"] is None
    assert commit["error_message"] is None


async def test_replayed_failure_does_not_roll_back_applied_commit(controller):
    controller.api.commits = [
        {
            "id": "c-1",
            "status": "applied_all",
            "target": "both",
            "portfolio_applied_at": "2026-10-19T10:00:00Z",
            "enrichment_applied_at": "2026-10-19T10:05:00Z",
            "applied_at": "2026-10-19T10:05:00Z",
        }
    ]
    await controller.refresh()

    changed = controller.apply_job_status(
        _job("j-1", "success", "failed", "2026-10-19T10:00:00Z", enrichmentResult={"error": "quota"})
    )

    assert changed is False
    assert controller.commits["c-1"]["status"] == "applied_all"
    assert controller.commits["c-1"].get("error_target") is None


async def test_older_failure_replayed_after_eviction_is_ignored(controller):
    controller.max_finished_jobs = 1
    await controller.create_commit("both")
    old_failure = _job("j-1", "failed", "skipped", "2026-10-19T10:00:00Z", portfolioResult={"error": "D1 down"})

    controller.apply_job_status(old_failure)
    controller.apply_job_status(_job("j-2", "skipped", "success", "2026-10-19T10:05:00Z"))
    assert "j-1" not in controller.jobs
    assert controller.commits["c-1"]["status"] == "applied_enrichment"

    assert controller.apply_job_status(old_failure) is False
    assert controller.commits["c-1"]["status"] == "applied_enrichment"


async def test_same_job_is_folded_once(controller):
    await controller.create_commit("both")
    done = _job("j-1", "success", "skipped", "2026-10-19T10:00:00Z")

    assert controller.apply_job_status(done) is True
    assert controller.apply_job_status(done) is False


async def test_terminal_job_is_unsubscribed(controller):
    await controller.create_commit("both")
    await controller.push_portfolio("c-1")

    await controller.socket.listeners[0](_status(_job("j-1", "in-progress", "skipped")))
    assert controller.socket.unsubscribed == []

    await controller.socket.listeners[0](_status(_job("j-1", "success", "skipped", "2026-10-19T10:00:00Z")))
    assert controller.socket.unsubscribed == ["j-1"]
    assert controller.socket.subscriptions == set()


async def test_finished_jobs_are_evicted(controller):
    controller.max_finished_jobs = 2
    await controller.create_commit("both")

    controller.apply_job_status(_job("j-live", "in-progress", "skipped"))
    for i in range(4):
        controller.apply_job_status(_job(f"j-{i}", "failed", "skipped", f"2026-10-19T10:0{i}:00Z"))

    assert list(controller.jobs) == ["j-live", "j-2", "j-3"]


async def test_delete_change(controller):
    await controller.delete_change("s-1")
    assert [c["id"] for c in controller.changes] == ["s-2"]


class ScriptedConnection:
    def __init__(self, incoming, close_code):
        self.incoming = [json.dumps(m) for m in incoming]
        self.close_code = close_code
        self.sent = []

    async def send(self, raw):
        self.sent.append(json.loads(raw))

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self.incoming:
            raise StopAsyncIteration
        return self.incoming.pop(0)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


async def test_reconnect_skips_finished_jobs():
    async def no_sleep(seconds):
        return None

    finished = _job("j-1", "success", "skipped", "2026-10-19T10:00:00Z")
    first = ScriptedConnection([_status(finished)], close_code=1006)
    second = ScriptedConnection([], close_code=1000)
    connections = [first, second]
    socket = JobSocket("wss://x/v2/ws", connect=lambda url, **kwargs: connections.pop(0), reconnect_sleep=no_sleep)
    ctrl = SyncController(FakeApi(), socket)
    await ctrl.create_commit("both")
    await ctrl.push_portfolio("c-1")

    await socket.run()

    assert first.sent == [{"type": "subscribe", "jobId": "j-1"}, {"type": "unsubscribe", "jobId": "j-1"}]
    assert second.sent == []
    assert ctrl.commits["c-1"]["status"] == "applied_portfolio"
    assert socket.statuses == {}
