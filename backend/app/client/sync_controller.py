"""SyncController: client-side view of staged changes, commits and push jobs.

Commit status is updated optimistically as soon as a subscribed job turns
terminal, using the same rules the server applies, so the UI does not have
to wait for a refresh. Each job outcome is folded at most once, and a
terminal job replayed after a reconnect never rolls a commit back.
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog

from app.client.api_client import ApiClient
from app.client.job_socket import JobSocket
from app.domain.workflow import (
    CommitStatus,
    LegStatus,
    Target,
    is_job_terminal,
    outcome_failed_target,
    resolve_commit_status,
    target_includes,
)

logger = structlog.get_logger(__name__)

_PORTFOLIO_DONE = {CommitStatus.APPLIED_PORTFOLIO.value, CommitStatus.APPLIED_ALL.value}
_ENRICHMENT_DONE = {CommitStatus.APPLIED_ENRICHMENT.value, CommitStatus.APPLIED_ALL.value}


class SyncController:
    def __init__(self, api: ApiClient, socket: JobSocket | None = None, max_finished_jobs: int = 50):
        self.api = api
        self.socket = socket
        self.max_finished_jobs = max_finished_jobs
        self.changes: list[dict[str, Any]] = []
        self.commits: dict[str, dict[str, Any]] = {}
        # Insertion ordered; only the newest max_finished_jobs terminal jobs are kept
        self.jobs: dict[str, dict[str, Any]] = {}
        self._folded: set[str] = set()
        self._outcome_at: dict[str, datetime] = {}
        self._listeners: list[Callable[["SyncController"], None]] = []
        if socket is not None:
            socket.add_listener(self._on_socket_message)

    def add_listener(self, listener: Callable[["SyncController"], None]) -> None:
        self._listeners.append(listener)

    def _notify(self) -> None:
        for listener in self._listeners:
            listener(self)

    async def refresh(self) -> None:
        staged, commits = await asyncio.gather(self.api.list_staged(), self.api.list_commits())
        self.changes = staged["changes"]
        self.commits = {c["id"]: c for c in commits}
        self._notify()

    async def stage(self, **change: Any) -> dict[str, Any]:
        created = await self.api.stage(**change)
        self.changes.append(created)
        self._notify()
        return created

    async def delete_change(self, change_id: str) -> None:
        await self.api.delete_staged(change_id)
        self.changes = [c for c in self.changes if c["id"] != change_id]
        self._notify()

    async def create_commit(self, message: str, change_ids: list[str] | None = None) -> dict[str, Any]:
        commit = await self.api.create_commit(message, change_ids)
        absorbed = {c["id"] for c in commit.get("changes", [])}
        self.changes = [c for c in self.changes if c["id"] not in absorbed]
        self.commits[commit["id"]] = commit
        self._notify()
        return commit

    async def push_portfolio(self, commit_id: str) -> str:
        return await self._track(await self.api.push_portfolio(commit_id))

    async def push_enrichment(self, commit_id: str) -> str:
        return await self._track(await self.api.push_enrichment(commit_id))

    async def _track(self, accepted: dict[str, Any]) -> str:
        job_id = accepted["job_id"]
        if self.socket is not None:
            await self.socket.subscribe(job_id)
        return job_id

    async def _on_socket_message(self, msg: dict[str, Any]) -> None:
        if msg.get("type") == "status" and isinstance(msg.get("data"), dict):
            await self._receive_job(msg["data"])
        elif msg.get("type") == "active-jobs" and isinstance(msg.get("data"), list):
            for job in msg["data"]:
                await self._receive_job(job)

    async def _receive_job(self, job: dict[str, Any]) -> None:
        self.apply_job_status(job)
        if self.socket is not None and _is_terminal(job) and job["jobId"] in self.socket.subscriptions:
            # Finished jobs are not re-subscribed on the next reconnect
            await self.socket.unsubscribe(job["jobId"])

    def apply_job_status(self, job: dict[str, Any]) -> bool:
        """Record a job document; a terminal one updates its cached commit once.

        Returns True when the job's outcome changed its commit. Successes
        only ever add applied markers, so they are always folded. A failure
        counts only when it is newer than the commit's latest known outcome,
        so a terminal job replayed after a reconnect cannot roll a commit back.
        """
        job_id = job["jobId"]
        self.jobs[job_id] = job
        changed = False
        if _is_terminal(job):
            commit = self.commits.get(job.get("commitId"))
            if commit is not None and job_id not in self._folded:
                changed = self._apply_outcome(commit, job)
                self._folded.add(job_id)
            self._evict_finished()
        self._notify()
        return changed

    def _latest_outcome(self, commit: dict[str, Any]) -> datetime | None:
        known = [
            _parse_time(commit.get(key))
            for key in ("portfolio_applied_at", "enrichment_applied_at", "applied_at")
        ]
        known.append(self._outcome_at.get(commit["id"]))
        return max((t for t in known if t is not None), default=None)

    def _apply_outcome(self, commit: dict[str, Any], job: dict[str, Any]) -> bool:
        completed_at = job.get("completedAt") or datetime.now(UTC).isoformat()
        completed = _parse_time(completed_at)
        latest = self._latest_outcome(commit)
        stale = latest is not None and completed <= latest

        newly_applied = False
        if job["portfolioStatus"] == LegStatus.SUCCESS and not commit.get("portfolio_applied_at"):
            commit["portfolio_applied_at"] = completed_at
            newly_applied = True
        if job["enrichmentStatus"] == LegStatus.SUCCESS and not commit.get("enrichment_applied_at"):
            commit["enrichment_applied_at"] = completed_at
            newly_applied = True

        portfolio_applied = commit["status"] in _PORTFOLIO_DONE or bool(commit.get("portfolio_applied_at"))
        enrichment_applied = commit["status"] in _ENRICHMENT_DONE or bool(commit.get("enrichment_applied_at"))
        failed_side = None
        if not stale:
            failed_side = outcome_failed_target(
                job["portfolioStatus"], job["enrichmentStatus"], portfolio_applied, enrichment_applied
            )
        if failed_side is None and not newly_applied:
            logger.debug("job_outcome_ignored", commit_id=commit["id"], job_id=job["jobId"], stale=stale)
            return False

        commit["status"] = resolve_commit_status(
            portfolio_applied, enrichment_applied, failed=failed_side is not None
        ).value
        if failed_side is not None:
            commit["error_target"] = failed_side.value
            keys = []
            if target_includes(failed_side, Target.PORTFOLIO):
                keys.append("portfolioResult")
            if target_includes(failed_side, Target.ENRICHMENT):
                keys.append("enrichmentResult")
            errors = [(job.get(key) or {}).get("error") for key in keys]
            commit["error_message"] = "; ".join(e for e in errors if e) or "Push failed"
        else:
            commit["error_target"] = None
            commit["error_message"] = None
            commit["applied_at"] = completed_at

        if latest is None or completed > latest:
            self._outcome_at[commit["id"]] = completed
        logger.debug("commit_status_optimistic", commit_id=commit["id"], status=commit["status"])
        return True

    def _evict_finished(self) -> None:
        finished = [job_id for job_id, job in self.jobs.items() if _is_terminal(job)]
        for job_id in finished[: max(len(finished) - self.max_finished_jobs, 0)]:
            del self.jobs[job_id]
            self._folded.discard(job_id)


def _is_terminal(job: dict[str, Any]) -> bool:
    return is_job_terminal(job["portfolioStatus"], job["enrichmentStatus"])


def _parse_time(value: Any) -> datetime | None:
    if not value:
        return None
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
    # SQLite hands back naive timestamps; they are UTC
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
