"""CommitService: groups uncommitted changes into immutable commits and records push outcomes.

Commit creation is atomic with respect to other commit creations and to
staging deletes: a change is absorbed by exactly one commit, or none.
"""

import asyncio
import weakref
from datetime import UTC, datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import AlreadyCommittedError, InvalidArgumentError, NotFoundError
from app.db.models.commit import Commit
from app.db.models.staged_change import StagedChange
from app.domain.workflow import (
    CommitStatus,
    LegStatus,
    Target,
    outcome_failed_target,
    resolve_commit_status,
    target_includes,
    union_targets,
)
from app.queue.schemas import PushJob

logger = structlog.get_logger(__name__)

# Serializes commit creation and outcome recording within one process (one
# lock per event loop). Across processes the conditional UPDATE and the row
# lock take over.
_commit_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock]" = weakref.WeakKeyDictionary()


def _commit_lock() -> asyncio.Lock:
    loop = asyncio.get_running_loop()
    lock = _commit_locks.get(loop)
    if lock is None:
        lock = _commit_locks[loop] = asyncio.Lock()
    return lock


class CommitService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create_commit(
        self,
        message: str,
        change_ids: list[str] | None = None,
        created_by: str | None = None,
    ) -> Commit:
        """Absorb uncommitted changes into a new pending commit.

        Args:
            message: Human description (must be non-blank)
            change_ids: Specific changes to commit; None means all uncommitted
            created_by: Operator email

        Raises:
            InvalidArgumentError: blank message, empty change list, nothing staged
            NotFoundError: a requested id does not exist
            AlreadyCommittedError: a requested id already belongs to a commit
        """
        message = (message or "").strip()
        if not message:
            raise InvalidArgumentError("Commit message is required")
        if change_ids is not None and len(change_ids) == 0:
            raise InvalidArgumentError("change_ids must not be empty")

        async with _commit_lock():
            async with self.session_factory() as session:
                changes = await self._select_changes(session, change_ids)
                if not changes:
                    raise InvalidArgumentError("No uncommitted changes to commit")

                ids = [c.id for c in changes]
                commit = Commit(
                    message=message,
                    target=union_targets(c.target for c in changes).value,
                    status=CommitStatus.PENDING.value,
                    created_by=created_by,
                )
                session.add(commit)
                await session.flush()

                result = await session.execute(
                    update(StagedChange)
                    .where(StagedChange.id.in_(ids), StagedChange.commit_id.is_(None))
                    .values(commit_id=commit.id)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != len(ids):
                    await session.rollback()
                    contended = await self._committed_ids(ids)
                    logger.warning("commit_contended", change_ids=contended)
                    raise AlreadyCommittedError(contended or ids)

                await session.commit()
                commit_id = commit.id

        logger.info("commit_created", commit_id=commit_id, changes=len(ids), created_by=created_by)
        return await self.get_commit(commit_id)

    async def get_commit(self, commit_id: str) -> Commit:
        """Commit with its changes loaded."""
        async with self.session_factory() as session:
            commit = await session.get(Commit, commit_id)
            if commit is None:
                raise NotFoundError(f"Commit {commit_id} not found")
            return commit

    async def list_commits(self, status: CommitStatus | str | None = None) -> list[Commit]:
        """Commits in creation order, optionally filtered by status."""
        stmt = select(Commit).order_by(Commit.created_at, Commit.id)
        if status is not None:
            try:
                status = CommitStatus(status)
            except ValueError as exc:
                raise InvalidArgumentError(f"Invalid commit status '{status}'") from exc
            stmt = stmt.where(Commit.status == status.value)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def record_push_outcome(self, commit_id: str, job: PushJob, applied_by: str | None = None) -> Commit:
        """Fold a terminal push job back into the commit's status.

        Successful legs set their side's applied marker even when the other
        leg failed, so the next push only retries the missing side. A failed
        leg on a side that is already applied never downgrades the commit; a
        job that neither applied nor failed anything leaves it untouched.
        """
        now = datetime.now(UTC)
        async with _commit_lock(), self.session_factory() as session:
            # Legs of different jobs may finish together; the row lock orders their writes
            commit = await session.get(Commit, commit_id, with_for_update=True)
            if commit is None:
                raise NotFoundError(f"Commit {commit_id} not found")

            newly_applied = False
            if job.portfolio_status == LegStatus.SUCCESS and commit.portfolio_applied_at is None:
                commit.portfolio_applied_at = now
                newly_applied = True
            if job.enrichment_status == LegStatus.SUCCESS and commit.enrichment_applied_at is None:
                commit.enrichment_applied_at = now
                newly_applied = True

            portfolio_applied = commit.portfolio_applied_at is not None
            enrichment_applied = commit.enrichment_applied_at is not None
            failed_side = outcome_failed_target(
                job.portfolio_status, job.enrichment_status, portfolio_applied, enrichment_applied
            )
            if failed_side is None and not newly_applied:
                logger.info("commit_push_superseded", commit_id=commit_id, job_id=job.job_id, status=commit.status)
                return commit

            status = resolve_commit_status(portfolio_applied, enrichment_applied, failed=failed_side is not None)
            commit.status = status.value

            if failed_side is not None:
                results = []
                if target_includes(failed_side, Target.PORTFOLIO):
                    results.append(job.portfolio_result)
                if target_includes(failed_side, Target.ENRICHMENT):
                    results.append(job.enrichment_result)
                errors = [r.error or r.message for r in results if r is not None and not r.success]
                commit.error_target = failed_side.value
                commit.error_message = "; ".join(e for e in errors if e) or "Push failed"
            else:
                commit.error_target = None
                commit.error_message = None
                commit.applied_at = now
                commit.applied_by = applied_by

            await session.commit()

        logger.info(
            "commit_push_recorded",
            commit_id=commit_id,
            job_id=job.job_id,
            status=status.value,
            error_target=failed_side.value if failed_side else None,
        )
        return await self.get_commit(commit_id)

    async def _select_changes(self, session: AsyncSession, change_ids: list[str] | None) -> list[StagedChange]:
        if change_ids is None:
            result = await session.execute(
                select(StagedChange)
                .where(StagedChange.commit_id.is_(None))
                .order_by(StagedChange.created_at, StagedChange.id)
            )
            return list(result.scalars().all())

        requested = list(dict.fromkeys(change_ids))
        result = await session.execute(
            select(StagedChange)
            .where(StagedChange.id.in_(requested))
            .order_by(StagedChange.created_at, StagedChange.id)
        )
        changes = list(result.scalars().all())

        found = {c.id for c in changes}
        missing = [cid for cid in requested if cid not in found]
        if missing:
            raise NotFoundError(
                f"Staged changes not found: {', '.join(missing)}",
                detail={"change_ids": missing},
            )

        committed = [c.id for c in changes if c.commit_id is not None]
        if committed:
            raise AlreadyCommittedError(committed)
        return changes

    async def _committed_ids(self, ids: list[str]) -> list[str]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(StagedChange.id).where(StagedChange.id.in_(ids), StagedChange.commit_id.is_not(None))
            )
            return list(result.scalars().all())
