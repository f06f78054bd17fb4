"""StagingService: the working set of proposed changes not yet grouped into a commit.

Staging never touches a backend; changes only reach the portfolio or
enrichment services once absorbed into a commit and pushed.
"""

from typing import Any

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import ImmutableChangeError, InvalidArgumentError, NotFoundError
from app.db.models.commit import Commit
from app.db.models.staged_change import StagedChange
from app.domain.workflow import ChangeAction, CommitStatus, EntityType, Target

logger = structlog.get_logger(__name__)


def _parse_enum(enum_cls, value: Any, field: str):
    try:
        return enum_cls(value)
    except ValueError as exc:
        allowed = ", ".join(m.value for m in enum_cls)
        raise InvalidArgumentError(f"Invalid {field} '{value}'. Expected one of: {allowed}") from exc


def validate_identity(action: ChangeAction, entity_id: str | None, stable_id: str | None) -> None:
    """CREATE has no prior row id; UPDATE/DELETE must name their target entity."""
    if action == ChangeAction.CREATE:
        if entity_id:
            raise InvalidArgumentError("CREATE changes must not carry an entity_id")
        return
    if not entity_id and not stable_id:
        raise InvalidArgumentError(f"{action.value} changes require entity_id or stable_id")


class StagingService:
    """Change staging store backed by the ``staged_changes`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def stage(
        self,
        entity_type: EntityType | str,
        action: ChangeAction | str,
        target: Target | str,
        payload: dict[str, Any] | None = None,
        entity_id: str | None = None,
        stable_id: str | None = None,
        created_by: str | None = None,
    ) -> StagedChange:
        """Append a change to the pending set.

        Raises:
            InvalidArgumentError: unknown entity type/action/target, bad identity, non-object payload
        """
        entity_type = _parse_enum(EntityType, entity_type, "entity_type")
        action = _parse_enum(ChangeAction, action, "action")
        target = _parse_enum(Target, target, "target")
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise InvalidArgumentError("payload must be a JSON object")
        validate_identity(action, entity_id, stable_id)

        async with self.session_factory() as session:
            change = StagedChange(
                entity_type=entity_type.value,
                action=action.value,
                target=target.value,
                payload=payload,
                entity_id=entity_id or None,
                stable_id=stable_id or None,
                created_by=created_by,
            )
            session.add(change)
            await session.commit()
            await session.refresh(change)

        logger.info(
            "change_staged",
            change_id=change.id,
            entity_type=change.entity_type,
            action=change.action,
            target=change.target,
        )
        return change

    async def list_uncommitted(self) -> list[StagedChange]:
        """Uncommitted changes ordered by creation time."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(StagedChange)
                .where(StagedChange.commit_id.is_(None))
                .order_by(StagedChange.created_at, StagedChange.id)
            )
            return list(result.scalars().all())

    async def get(self, change_id: str) -> StagedChange:
        async with self.session_factory() as session:
            change = await session.get(StagedChange, change_id)
            if change is None:
                raise NotFoundError(f"Staged change {change_id} not found")
            return change

    async def amend(
        self,
        change_id: str,
        payload: dict[str, Any] | None = None,
        target: Target | str | None = None,
    ) -> StagedChange:
        """Replace the payload and/or target of an uncommitted change.

        Raises:
            NotFoundError: no such change
            ImmutableChangeError: change already belongs to a commit
            InvalidArgumentError: nothing to amend, or invalid values
        """
        values: dict[str, Any] = {}
        if payload is not None:
            if not isinstance(payload, dict):
                raise InvalidArgumentError("payload must be a JSON object")
            values["payload"] = payload
        if target is not None:
            values["target"] = _parse_enum(Target, target, "target").value
        if not values:
            raise InvalidArgumentError("Nothing to amend: provide payload and/or target")

        async with self.session_factory() as session:
            result = await session.execute(
                update(StagedChange)
                .where(StagedChange.id == change_id, StagedChange.commit_id.is_(None))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await session.rollback()
                await self._raise_not_mutable(session, change_id)
            await session.commit()

        logger.info("change_amended", change_id=change_id, fields=sorted(values))
        return await self.get(change_id)

    async def delete(self, change_id: str) -> None:
        """Remove an uncommitted change. Irreversible.

        Raises:
            NotFoundError: no such change
            ImmutableChangeError: change already belongs to a commit
        """
        async with self.session_factory() as session:
            # Conditional delete: a commit absorbing the row concurrently wins
            result = await session.execute(
                delete(StagedChange)
                .where(StagedChange.id == change_id, StagedChange.commit_id.is_(None))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await session.rollback()
                await self._raise_not_mutable(session, change_id)
            await session.commit()

        logger.info("change_deleted", change_id=change_id)

    async def clear_uncommitted(self) -> int:
        """Administrative bulk clear of the pending queue. Committed changes are untouched."""
        async with self.session_factory() as session:
            result = await session.execute(
                delete(StagedChange)
                .where(StagedChange.commit_id.is_(None))
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        logger.warning("staged_queue_cleared", deleted=result.rowcount)
        return result.rowcount

    async def stats(self) -> dict[str, int]:
        """Counts backing the dashboard summary."""
        async with self.session_factory() as session:
            uncommitted = await session.scalar(
                select(func.count()).select_from(StagedChange).where(StagedChange.commit_id.is_(None))
            )
            rows = await session.execute(select(Commit.status, func.count()).group_by(Commit.status))
            by_status = {status: count for status, count in rows.all()}

        return {
            "uncommitted": uncommitted or 0,
            "pending_commits": by_status.get(CommitStatus.PENDING.value, 0),
            "applied_portfolio": by_status.get(CommitStatus.APPLIED_PORTFOLIO.value, 0),
            "applied_enrichment": by_status.get(CommitStatus.APPLIED_ENRICHMENT.value, 0),
            "applied_all": by_status.get(CommitStatus.APPLIED_ALL.value, 0),
            "failed": by_status.get(CommitStatus.FAILED.value, 0),
        }

    async def _raise_not_mutable(self, session: AsyncSession, change_id: str) -> None:
        existing = await session.get(StagedChange, change_id)
        if existing is None:
            raise NotFoundError(f"Staged change {change_id} not found")
        raise ImmutableChangeError(change_id, existing.commit_id)
