"""Shared test fixtures for all test groups."""

from typing import Any

import pytest
from fakeredis import FakeAsyncRedis
from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool

from app.core.exceptions import BackendFailure
from app.db.base import Base, build_session_factory
from app.domain.workflow import Target
from app.queue.push_jobs import PushJobStore


class FakeBackend:
    """Backend adapter double: records calls, returns a canned outcome or raises."""

    def __init__(self, target: Target, outcome: dict[str, Any] | None = None, error: str | None = None):
        self.target = target
        self.outcome = outcome or {"message": f"applied to {target.value}", "counts": {}}
        self.error = error
        self.calls: list[tuple[str, list[dict[str, Any]]]] = []

    async def apply_changes(self, commit_id: str, changes: list[dict[str, Any]]) -> dict[str, Any]:
        self.calls.append((commit_id, changes))
        if self.error:
            raise BackendFailure(self.target.value, self.error)
        return self.outcome


@pytest.fixture
def session_factory(tmp_path):
    """Session factory over a fresh on-disk SQLite database.

    NullPool keeps no connection bound to an event loop, so the same factory
    works in pytest-asyncio tests and inside TestClient's portal loop.
    """
    import app.db.models  # noqa: F401

    db_file = tmp_path / "curation.db"
    sync_engine = create_engine(f"sqlite:///{db_file}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()

    return build_session_factory(f"sqlite+aiosqlite:///{db_file}", poolclass=NullPool)


@pytest.fixture
async def redis():
    """Create a fake Redis instance for testing."""
    fake_redis = FakeAsyncRedis(decode_responses=True)
    yield fake_redis
    await fake_redis.flushall()
    await fake_redis.aclose()


@pytest.fixture
async def job_store(redis):
    return PushJobStore(redis, retention_seconds=3600)


@pytest.fixture
def portfolio_backend():
    return FakeBackend(Target.PORTFOLIO, outcome={"message": "ok", "counts": {"inserted": 1, "updated": 0, "deleted": 0}})


@pytest.fixture
def enrichment_backend():
    return FakeBackend(Target.ENRICHMENT, outcome={"message": "indexed", "counts": {}})


@pytest.fixture
def make_backend():
    """Factory for backends with a custom outcome or error."""
    return FakeBackend
