"""API-specific test fixtures."""

import pytest
from fakeredis import FakeAsyncRedis
from fastapi.testclient import TestClient

from app.core.auth import AccessUser, require_auth
from app.db.base import get_session_factory
from app.db.redis import get_redis
from app.domain.workflow import Target
from app.integrations.backends import get_enrichment_backend, get_portfolio_backend
from app.main import create_app
from app.realtime.hub import JobStatusHub, get_hub


@pytest.fixture
def operator():
    return AccessUser(email="ops@example.com", claims={"email": "ops@example.com"})


@pytest.fixture
def api_backends(make_backend):
    return {
        Target.PORTFOLIO: make_backend(Target.PORTFOLIO, outcome={"message": "ok", "counts": {"inserted": 1}}),
        Target.ENRICHMENT: make_backend(Target.ENRICHMENT, outcome={"message": "indexed", "counts": {}}),
    }


@pytest.fixture
def api_client(session_factory, operator, api_backends):
    """FastAPI test client wired to SQLite, fakeredis and fake backends.

    The context manager keeps one portal event loop for the whole test, so
    the fake Redis connection and background push tasks share it.
    """
    app = create_app(use_lifespan=False)
    fake_redis = FakeAsyncRedis(decode_responses=True)
    hub = JobStatusHub(idle_timeout=5.0)

    async def _override_auth():
        return operator

    app.dependency_overrides[require_auth] = _override_auth
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_redis] = lambda: fake_redis
    app.dependency_overrides[get_hub] = lambda: hub
    app.dependency_overrides[get_portfolio_backend] = lambda: api_backends[Target.PORTFOLIO]
    app.dependency_overrides[get_enrichment_backend] = lambda: api_backends[Target.ENRICHMENT]

    with TestClient(app) as client:
        yield client
