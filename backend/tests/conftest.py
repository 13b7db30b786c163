"""Shared test fixtures for the ITSM sync backend.

Provides:
- A throwaway SQLite database per test (aiosqlite, NullPool), or the
  database named by TEST_DATABASE_URL
- ``session_factory`` for code that opens its own sessions (the worker)
- FastAPI test client with overridden DB dependency and token helpers
- Factory helpers for connections, queue items and mock platform transports
"""

from __future__ import annotations

import os

# Set test environment BEFORE any app imports so Settings() picks them up.
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-pytest-only")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SYNC_WORKER_ENABLED", "false")

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from itsm_sync.adapters.base import SendResult
from itsm_sync.adapters.factory import build_adapter
from itsm_sync.core.security import create_access_token
from itsm_sync.models import Base

ORG = "org-test"

SERVICENOW_URL = "https://acme.service-now.com"
JIRA_URL = "https://acme.atlassian.net"

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
async def engine(tmp_path):
    """Fresh schema per test. A file database so several sessions can share it."""
    url = os.getenv("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'itsm_sync.db'}"
    engine = create_async_engine(url, echo=False, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# FastAPI test app + HTTP client
# ---------------------------------------------------------------------------


@pytest.fixture
def adapter_factory():
    """Adapter factory used by the API; tests replace ``.handler`` to script responses."""

    class _Factory:
        handler = staticmethod(lambda request: httpx.Response(200, json={}))

        def __call__(self, platform, registry):
            return build_adapter(platform, registry, transport=httpx.MockTransport(self.handler))

    return _Factory()


@pytest.fixture
async def app(db, adapter_factory):
    """Minimal FastAPI test app with ``get_db`` overridden to use the test session."""
    from fastapi import FastAPI
    from slowapi import _rate_limit_exceeded_handler
    from slowapi.errors import RateLimitExceeded

    from itsm_sync.api.deps import get_adapter_factory
    from itsm_sync.api.v1.router import api_router
    from itsm_sync.config import settings
    from itsm_sync.core.rate_limit import limiter
    from itsm_sync.database import get_db

    test_app = FastAPI()
    test_app.state.limiter = limiter
    test_app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    test_app.include_router(api_router, prefix=settings.API_V1_PREFIX)

    async def _override_get_db():
        yield db

    test_app.dependency_overrides[get_db] = _override_get_db
    test_app.dependency_overrides[get_adapter_factory] = lambda: adapter_factory
    yield test_app
    test_app.dependency_overrides.clear()


@pytest.fixture
async def client(app):
    """HTTP test client for the test app."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c


@pytest.fixture(autouse=True)
def _disable_rate_limiter():
    """Disable slowapi rate limiting during tests to avoid 429 responses."""
    from itsm_sync.core.rate_limit import limiter

    limiter.enabled = False
    yield
    limiter.enabled = True


# ---------------------------------------------------------------------------
# Factory helpers
# ---------------------------------------------------------------------------


def auth_headers(role: str = "admin", email: str | None = None, organization_id: str = ORG) -> dict[str, str]:
    """Generate Bearer token headers for an operator of ``organization_id``."""
    token = create_access_token(email or f"{role}@example.com", role, organization_id)
    return {"Authorization": f"Bearer {token}"}


async def create_connection(
    db,
    *,
    platform: str = "servicenow",
    organization_id: str = ORG,
    sync_enabled: bool = True,
    auto_assignment_enabled: bool = False,
    credentials: dict | None = None,
    options: dict | None = None,
):
    """Configure a platform connection through the registry."""
    from itsm_sync.services.connection_registry import ConnectionRegistry

    if options is None and platform == "jira":
        options = {"project_key": "SEC"}
    return await ConnectionRegistry(db, organization_id).configure(
        platform,
        SERVICENOW_URL if platform == "servicenow" else JIRA_URL,
        credentials=credentials or {"username": "svc-sync", "password": "s3cret"},
        options=options,
        sync_enabled=sync_enabled,
        auto_assignment_enabled=auto_assignment_enabled,
    )


def finding(**overrides) -> dict:
    """An internal security finding that satisfies the default mappings."""
    record = {
        "title": "SQL injection in login form",
        "description": "Unsanitized input reaches the users query",
        "severity": "high",
        "status": "open",
        "category": "SAST",
        "reference_id": "FND-1001",
    }
    record.update(overrides)
    return record


async def create_queue_item(db, *, platform="servicenow", action="update", ticket_id="TICKET-1", **kwargs):
    """Insert a queue item directly, bypassing enqueue validation."""
    from itsm_sync.models.sync_queue import QueueStatus, SyncQueueItem

    item = SyncQueueItem(
        organization_id=kwargs.get("organization_id", ORG),
        platform=platform,
        action=action,
        ticket_id=ticket_id,
        external_id=kwargs.get("external_id"),
        payload=kwargs.get("payload", {"short_description": "x"}),
        status=kwargs.get("status", QueueStatus.PENDING.value),
        attempts=kwargs.get("attempts", 0),
        max_attempts=kwargs.get("max_attempts", 3),
        next_retry_at=kwargs.get("next_retry_at"),
        claimed_at=kwargs.get("claimed_at"),
        trace_id=kwargs.get("trace_id", "trace-test"),
        product_group=kwargs.get("product_group"),
        requested_by=kwargs.get("requested_by"),
    )
    if "created_at" in kwargs:
        item.created_at = kwargs["created_at"]
    db.add(item)
    await db.flush()
    return item


class ScriptedAdapter:
    """Adapter double returning (or raising) scripted outcomes in order."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls: list[dict] = []

    async def send(self, connection, action, payload, external_id=None):
        self.calls.append({"action": action, "payload": payload, "external_id": external_id})
        outcome = self.outcomes.pop(0) if self.outcomes else SendResult(external_id=external_id)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def factory(self, platform, registry):
        return self
