"""
tests/conftest.py -- Shared fixtures for nestguard unit and integration tests.

This module provides:
  - FakeClock: injectable clock so expiry and lockout are deterministic
  - RecordingNotifier: captures raw invitation/reset tokens for the tests
  - make_settings(): Settings with fixed secrets and bcrypt work factor 4
  - components: fully wired AuthComponents on an isolated in-memory DB,
    seeded with the default role catalog
  - client: TestClient over the real app with a patched lifespan
  - create_admin / login helpers

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.
Each test gets its own uuid-named database.

DEBUG and ALLOWED_HOSTS must be set before any api/ import: api/main.py
reads get_settings() at import time.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any api/auth/core import so get_settings() can
# auto-generate secrets in dev mode and TrustedHost accepts TestClient.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi import APIRouter, Depends
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, attach_components
from auth.authorization import DEFAULT_CATALOG
from auth.dependencies import require_permission
from auth.models import AccountStatus, AdminAccount, AdminPrincipal
from auth.service import AuthComponents, build_components
from core.config import Settings

TEST_PASSWORD = "Sup3r-Secret-Pass"

# Per-IP limits would trip across the many logins a test session performs.
limiter.enabled = False


# ---------------------------------------------------------------------------
# Test-only route guarded by a catalog permission
# ---------------------------------------------------------------------------

_content_router = APIRouter()


@_content_router.post("/content/publish")
def publish(principal: AdminPrincipal = Depends(require_permission("content.publish"))) -> dict:
    return {"published_by": principal.account_id}


app.include_router(_content_router, prefix="/api/v1/test")


# ---------------------------------------------------------------------------
# Doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


class RecordingNotifier:
    def __init__(self) -> None:
        self.invitations: list[tuple[str, str, str]] = []
        self.resets: list[tuple[str, str]] = []

    def send_invitation(self, email: str, raw_token: str, role: str) -> None:
        self.invitations.append((email, raw_token, role))

    def send_password_reset(self, email: str, raw_token: str) -> None:
        self.resets.append((email, raw_token))


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def memory_db_url() -> str:
    return f"sqlite:///file:nestguard_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "database_url": memory_db_url(),
        "admin_jwt_secret": "a" * 24 + "-admin-test-signing-key",
        "user_jwt_secret": "u" * 24 + "-user-test-signing-key!",
        "password_work_factor": 4,
        "permission_cache_ttl_seconds": 30,
    }
    values.update(overrides)
    return Settings(**values)


def create_admin(
    components: AuthComponents,
    email: str,
    role: str = "super_admin",
    password: str = TEST_PASSWORD,
    status: AccountStatus = AccountStatus.active,
) -> int:
    """Insert an account directly (bypassing invitations) and return its id."""
    return components.admin_store.create_account(
        AdminAccount(
            email=email,
            role=role,
            password_hash=components.hasher.hash(password),
            status=status,
        )
    )


def principal_for(components: AuthComponents, account_id: int, session_id: str = "test-session") -> AdminPrincipal:
    account = components.admin_store.get_account_by_id(account_id)
    return AdminPrincipal(
        account_id=account.id,
        email=account.email,
        role=account.role,
        status=account.status,
        session_id=session_id,
    )


def login(client: TestClient, email: str, password: str = TEST_PASSWORD) -> dict:
    resp = client.post("/api/v1/admin/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _patch_lifespan(components: AuthComponents):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        attach_components(app, components)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def components(settings, clock, notifier) -> Generator[AuthComponents, None, None]:
    comps = build_components(settings, clock=clock, notifier=notifier)
    comps.admin_store.seed_catalog(DEFAULT_CATALOG)
    yield comps
    comps.close()


@pytest.fixture
def client(components) -> Generator[TestClient, None, None]:
    app.router.lifespan_context = _patch_lifespan(components)
    with TestClient(app, raise_server_exceptions=True) as test_client:
        yield test_client
