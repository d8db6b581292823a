"""
Test fixtures for the Reform Tracker access-control tests.

Tests run in-process against the ASGI app with a throwaway SQLite database.
Every test gets freshly created tables, the seeded default roles, and one
user per role plus a few edge-case principals.
"""
import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="reform-tracker-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/test.db"
os.environ["JWT_SECRET"] = "test-secret-for-reform-tracker"

import copy

import httpx
import pytest
import pytest_asyncio

from reform_tracker.database import AsyncSessionLocal, Base, async_engine
from reform_tracker.main import app, bootstrap
from reform_tracker.middleware.auth import create_access_token
from reform_tracker.models import User
from reform_tracker.services.audit_service import AuditRecorder, get_audit_recorder, list_audit
from reform_tracker.services.role_store import load_role_table

# ---------------------------------------------------------------------------
# Seed principals
# ---------------------------------------------------------------------------
USERS = {
    "sp": dict(id="u-sp", email="sp@police.example", role="sp", security_level="high"),
    "leader": dict(id="u-leader", email="leader@police.example", role="team_leader",
                   security_level="standard"),
    "member": dict(id="u-member", email="member@police.example", role="member",
                   security_level="standard", permissions={"budget:approve": True}),
    "viewer": dict(id="u-viewer", email="viewer@police.example", role="viewer",
                   security_level="limited"),
    "inactive_sp": dict(id="u-inactive-sp", email="retired@police.example", role="sp",
                        security_level="high", is_active=False),
    "leader_admin": dict(id="u-leader-admin", email="deputy@police.example",
                         role="team_leader", security_level="standard",
                         permissions={"roles:manage": True, "users:manage": True,
                                      "audit:view": True}),
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def auth_headers(user_id: str, session_id: str | None = None) -> dict:
    """Return a bearer header for *user_id*, optionally bound to a session."""
    claims = {"sub": user_id}
    if session_id is not None:
        claims["sid"] = session_id
    return {"Authorization": f"Bearer {create_access_token(claims)}"}


async def audit_entries(**filters):
    """Read audit entries straight from the database, newest first."""
    await get_audit_recorder().drain()
    async with AsyncSessionLocal() as db:
        return await list_audit(db, **filters)


# ---------------------------------------------------------------------------
# Database & app fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def database():
    """Fresh schema with seeded roles and users."""
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await bootstrap(app)

    async with AsyncSessionLocal() as db:
        for data in USERS.values():
            db.add(User(**copy.deepcopy(data)))
        await db.commit()

    yield

    await get_audit_recorder().drain()
    app.dependency_overrides.clear()
    await async_engine.dispose()


@pytest_asyncio.fixture
async def client(database):
    """Async HTTP client bound to the ASGI app."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest_asyncio.fixture
async def recorder(database):
    """A recorder writing to the test database."""
    return AuditRecorder(AsyncSessionLocal, timeout=2.0)


@pytest_asyncio.fixture
async def role_table(database):
    """The role table as persisted in the test database."""
    async with AsyncSessionLocal() as db:
        return await load_role_table(db)


@pytest.fixture
def sp_headers():
    return auth_headers(USERS["sp"]["id"])


@pytest.fixture
def leader_headers():
    return auth_headers(USERS["leader"]["id"])


@pytest.fixture
def member_headers():
    return auth_headers(USERS["member"]["id"])


@pytest.fixture
def viewer_headers():
    return auth_headers(USERS["viewer"]["id"])


@pytest.fixture
def inactive_headers():
    return auth_headers(USERS["inactive_sp"]["id"])


@pytest.fixture
def leader_admin_headers():
    return auth_headers(USERS["leader_admin"]["id"])
