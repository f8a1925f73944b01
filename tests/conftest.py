"""
tests/conftest.py
Shared fixtures: in-memory SQLite database, in-process Redis double,
HTTP client over the ASGI app, and back-office users for every role.
"""

import os

# Settings are read at import time; point them at test doubles first
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ.setdefault("ACTIVITY_ADMIN_DEBUG_FALLBACK", "false")

import uuid
from datetime import datetime, timezone
from typing import Optional

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config.database import Base, get_db
from config.redis_client import get_redis
from main import app
from shared.middleware.activity import ActivityDispatcher
from shared.models.models import (
    Activity,
    ActivityCategory,
    ActivityPriority,
    ActivityStatus,
    ActivityType,
    Branch,
    Pg,
    User,
    UserRole,
)
from shared.utils.security import create_access_token


# ── Redis double ──────────────────────────────────────────────

class FakeRedis:
    """The subset of redis.asyncio.Redis used by RedisCache."""

    def __init__(self):
        self.store = {}

    async def get(self, key):
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        self.store[key] = value

    async def exists(self, key):
        return int(key in self.store)

    async def delete(self, key):
        self.store.pop(key, None)

    async def ping(self):
        return True


# ── Database ──────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(
        bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def redis():
    return FakeRedis()


@pytest_asyncio.fixture
async def dispatcher(session_factory):
    return ActivityDispatcher(session_factory, mode="inline", timeout=5.0)


@pytest_asyncio.fixture
async def client(session_factory, redis, dispatcher):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = lambda: redis
    previous_dispatcher = app.state.activity_dispatcher
    app.state.activity_dispatcher = dispatcher

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    app.state.activity_dispatcher = previous_dispatcher


# ── PG / branches ─────────────────────────────────────────────

@pytest_asyncio.fixture
async def pg(db: AsyncSession) -> Pg:
    pg = Pg(id=uuid.uuid4(), name="Sunrise PG")
    db.add(pg)
    await db.commit()
    return pg


@pytest_asyncio.fixture
async def branch(db: AsyncSession, pg: Pg) -> Branch:
    branch = Branch(id=uuid.uuid4(), pg_id=pg.id, name="Koramangala", is_default=True)
    db.add(branch)
    await db.commit()
    return branch


@pytest_asyncio.fixture
async def other_branch(db: AsyncSession, pg: Pg) -> Branch:
    branch = Branch(id=uuid.uuid4(), pg_id=pg.id, name="Indiranagar", is_default=False)
    db.add(branch)
    await db.commit()
    return branch


# ── Users ─────────────────────────────────────────────────────

async def make_user(
    db: AsyncSession,
    role: UserRole,
    email: str,
    pg: Optional[Pg] = None,
    branch: Optional[Branch] = None,
    first_name: str = "",
) -> User:
    user = User(
        id=uuid.uuid4(),
        email=email,
        first_name=first_name,
        last_name="",
        role=role,
        pg_id=pg.id if pg else None,
        branch_id=branch.id if branch else None,
        is_active=True,
    )
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def admin_user(db: AsyncSession, pg: Pg, branch: Branch) -> User:
    return await make_user(db, UserRole.ADMIN, "admin@sunrise.test", pg, branch, first_name="Asha")


@pytest_asyncio.fixture
async def superadmin_user(db: AsyncSession, pg: Pg) -> User:
    return await make_user(db, UserRole.SUPERADMIN, "root@sunrise.test", pg, first_name="Ravi")


@pytest_asyncio.fixture
async def support_user(db: AsyncSession) -> User:
    return await make_user(db, UserRole.SUPPORT, "support@sunrise.test", first_name="Meena")


@pytest_asyncio.fixture
async def user(db: AsyncSession, pg: Pg) -> User:
    return await make_user(db, UserRole.USER, "resident@sunrise.test", pg)


@pytest_asyncio.fixture
async def unassigned_admin(db: AsyncSession) -> User:
    """Admin with neither a branch nor a PG to derive a default branch from."""
    return await make_user(db, UserRole.ADMIN, "floating@sunrise.test")


# ── Helpers ───────────────────────────────────────────────────

def auth_headers(user: User) -> dict:
    """Generate Authorization headers for a test user."""
    token, _ = create_access_token(
        user_id=str(user.id),
        role=UserRole(user.role).value,
        email=user.email,
    )
    return {"Authorization": f"Bearer {token}"}


async def add_activity(
    db: AsyncSession,
    actor: User,
    type: ActivityType = ActivityType.USER_LOGIN,
    category: ActivityCategory = ActivityCategory.AUTHENTICATION,
    timestamp: Optional[datetime] = None,
    commit: bool = True,
    **fields,
) -> Activity:
    """Insert an activity row directly, with full control over its timestamp."""
    values = {
        "title": type.value.replace("_", " ").title(),
        "description": f"{type.value} by {actor.email}",
        "priority": ActivityPriority.NORMAL,
        "status": ActivityStatus.SUCCESS,
        "branch_id": actor.branch_id,
        "meta": {},
        **fields,
    }
    activity = Activity(
        id=uuid.uuid4(),
        type=type,
        category=category,
        user_id=actor.id,
        user_email=actor.email,
        user_role=actor.role,
        timestamp=timestamp or datetime.now(timezone.utc),
        **values,
    )
    db.add(activity)
    if commit:
        await db.commit()
    return activity
