"""Test configuration and fixtures."""

import os
from typing import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

# Set up test environment variables BEFORE importing teamguard modules
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEV_MODE", "false")
os.environ.setdefault("JWT_SECRET_KEY", "q7Vx2LmP9wZk4RtY8bN3cJ6hF1sD5gA0eUiOpXzQwErT")
os.environ.setdefault("CREDENTIAL_ENCRYPTION_KEY", "Hn4Kd8Zp2Wq6Yt0Bv3Lm7Xc1Rf5Gs9JaUeIoPlMkNbVc")
os.environ.setdefault("STARTUP_VALIDATION_LEVEL", "skip")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from teamguard.database import Base
from teamguard.models import Role, Team, User


@pytest.fixture(scope="function")
async def session_maker() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory bound to a fresh in-memory database."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_maker() as session:
        yield session


async def _create_team(db: AsyncSession, slug: str) -> Team:
    team = Team(name=slug.replace("-", " ").title(), slug=slug)
    db.add(team)
    await db.commit()
    await db.refresh(team)
    return team


async def _create_user(db: AsyncSession, team: Team, role: Role, email: str, **kwargs) -> User:
    user = User(
        tenant_id=team.id,
        email=email,
        first_name=kwargs.pop("first_name", "Test"),
        last_name=kwargs.pop("last_name", role.value.replace("_", " ").title()),
        role=role.value,
        password_hash="$2b$12$notarealhashnotarealhashnotarealhashnotarealhash",
        **kwargs,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


@pytest.fixture
async def test_team(db_session: AsyncSession) -> Team:
    """Create a test team."""
    return await _create_team(db_session, "river-hawks")


@pytest.fixture
async def other_team(db_session: AsyncSession) -> Team:
    """A second team, for tenant isolation checks."""
    return await _create_team(db_session, "lake-otters")


@pytest.fixture
async def super_admin(db_session: AsyncSession, test_team: Team) -> User:
    return await _create_user(db_session, test_team, Role.SUPER_ADMIN, "admin@example.com")


@pytest.fixture
async def head_coach(db_session: AsyncSession, test_team: Team) -> User:
    return await _create_user(db_session, test_team, Role.HEAD_COACH, "head@example.com")


@pytest.fixture
async def assistant_coach(db_session: AsyncSession, test_team: Team) -> User:
    return await _create_user(db_session, test_team, Role.ASSISTANT_COACH, "assistant@example.com")


@pytest.fixture
async def other_team_coach(db_session: AsyncSession, other_team: Team) -> User:
    return await _create_user(db_session, other_team, Role.ASSISTANT_COACH, "coach@otters.example.com")


@pytest.fixture
async def inactive_user(db_session: AsyncSession, test_team: Team) -> User:
    return await _create_user(
        db_session, test_team, Role.ASSISTANT_COACH, "former@example.com", is_active=False
    )
