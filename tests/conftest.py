"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from worldhub.auth.service import SessionHandle
from worldhub.config import Settings
from worldhub.database import close_db, create_schema, get_session_factory, init_db
from worldhub.hub.state import HubState
from worldhub.persistence.store import SessionStore
from worldhub.services import Services, build_services
from worldhub.worlds.content import StaticContentProvider


class FakeClock:
    """Controllable wall clock shared by every component under test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'worldhub.db'}",
        log_format="console",
        code_hash_secret="test-pepper",
        content_load_ceiling_seconds=0.5,
        persistence_timeout_seconds=1.0,
        persistence_retry_base_seconds=0.01,
        persistence_retry_max_seconds=0.05,
        persistence_retry_attempts=3,
        sync_timeout_seconds=0.2,
    )


@pytest_asyncio.fixture
async def session_factory(settings: Settings) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh SQLite database per test."""
    await init_db(settings.database_url)
    await create_schema()
    yield get_session_factory()
    await close_db()


@pytest.fixture
def store(session_factory) -> SessionStore:
    return SessionStore(session_factory)


@pytest.fixture
def redis_mock() -> AsyncMock:
    redis = AsyncMock()
    redis.publish = AsyncMock(return_value=1)
    return redis


@pytest.fixture
def content() -> StaticContentProvider:
    return StaticContentProvider(full_size=64 * 1024, reduced_size=8 * 1024)


@pytest_asyncio.fixture
async def services(settings, session_factory, redis_mock, content, clock) -> AsyncGenerator[Services, None]:
    built = build_services(settings, session_factory, redis=redis_mock, content=content, clock=clock)
    yield built
    await built.close()


async def open_session(services: Services, cultural_context: str = "swedish_municipal") -> tuple[str, HubState]:
    """Issue a code, validate it and load the hub. Returns (code, state)."""
    issued = await services.auth.issue(cultural_context)
    handle: SessionHandle = await services.auth.validate(issued.code)
    state = await services.hub.load_or_create(handle)
    return issued.code, state


@pytest.fixture
def new_session():
    return open_session


@pytest_asyncio.fixture
async def client(services: Services) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app wired to the test services."""
    from worldhub.main import create_app

    app = create_app()
    app.state.services = services
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
