import uuid
from dataclasses import dataclass
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from libs.common.config import get_settings
from libs.db.base import Base
from libs.db.session import get_async_db
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Import models so metadata includes every table
from services.orders_service import models as _order_models  # noqa: F401
from services.orders_service.routers._helpers import get_follow_up_scheduler
from services.orders_service.services.signatures import ProviderCredentials

settings = get_settings()


@pytest_asyncio.fixture
async def test_engine():
    """
    Fresh in-memory database per test.

    StaticPool keeps the single SQLite connection alive so every session in
    the test sees the same schema and data.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        bind=test_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    session = session_factory()
    try:
        yield session
    finally:
        await session.close()


@pytest.fixture
def credentials() -> ProviderCredentials:
    return ProviderCredentials.from_settings(settings)


@dataclass
class ScheduledEffects:
    order_id: uuid.UUID
    order_number: int
    side_effects: list


class RecordingScheduler:
    """Stands in for BackgroundTasks: records what would run after the response."""

    def __init__(self):
        self.scheduled = []

    def schedule(self, result) -> None:
        if result.changed and result.side_effects:
            self.scheduled.append(result)

    def schedule_effects(self, order_id, order_number, side_effects) -> None:
        side_effects = list(side_effects)
        if side_effects:
            self.scheduled.append(ScheduledEffects(order_id, order_number, side_effects))

    @property
    def side_effects(self) -> list[str]:
        return [effect.value for result in self.scheduled for effect in result.side_effects]


@pytest.fixture
def follow_ups() -> RecordingScheduler:
    return RecordingScheduler()


@pytest_asyncio.fixture
async def client(db_session, follow_ups) -> AsyncGenerator[AsyncClient, None]:
    """
    Yield an AsyncClient with the app and overridden DB and follow-up dependencies.
    """
    from services.orders_service.app.main import app

    app.dependency_overrides[get_async_db] = lambda: db_session
    app.dependency_overrides[get_follow_up_scheduler] = lambda: follow_ups

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
