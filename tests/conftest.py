"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import date, datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from loretta.config import Settings
from loretta.database import build_engine, build_session_factory, create_all, get_session
from loretta.db.models import UserProgress
from loretta.gamification.ledger import GamificationLedger
from loretta.missions.catalog import MissionCatalog
from loretta.progress.facade import ProgressFacade

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
MONDAY = date(2026, 3, 2)


class FrozenClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


TEST_MISSIONS = [
    {"id": "stretch", "title": "Morning stretch", "category": "movement",
     "frequency": "daily", "xp_reward": 50, "total_steps": 5},
    {"id": "hydrate", "title": "Drink water", "category": "hydration",
     "frequency": "daily", "xp_reward": 30, "total_steps": 2},
    {"id": "reflection", "title": "Weekly reflection", "category": "mindfulness",
     "frequency": "weekly", "xp_reward": 100, "total_steps": 1},
]

TEST_ALTERNATIVES = [
    {"key": "gentle-yoga", "replaces_id": "stretch", "title": "Gentle yoga",
     "total_steps": 3, "xp_reward": 20, "step_label": "Pose", "mood_gate_required": True},
    {"key": "desk-stretch", "replaces_id": "stretch", "title": "Desk stretch",
     "total_steps": 2, "xp_reward": 15, "step_label": "Set", "mood_gate_required": False},
    {"key": "herbal-tea", "replaces_id": "hydrate", "title": "Herbal tea",
     "total_steps": 2, "xp_reward": 25, "step_label": "Cup", "mood_gate_required": False},
]


@pytest.fixture
def clock() -> FrozenClock:
    """09:00 UTC on Monday 2026-03-02."""
    return FrozenClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url=TEST_DATABASE_URL,
        redis_url="",
        default_timezone="UTC",
        log_format="console",
        lock_timeout_seconds=2.0,
    )


@pytest.fixture
def catalog() -> MissionCatalog:
    return MissionCatalog.from_records(TEST_MISSIONS, TEST_ALTERNATIVES)


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database per test."""
    eng = build_engine(TEST_DATABASE_URL)
    await create_all(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def progress(db_session: AsyncSession) -> UserProgress:
    """A persisted progress row for user 'u1'."""
    row = UserProgress(
        user_id="u1",
        timezone="UTC",
        xp=0,
        level=1,
        current_streak=0,
        longest_streak=0,
        lives=5,
        medication_streak=0,
    )
    db_session.add(row)
    await db_session.flush()
    return row


@pytest_asyncio.fixture
async def ledger(db_session: AsyncSession, progress: UserProgress, clock: FrozenClock) -> GamificationLedger:
    return GamificationLedger(db_session, progress, checkin_xp=10, clock=clock)


@pytest_asyncio.fixture
async def facade(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    clock: FrozenClock,
) -> ProgressFacade:
    """Facade over the real catalog."""
    return ProgressFacade(session_factory, settings=settings, clock=clock)


@pytest_asyncio.fixture
async def client(
    facade: ProgressFacade,
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client over the app, wired to the test facade and database."""
    from loretta.main import create_app

    app = create_app()
    app.state.facade = facade

    async def _session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = _session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
