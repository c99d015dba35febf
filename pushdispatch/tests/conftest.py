from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from pushdispatch.core.config import get_settings
from pushdispatch.domain.models import Base
from pushdispatch.persistence.store import SqlDispatchStore
from pushdispatch.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Settings are lru_cached and telemetry is process-global; isolate both per test.
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_telemetry()


@pytest.fixture
async def session_factory(tmp_path):
    # File-backed SQLite so concurrent sessions in one test see each other's commits.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def store(session_factory) -> SqlDispatchStore:
    return SqlDispatchStore(session_factory)
