# tests/conftest.py

from __future__ import annotations

from pathlib import Path

import pytest

from app.cache.layer import CacheLayer
from app.core.config import Settings
from app.database import build_engine, build_session_factory, create_db_and_tables
from app.repositories.purge_queue import PurgeQueue
from app.repositories.task_store import TaskStore
from app.services.purge_scheduler import DeferredDeletionScheduler
from app.services.task_service import TaskService

from .fakes import FakeTimer


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """
    Settings for one test: a throwaway SQLite file and no Redis, so the
    cache runs L1-only and nothing leaves the process.
    """
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'tasks.db'}",
        redis_dsn="",
        cache_ttl_seconds=60,
        purge_delay_seconds=600,
        purge_retry_delay_seconds=60,
        purge_max_attempts=3,
    )


@pytest.fixture()
async def engine(settings: Settings):
    engine = build_engine(settings)
    await create_db_and_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture()
def timer() -> FakeTimer:
    return FakeTimer()


@pytest.fixture()
def cache(settings: Settings, timer: FakeTimer) -> CacheLayer:
    return CacheLayer(settings, timer=timer)


@pytest.fixture()
def store(session_factory) -> TaskStore:
    return TaskStore(session_factory)


@pytest.fixture()
def queue(session_factory) -> PurgeQueue:
    return PurgeQueue(session_factory)


@pytest.fixture()
def scheduler(store, queue, cache, settings: Settings) -> DeferredDeletionScheduler:
    return DeferredDeletionScheduler(
        store,
        queue,
        cache,
        delay_seconds=settings.purge_delay_seconds,
        retry_delay_seconds=settings.purge_retry_delay_seconds,
        max_attempts=settings.purge_max_attempts,
    )


@pytest.fixture()
def service(store, cache, scheduler, settings: Settings) -> TaskService:
    return TaskService(store, cache, scheduler, cache_ttl=settings.cache_ttl_seconds)
