# tests/conftest.py

from __future__ import annotations

import uuid
from pathlib import Path

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from app.cache.layer import CacheStore
from app.core.config import Settings
from app.database import create_db_and_tables, create_engine, create_session_factory
from app.main import create_app
from app.repositories.task_repository import TaskRepository
from app.services.task_service import TaskService

from .fakes import FakeRedis


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """
    Settings pointing at a per-test SQLite file and a test namespace.

    _env_file=None keeps a developer's .env out of the test run.
    """
    return Settings(
        _env_file=None,
        environment="test",
        log_level="WARNING",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'tasks.sqlite3'}",
        auto_create_tables=True,
        cache_namespace="test:",
        jwt_secret="test-secret",
    )


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest_asyncio.fixture()
async def cache_store(settings: Settings, fake_redis: FakeRedis) -> CacheStore:
    store = CacheStore(settings, redis=fake_redis)
    await store.init_cache()
    return store


@pytest_asyncio.fixture()
async def engine(settings: Settings):
    engine = create_engine(settings)
    await create_db_and_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture()
async def session(engine):
    async with create_session_factory(engine)() as session:
        yield session


@pytest.fixture()
def task_repository(session) -> TaskRepository:
    return TaskRepository(session)


@pytest.fixture()
def task_service(task_repository: TaskRepository, cache_store: CacheStore) -> TaskService:
    return TaskService(task_repository, cache_store)


@pytest.fixture()
def owner_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def make_client(settings: Settings, fake_redis: FakeRedis):
    """
    Build a TestClient (lifespan included) around the fake Redis.

    Keyword arguments override settings, e.g. make_client(auth_rate_limit_max=2).
    """
    clients: list[TestClient] = []

    def factory(**overrides) -> TestClient:
        app = create_app(settings.model_copy(update=overrides), redis=fake_redis)
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield factory

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture()
def client(make_client) -> TestClient:
    return make_client()
