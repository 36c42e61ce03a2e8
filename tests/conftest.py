"""
Pytest configuration and shared fixtures.
"""
import jwt
import pytest
from httpx import AsyncClient, ASGITransport

from src.api.auth import get_settings
from src.api.main import Container, app, get_container
from src.config import Settings
from src.infrastructure.persistence.memory_repo import (
    InMemoryAccountRepository,
    InMemoryCommunityRepository,
    InMemoryDatabase,
    InMemorySqlExecutor,
    InMemoryTradeRepository,
)

TEST_SECRET = "test-secret"


class DictCache:
    """Stands in for RedisService: same get/set/delete surface, JSON-shaped values."""

    def __init__(self):
        self.store = {}

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value, ttl_seconds=60):
        self.store[key] = value.model_dump(mode="json") if hasattr(value, "model_dump") else value

    def delete(self, key):
        self.store.pop(key, None)


@pytest.fixture
def settings():
    return Settings(auth_jwt_secret=TEST_SECRET)


@pytest.fixture
def db():
    return InMemoryDatabase()


@pytest.fixture
def cache():
    return DictCache()


@pytest.fixture
def container(db, cache, settings):
    return Container(
        InMemoryAccountRepository(db),
        InMemoryTradeRepository(db),
        InMemoryCommunityRepository(db),
        InMemorySqlExecutor(db),
        cache,
        settings,
    )


@pytest.fixture
async def client(container, settings):
    """Async HTTP client for testing FastAPI endpoints against the in-memory container."""
    app.dependency_overrides[get_container] = lambda: container
    app.dependency_overrides[get_settings] = lambda: settings
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def make(user_id: str, **claims) -> dict:
        token = jwt.encode({"sub": user_id, **claims}, TEST_SECRET, algorithm="HS256")
        return {"Authorization": f"Bearer {token}"}
    return make
