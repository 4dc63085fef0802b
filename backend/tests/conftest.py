"""Pytest fixtures for testing."""
import fnmatch
import os
import time
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from core.cache import TieredCache
from core.config import Settings
from core.redis import RedisClient
from db.session import build_engine, build_session_factory
from models import Base
from services.background import BackgroundTaskRunner

# Must be set before test modules import api.main (Settings is built at import)
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_ENABLED", "false")

TEST_JWT_SECRET = "test-jwt-secret-with-enough-length-for-hs256"
IDENTITY_URL = "https://idp.test"


class FakeRedis:
    """
    In-memory stand-in for ``redis.asyncio.Redis``.

    Implements the commands RedisClient issues. Set ``fail = True`` to make every
    command raise ``ConnectionError`` like an unreachable server.
    """

    def __init__(self) -> None:
        self.store: dict[str, tuple[bytes, float]] = {}
        self.fail = False
        self.calls = 0

    def _check(self) -> None:
        self.calls += 1
        if self.fail:
            raise RedisConnectionError("connection refused")

    def _live(self, key: str) -> bytes | None:
        entry = self.store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if time.monotonic() >= expires_at:
            del self.store[key]
            return None
        return value

    async def ping(self) -> bool:
        self._check()
        return True

    async def get(self, key: str) -> bytes | None:
        self._check()
        return self._live(key)

    async def setex(self, key: str, seconds: int, value: str | bytes) -> bool:
        self._check()
        raw = value.encode() if isinstance(value, str) else value
        self.store[key] = (raw, time.monotonic() + seconds)
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        return sum(1 for key in keys if self.store.pop(key, None) is not None)

    async def scan_iter(self, match: str = "*", count: int = 10) -> AsyncGenerator[bytes]:
        self._check()
        for key in list(self.store):
            if self._live(key) is not None and fnmatch.fnmatchcase(key, match):
                yield key.encode()

    async def flushdb(self) -> bool:
        self._check()
        self.store.clear()
        return True

    async def aclose(self) -> None:
        pass


class FakeClock:
    """Manually advanced clock returning aware datetimes."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(UTC).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    """Wall clock for session and token expiry."""
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    """Monotonic clock for in-process TTLs and cooldowns."""
    return FakeMonotonic()


@pytest.fixture
def fake_redis() -> FakeRedis:
    """Fresh in-memory Redis."""
    return FakeRedis()


@pytest.fixture
def redis_client(fake_redis: FakeRedis, monotonic: FakeMonotonic) -> RedisClient:
    """RedisClient wired to the in-memory Redis; cooldowns follow ``monotonic``."""
    client = RedisClient(
        url="redis://test",
        cooldown_seconds=30.0,
        max_cooldown_seconds=150.0,
        clock=monotonic,
    )
    client._client = fake_redis
    return client


@pytest.fixture
def cache(redis_client: RedisClient) -> TieredCache:
    """Tiered cache over the in-memory Redis."""
    return TieredCache(redis_client)


@pytest.fixture
def settings() -> Settings:
    """Settings with every provider configured."""
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        supabase_url=IDENTITY_URL,
        supabase_anon_key="anon-key",
        supabase_service_role_key="service-role-key",
        google_client_id="google-client",
        google_client_secret="google-secret",
        google_redirect_uri="https://app.test/oauth/google",
        kakao_rest_api_key="kakao-rest-key",
        kakao_redirect_uri="https://api.test/api/v1/oauth/kakao/callback",
        jwt_secret=TEST_JWT_SECRET,
    )


@pytest.fixture
async def async_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine]:
    """Per-test SQLite database with all tables created."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory for components that own their transactions."""
    return build_session_factory(async_engine)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Session for arranging and inspecting rows directly."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def runner() -> AsyncGenerator[BackgroundTaskRunner]:
    """Background runner without retry delays; closed after the test."""
    task_runner = BackgroundTaskRunner(backoff_seconds=0)
    yield task_runner
    await task_runner.close()


@pytest.fixture
async def http_client() -> AsyncGenerator[httpx.AsyncClient]:
    """Outbound HTTP client (mock it with respx)."""
    async with httpx.AsyncClient() as client:
        yield client
