"""Shared fixtures for API tests."""
from collections.abc import AsyncGenerator, Callable

import httpx
import pytest
import respx
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.main import app
from core.cache import TieredCache
from core.config import Settings
from db.session import get_async_session
from services.background import BackgroundTaskRunner
from services.container import AuthComponents, build_components, set_components

IDP_BASE = "https://idp.test/auth/v1"
KAKAO_SESSION_TOKEN = "idp-session-from-kakao"

JANE = {
    "id": "u1",
    "email": "jane@example.com",
    "user_metadata": {"full_name": "Jane Doe", "avatar_url": "https://img.test/jane.png"},
}


@pytest.fixture
def idp() -> respx.MockRouter:
    """
    Mocked identity provider.

    Every token (and every id_token sign-in) resolves to Jane, the admin lookup
    finds her, and deletes succeed.
    Tests re-mock individual routes by name to change that.
    """
    with respx.mock(assert_all_called=False) as router:
        router.get(f"{IDP_BASE}/user", name="resolve").mock(
            return_value=httpx.Response(200, json=JANE),
        )
        router.get(url__startswith=f"{IDP_BASE}/admin/users/", name="lookup").mock(
            return_value=httpx.Response(200, json=JANE),
        )
        router.delete(url__startswith=f"{IDP_BASE}/admin/users/", name="delete").mock(
            return_value=httpx.Response(200),
        )
        router.post(url__startswith=f"{IDP_BASE}/token", name="id_token").mock(
            return_value=httpx.Response(200, json={"access_token": KAKAO_SESSION_TOKEN, "user": JANE}),
        )
        yield router


@pytest.fixture
async def components(
    settings: Settings,
    cache: TieredCache,
    session_factory: async_sessionmaker[AsyncSession],
    http_client: httpx.AsyncClient,
    runner: BackgroundTaskRunner,
) -> AsyncGenerator[AuthComponents]:
    """Component graph installed the way the lifespan installs it."""
    built = build_components(settings, cache, session_factory, http_client, runner=runner)
    set_components(built)
    yield built
    built.clear()
    set_components(None)


@pytest.fixture
async def client(
    components: AuthComponents,
    idp: respx.MockRouter,
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncClient]:
    """HTTP client for the app; the lifespan is not run."""
    async def override_get_async_session() -> AsyncGenerator[AsyncSession]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_async_session] = override_get_async_session

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def login(client: AsyncClient) -> Callable:
    """Log in through the API and return the response body."""
    async def do_login(access_token: str = "idp-token", **extra) -> dict:
        response = await client.post(
            "/api/v1/oauth/login",
            json={"access_token": access_token, **extra},
        )
        assert response.status_code == 200, response.text
        return response.json()
    return do_login
