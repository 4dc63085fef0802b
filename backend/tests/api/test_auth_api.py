"""Tests for the session token refresh endpoint."""
from collections.abc import Callable

from httpx import AsyncClient


class TestRefresh:
    """POST /api/v1/auth/refresh"""

    async def test__refresh__returns_rotated_session_and_tokens(
        self, client: AsyncClient, login: Callable,
    ) -> None:
        """The response names a new active session and a fresh token pair."""
        body = await login()

        response = await client.post(
            "/api/v1/auth/refresh", json={"refresh_token": body["tokens"]["refresh_token"]},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["session"]["session_id"] != body["session"]["session_id"]
        assert data["session"]["status"] == "active"
        assert data["login_type"] == "email"
        assert data["tokens"]["refresh_token"] != body["tokens"]["refresh_token"]

    async def test__refresh__new_access_token_authenticates(
        self, client: AsyncClient, login: Callable,
    ) -> None:
        """The rotated access token is accepted by protected endpoints."""
        body = await login()
        refreshed = await client.post(
            "/api/v1/auth/refresh", json={"refresh_token": body["tokens"]["refresh_token"]},
        )

        response = await client.post(
            "/api/v1/oauth/google/revoke",
            headers={"Authorization": f"Bearer {refreshed.json()['tokens']['access_token']}"},
        )

        assert response.status_code == 200

    async def test__refresh__reused_token_is_401(self, client: AsyncClient, login: Callable) -> None:
        """A refresh token works once."""
        body = await login()
        payload = {"refresh_token": body["tokens"]["refresh_token"]}
        await client.post("/api/v1/auth/refresh", json=payload)

        response = await client.post("/api/v1/auth/refresh", json=payload)

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    async def test__refresh__old_session_is_gone(self, client: AsyncClient, login: Callable) -> None:
        """The refreshed-from session is no longer readable."""
        body = await login()
        await client.post("/api/v1/auth/refresh", json={"refresh_token": body["tokens"]["refresh_token"]})

        response = await client.get("/api/v1/session", params={"sessionId": body["session"]["session_id"]})

        assert response.status_code == 404

    async def test__refresh__garbage_token_is_401(self, client: AsyncClient) -> None:
        """Unsigned input is a credential error."""
        response = await client.post("/api/v1/auth/refresh", json={"refresh_token": "not-a-jwt"})
        assert response.status_code == 401

    async def test__refresh__empty_token_is_422(self, client: AsyncClient) -> None:
        """Request validation rejects an empty token."""
        response = await client.post("/api/v1/auth/refresh", json={"refresh_token": ""})
        assert response.status_code == 422
