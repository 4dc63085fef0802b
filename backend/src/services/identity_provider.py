"""Client for the hosted identity provider (Supabase GoTrue REST API)."""
import logging
from typing import Any

import httpx

from core.config import Settings
from schemas.auth import IdentityAccount, IdentitySignIn
from services.exceptions import ServiceUnavailableError, UnauthorizedError

logger = logging.getLogger(__name__)

USER_AGENT = "SseudamBackend/1.0"


def _account_from_payload(payload: dict[str, Any]) -> IdentityAccount:
    return IdentityAccount(
        id=str(payload["id"]),
        email=payload.get("email") or None,
        metadata=payload.get("user_metadata") or {},
    )


class IdentityProviderClient:
    """
    Token resolution, id_token sign-in, account lookup and admin deletion against GoTrue.

    Every call is bounded by ``timeout``. Transport failures, timeouts and 5xx
    responses raise ServiceUnavailableError; they are never reported as
    "account not found".
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient) -> None:
        self._settings = settings
        self._http = http_client
        self._base_url = f"{settings.supabase_url.rstrip('/')}/auth/v1"
        self._timeout = settings.oauth_timeout_seconds

    def _headers(self, api_key: str, bearer: str | None = None) -> dict[str, str]:
        return {
            "apikey": api_key,
            "Authorization": f"Bearer {bearer or api_key}",
            "User-Agent": USER_AGENT,
        }

    async def _request(
        self,
        method: str,
        path: str,
        headers: dict[str, str],
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            return await self._http.request(
                method,
                f"{self._base_url}{path}",
                headers=headers,
                timeout=self._timeout,
                **kwargs,
            )
        except httpx.TimeoutException as e:
            raise ServiceUnavailableError("Identity provider request timed out") from e
        except httpx.RequestError as e:
            raise ServiceUnavailableError(f"Identity provider unreachable: {e}") from e

    async def resolve_user_from_token(self, access_token: str) -> IdentityAccount:
        """
        Resolve an identity-provider access token to its account.

        Raises:
            UnauthorizedError: The token was rejected.
            ServiceUnavailableError: Provider unreachable or not configured.
        """
        if not self._settings.identity_provider_configured:
            raise ServiceUnavailableError("Identity provider is not configured")
        response = await self._request(
            "GET",
            "/user",
            self._headers(self._settings.supabase_anon_key, bearer=access_token),
        )
        if response.status_code in (401, 403, 404):
            raise UnauthorizedError("Invalid identity provider access token")
        if response.status_code >= 400:
            raise ServiceUnavailableError(
                f"Identity provider returned {response.status_code}",
            )
        payload = response.json()
        if not payload.get("id"):
            raise UnauthorizedError("Identity provider returned no account for token")
        return _account_from_payload(payload)

    async def sign_in_with_id_token(self, provider: str, id_token: str) -> IdentitySignIn:
        """
        Sign in with an OpenID ``id_token`` issued by ``provider``.

        The identity provider creates the account on first sign-in.

        Raises:
            UnauthorizedError: The id_token was rejected.
            ServiceUnavailableError: Provider unreachable or not configured.
        """
        if not self._settings.identity_provider_configured:
            raise ServiceUnavailableError("Identity provider is not configured")
        response = await self._request(
            "POST",
            "/token",
            self._headers(self._settings.supabase_anon_key),
            params={"grant_type": "id_token"},
            json={"provider": provider, "id_token": id_token},
        )
        if 400 <= response.status_code < 500 and response.status_code != 429:
            logger.info("identity_id_token_rejected provider=%s status=%d", provider, response.status_code)
            raise UnauthorizedError(f"Identity provider rejected the {provider} id_token")
        if response.status_code >= 400:
            raise ServiceUnavailableError(
                f"Identity provider returned {response.status_code}",
            )
        payload = response.json()
        user = payload.get("user") or {}
        if not payload.get("access_token") or not user.get("id"):
            raise UnauthorizedError("Identity provider returned no session for id_token")
        return IdentitySignIn(access_token=payload["access_token"], account=_account_from_payload(user))

    async def find_account_by_id(self, user_id: str) -> IdentityAccount | None:
        """
        Admin lookup of an account.

        Returns:
            The account, or None only when the provider explicitly answers 404.

        Raises:
            ServiceUnavailableError: Any other failure.
        """
        if not self._settings.identity_admin_configured:
            raise ServiceUnavailableError("Identity provider admin access is not configured")
        response = await self._request(
            "GET",
            f"/admin/users/{user_id}",
            self._headers(self._settings.supabase_service_role_key),
        )
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise ServiceUnavailableError(
                f"Identity provider lookup returned {response.status_code}",
            )
        return _account_from_payload(response.json())

    async def delete_account(self, user_id: str) -> bool:
        """
        Admin deletion of an account.

        Returns:
            True if deleted, False if the provider reports it does not exist.
        """
        if not self._settings.identity_admin_configured:
            raise ServiceUnavailableError("Identity provider admin access is not configured")
        response = await self._request(
            "DELETE",
            f"/admin/users/{user_id}",
            self._headers(self._settings.supabase_service_role_key),
        )
        if response.status_code == 404:
            logger.info("identity_account_already_gone user_id=%s", user_id)
            return False
        if response.status_code >= 400:
            raise ServiceUnavailableError(
                f"Identity provider delete returned {response.status_code}",
            )
        return True
