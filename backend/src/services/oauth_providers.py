"""
OAuth provider endpoints: authorization-code exchange and token revocation.

All calls are form-encoded POSTs with a hard per-call timeout. Missing credentials,
transport failures and provider-side errors surface as ServiceUnavailableError at
the call site; a rejected authorization code is an UnauthorizedError.
"""
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

import httpx
import jwt

from core.config import Settings
from schemas.auth import OAuthProvider
from services.exceptions import ServiceUnavailableError, UnauthorizedError

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
APPLE_TOKEN_URL = "https://appleid.apple.com/auth/token"
APPLE_REVOKE_URL = "https://appleid.apple.com/auth/revoke"
APPLE_AUDIENCE = "https://appleid.apple.com"
KAKAO_TOKEN_URL = "https://kauth.kakao.com/oauth/token"
KAKAO_UNLINK_URL = "https://kapi.kakao.com/v1/user/unlink"

APPLE_CLIENT_SECRET_TTL_SECONDS = 10 * 60
# Reuse a signed client secret for slightly less than its lifetime
APPLE_CLIENT_SECRET_REUSE_SECONDS = 9 * 60

# Error codes meaning "this token is already unusable"
TOKEN_GONE_ERRORS = frozenset({"invalid_token", "invalid_grant"})
# Error codes blaming our own client registration rather than the user's code
CLIENT_CONFIG_ERRORS = frozenset({"invalid_client", "unauthorized_client"})


class RevokeResult(StrEnum):
    """Outcome of a revoke call."""

    REVOKED = "revoked"
    NOT_FOUND = "not_found"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ProviderTokens:
    """Token set returned by a provider's authorization-code grant."""

    refresh_token: str | None = None
    id_token: str | None = None
    access_token: str | None = None


def _error_code(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    return payload.get("error") if isinstance(payload, dict) else None


class BaseOAuthProvider(ABC):
    """Shared form-POST plumbing for provider endpoints."""

    name: OAuthProvider
    token_url: str
    revoke_url: str

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient) -> None:
        self._settings = settings
        self._http = http_client
        self._timeout = settings.oauth_timeout_seconds

    @property
    @abstractmethod
    def configured(self) -> bool:
        """Whether credentials for this provider are present."""

    def _ensure_configured(self) -> None:
        if not self.configured:
            raise ServiceUnavailableError(f"{self.name.title()} credentials are not configured")

    async def _post_form(
        self,
        url: str,
        data: dict[str, str],
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        try:
            return await self._http.post(url, data=data, headers=headers, timeout=self._timeout)
        except httpx.TimeoutException as e:
            raise ServiceUnavailableError(f"{self.name.title()} request timed out") from e
        except httpx.RequestError as e:
            raise ServiceUnavailableError(f"{self.name.title()} unreachable: {e}") from e

    @abstractmethod
    def _client_credentials(self) -> dict[str, str]:
        """``client_id`` / ``client_secret`` form fields."""

    def _exchange_params(self, code_verifier: str | None, redirect_uri: str | None) -> dict[str, str]:
        return {}

    def _revoke_params(self) -> dict[str, str]:
        return {}

    async def exchange_tokens(
        self,
        code: str,
        code_verifier: str | None = None,
        redirect_uri: str | None = None,
    ) -> ProviderTokens:
        """
        Redeem a single-use authorization code for the provider's token set.

        Raises:
            UnauthorizedError: The provider rejected the code (a 4xx other than 429
                or a client-registration error).
            ServiceUnavailableError: Not configured, unreachable, a 5xx, 429 or
                client-registration error, or an unreadable body.
        """
        self._ensure_configured()
        data = {
            **self._client_credentials(),
            "code": code,
            "grant_type": "authorization_code",
            **self._exchange_params(code_verifier, redirect_uri),
        }
        response = await self._post_form(self.token_url, data)
        if response.status_code >= 400:
            error = _error_code(response)
            message = f"{self.name.title()} token exchange failed: {response.status_code} {error or ''}".strip()
            if response.status_code < 500 and response.status_code != 429 and error not in CLIENT_CONFIG_ERRORS:
                raise UnauthorizedError(message)
            raise ServiceUnavailableError(message)
        try:
            payload = response.json()
        except ValueError as e:
            raise ServiceUnavailableError(f"{self.name.title()} returned an unreadable token response") from e
        if not isinstance(payload, dict):
            raise ServiceUnavailableError(f"{self.name.title()} returned an unreadable token response")
        return ProviderTokens(
            refresh_token=payload.get("refresh_token") or None,
            id_token=payload.get("id_token") or None,
            access_token=payload.get("access_token") or None,
        )

    async def exchange_code(
        self,
        code: str,
        code_verifier: str | None = None,
        redirect_uri: str | None = None,
    ) -> str:
        """
        Exchange a single-use authorization code for a refresh token.

        Raises:
            UnauthorizedError: The provider rejected the code.
            ServiceUnavailableError: As for ``exchange_tokens``, or the response
                carried no refresh token.
        """
        tokens = await self.exchange_tokens(code, code_verifier=code_verifier, redirect_uri=redirect_uri)
        if not tokens.refresh_token:
            raise ServiceUnavailableError(f"{self.name.title()} did not return a refresh_token")
        return tokens.refresh_token

    async def revoke(self, token: str) -> RevokeResult:
        """
        Revoke a refresh token.

        Returns NOT_FOUND when the provider reports the token already invalid and
        FAILED for any other rejection.

        Raises:
            ServiceUnavailableError: Not configured or unreachable.
        """
        self._ensure_configured()
        data = {
            **self._client_credentials(),
            "token": token,
            **self._revoke_params(),
        }
        response = await self._post_form(self.revoke_url, data)
        return self._revoke_result(response)

    def _revoke_result(self, response: httpx.Response) -> RevokeResult:
        if response.is_success:
            return RevokeResult.REVOKED
        error = _error_code(response)
        if error in TOKEN_GONE_ERRORS:
            return RevokeResult.NOT_FOUND
        logger.warning(
            "oauth_revoke_rejected provider=%s status=%d error=%s",
            self.name,
            response.status_code,
            error,
        )
        return RevokeResult.FAILED


class GoogleOAuthProvider(BaseOAuthProvider):
    """Google OAuth 2.0 endpoints."""

    name = OAuthProvider.GOOGLE
    token_url = GOOGLE_TOKEN_URL
    revoke_url = GOOGLE_REVOKE_URL

    @property
    def configured(self) -> bool:
        return self._settings.google_configured

    def _client_credentials(self) -> dict[str, str]:
        return {
            "client_id": self._settings.google_client_id,
            "client_secret": self._settings.google_client_secret,
        }

    def _exchange_params(self, code_verifier: str | None, redirect_uri: str | None) -> dict[str, str]:
        resolved_redirect = redirect_uri or self._settings.google_redirect_uri
        if not resolved_redirect:
            raise ServiceUnavailableError("Google redirect URI is not configured")
        params = {"redirect_uri": resolved_redirect}
        if code_verifier:
            params["code_verifier"] = code_verifier
        return params


class AppleOAuthProvider(BaseOAuthProvider):
    """Sign in with Apple endpoints; the client secret is a short-lived ES256 JWT."""

    name = OAuthProvider.APPLE
    token_url = APPLE_TOKEN_URL
    revoke_url = APPLE_REVOKE_URL

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(settings, http_client)
        self._clock = clock
        self._client_secret: str | None = None
        self._client_secret_reuse_until = 0.0

    @property
    def configured(self) -> bool:
        return self._settings.apple_configured

    def build_client_secret(self) -> str:
        """Signed client secret, reused until shortly before it expires."""
        now = self._clock()
        if self._client_secret and now < self._client_secret_reuse_until:
            return self._client_secret
        self._ensure_configured()
        issued_at = int(now)
        self._client_secret = jwt.encode(
            {
                "iss": self._settings.apple_team_id,
                "iat": issued_at,
                "exp": issued_at + APPLE_CLIENT_SECRET_TTL_SECONDS,
                "aud": APPLE_AUDIENCE,
                "sub": self._settings.apple_client_id,
            },
            self._settings.apple_private_key_pem,
            algorithm="ES256",
            headers={"kid": self._settings.apple_key_id},
        )
        self._client_secret_reuse_until = now + APPLE_CLIENT_SECRET_REUSE_SECONDS
        return self._client_secret

    def _client_credentials(self) -> dict[str, str]:
        return {
            "client_id": self._settings.apple_client_id,
            "client_secret": self.build_client_secret(),
        }

    def _revoke_params(self) -> dict[str, str]:
        return {"token_type_hint": "refresh_token"}


class KakaoOAuthProvider(BaseOAuthProvider):
    """
    Kakao Login endpoints.

    Kakao has no token revocation endpoint: revoking trades the stored refresh
    token for an access token and unlinks the app from the user's account with it.
    The code exchange returns an OpenID ``id_token`` when the app requests the
    ``openid`` scope.
    """

    name = OAuthProvider.KAKAO
    token_url = KAKAO_TOKEN_URL
    revoke_url = KAKAO_UNLINK_URL

    @property
    def configured(self) -> bool:
        return self._settings.kakao_configured

    def _client_credentials(self) -> dict[str, str]:
        credentials = {"client_id": self._settings.kakao_rest_api_key}
        if self._settings.kakao_client_secret:
            credentials["client_secret"] = self._settings.kakao_client_secret
        return credentials

    def _exchange_params(self, code_verifier: str | None, redirect_uri: str | None) -> dict[str, str]:
        resolved_redirect = redirect_uri or self._settings.kakao_redirect_uri
        if not resolved_redirect:
            raise ServiceUnavailableError("Kakao redirect URI is not configured")
        params = {"redirect_uri": resolved_redirect}
        if code_verifier:
            params["code_verifier"] = code_verifier
        return params

    async def revoke(self, token: str) -> RevokeResult:
        """
        Unlink the app from the account that owns ``token``.

        An ``invalid_grant`` on the refresh step means the token is already unusable
        and is reported as NOT_FOUND.
        """
        self._ensure_configured()
        refreshed = await self._post_form(self.token_url, {
            **self._client_credentials(),
            "grant_type": "refresh_token",
            "refresh_token": token,
        })
        if not refreshed.is_success:
            return self._revoke_result(refreshed)
        try:
            access_token = refreshed.json().get("access_token")
        except (ValueError, AttributeError):
            access_token = None
        if not access_token:
            logger.warning("oauth_revoke_rejected provider=%s (no access token from refresh)", self.name)
            return RevokeResult.FAILED
        response = await self._post_form(
            self.revoke_url,
            {},
            headers={"Authorization": f"Bearer {access_token}"},
        )
        return self._revoke_result(response)


def build_oauth_providers(
    settings: Settings,
    http_client: httpx.AsyncClient,
) -> dict[str, BaseOAuthProvider]:
    """Provider registry keyed by provider name."""
    return {
        OAuthProvider.GOOGLE: GoogleOAuthProvider(settings, http_client),
        OAuthProvider.APPLE: AppleOAuthProvider(settings, http_client),
        OAuthProvider.KAKAO: KakaoOAuthProvider(settings, http_client),
    }
