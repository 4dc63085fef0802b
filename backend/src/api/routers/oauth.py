"""OAuth login, account lookup, Kakao callback and provider revocation endpoints."""
import base64
import binascii
import json
import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from api.dependencies import get_components, get_current_session, get_settings
from core.config import Settings
from schemas.auth import (
    AuthSessionResponse,
    KakaoTicketRequest,
    LoginType,
    OAuthCheckResult,
    OAuthLoginRequest,
    OAuthLookupRequest,
    OAuthProvider,
    OAuthRevokeRequest,
)
from schemas.session import SessionRecord
from services.container import AuthComponents
from services.exceptions import AuthError, BadRequestError
from services.oauth_providers import RevokeResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/oauth", tags=["oauth"])


class OAuthRevokeResponse(BaseModel):
    """Outcome of a provider revocation."""

    provider: OAuthProvider
    result: RevokeResult


def parse_kakao_state(state: str | None) -> tuple[str | None, str | None]:
    """
    ``(code_verifier, redirect_uri)`` carried by the callback ``state``.

    The app sends base64url JSON with ``codeVerifier``/``code_verifier`` and an
    optional ``redirectUri``/``redirect_uri``; anything else is taken to be the
    bare verifier.
    """
    if not state:
        return None, None
    try:
        decoded = base64.urlsafe_b64decode(state + "=" * (-len(state) % 4))
        parsed = json.loads(decoded)
    except (binascii.Error, ValueError):
        return state, None
    if not isinstance(parsed, dict):
        return state, None
    verifier = parsed.get("codeVerifier") or parsed.get("code_verifier")
    redirect_uri = parsed.get("redirectUri") or parsed.get("redirect_uri")
    return verifier, redirect_uri


@router.post("/login", response_model=AuthSessionResponse)
async def login(
    data: OAuthLoginRequest,
    components: AuthComponents = Depends(get_components),
) -> AuthSessionResponse:
    """
    Exchange an identity-provider access token (or a Kakao authorization code)
    for a local session.

    Logging in replaces any previous session of the same user.
    """
    if data.login_type == LoginType.KAKAO:
        auth_session = await components.oauth.login_with_authorization_code(
            OAuthProvider.KAKAO,
            data.authorization_code,
            code_verifier=data.code_verifier,
            redirect_uri=data.redirect_uri,
        )
    else:
        auth_session = await components.oauth.login_with_oauth_token(
            data.access_token,
            login_type=data.login_type,
            options=data,
        )
    return AuthSessionResponse.from_auth_session(auth_session)


@router.post("/lookup", response_model=OAuthCheckResult)
async def lookup(
    data: OAuthLookupRequest,
    components: AuthComponents = Depends(get_components),
) -> OAuthCheckResult:
    """Whether the token's (or Kakao code's) account already has a local profile."""
    if data.uses_code:
        return await components.oauth.check_account_registered_with_code(
            OAuthProvider.KAKAO,
            data.authorization_code,
            code_verifier=data.code_verifier,
            redirect_uri=data.redirect_uri,
        )
    return await components.oauth.check_oauth_account_registered(
        data.access_token,
        login_type=data.login_type,
    )


@router.get("/kakao/callback")
async def kakao_callback(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    redirect_uri: str | None = Query(default=None),
    components: AuthComponents = Depends(get_components),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    """
    Browser redirect target for Kakao Login.

    Completes the login and sends the browser back to the app's deep link with
    ``ticket`` (redeem it at ``/kakao/finalize``) or ``error``.
    """
    app_redirect = settings.kakao_app_redirect_uri

    def back_to_app(**params: str) -> RedirectResponse:
        return RedirectResponse(f"{app_redirect}?{urlencode(params)}", status_code=302)

    if not code:
        return back_to_app(error="missing_code")
    code_verifier, state_redirect_uri = parse_kakao_state(state)
    try:
        auth_session = await components.oauth.login_with_authorization_code(
            OAuthProvider.KAKAO,
            code,
            code_verifier=code_verifier,
            redirect_uri=state_redirect_uri or redirect_uri,
        )
        ticket = await components.oauth.create_login_ticket(auth_session)
    except AuthError as e:
        logger.info("kakao_callback_failed: %s", e.message)
        return back_to_app(error=e.message)
    return back_to_app(ticket=ticket)


@router.post("/kakao/finalize", response_model=AuthSessionResponse)
async def kakao_finalize(
    data: KakaoTicketRequest,
    components: AuthComponents = Depends(get_components),
) -> AuthSessionResponse:
    """Redeem a callback ticket for the login it carries. Each ticket works once."""
    result = await components.oauth.redeem_login_ticket(data.ticket)
    if result is None:
        raise BadRequestError("ticket is expired or invalid")
    return result


@router.post("/{provider}/revoke", response_model=OAuthRevokeResponse)
async def revoke(
    provider: OAuthProvider,
    data: OAuthRevokeRequest | None = None,
    current_session: SessionRecord = Depends(get_current_session),
    components: AuthComponents = Depends(get_components),
) -> OAuthRevokeResponse:
    """
    Disconnect the provider from the current user's account.

    Never fails on provider errors; ``result`` reports what happened.
    """
    result = await components.oauth.revoke_provider_connection(
        current_session.user_id,
        provider,
        refresh_token_override=data.refresh_token if data is not None else None,
    )
    return OAuthRevokeResponse(provider=provider, result=result)
