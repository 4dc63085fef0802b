"""Schemas for users, OAuth login and issued tokens."""
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from schemas.session import SessionRecord, SessionResponse


class LoginType(StrEnum):
    """How the user authenticated."""

    EMAIL = "email"
    GOOGLE = "google"
    APPLE = "apple"
    KAKAO = "kakao"


class OAuthProvider(StrEnum):
    """Third-party providers with code exchange and revoke endpoints."""

    GOOGLE = "google"
    APPLE = "apple"
    KAKAO = "kakao"


@dataclass
class IdentityAccount:
    """
    Account as reported by the identity provider.

    Only the fields the auth core reads. ``metadata`` is the provider's free-form
    ``user_metadata`` (display name, avatar).
    """

    id: str
    email: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def display_name(self) -> str | None:
        """Full name, falling back to the short name."""
        return self.metadata.get("full_name") or self.metadata.get("name")

    @property
    def avatar_url(self) -> str | None:
        """Avatar URL if the provider supplied one."""
        return self.metadata.get("avatar_url") or self.metadata.get("picture")


@dataclass
class IdentitySignIn:
    """An identity-provider session obtained by presenting a provider id_token."""

    access_token: str
    account: IdentityAccount


class UserRecord(BaseModel):
    """
    User representation issued with sessions and cached under token hashes.

    Holds display fields only; credentials never live on this record.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str | None = None
    name: str | None = None
    avatar_url: str | None = None
    username: str | None = None
    role: str = "user"

    @property
    def needs_hydration(self) -> bool:
        """True when display fields are missing and worth refreshing."""
        return not self.name or not self.avatar_url

    @classmethod
    def from_account(cls, account: IdentityAccount, prefer_display_name: bool = False) -> "UserRecord":
        """Build a user from an identity-provider account."""
        email = account.email or None
        local_part = email.split("@")[0] if email else None
        username = (account.display_name if prefer_display_name else None) or local_part
        return cls(
            id=account.id,
            email=email,
            name=account.display_name,
            avatar_url=account.avatar_url,
            username=username or account.id,
        )


class TokenPair(BaseModel):
    """Locally issued access and refresh tokens."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class AuthSession(BaseModel):
    """Result of a successful login."""

    user: UserRecord
    session: SessionRecord
    tokens: TokenPair
    login_type: str


class OAuthLoginOptions(BaseModel):
    """Optional extras accompanying an OAuth login."""

    authorization_code: str | None = None
    code_verifier: str | None = None
    redirect_uri: str | None = None
    provider_refresh_token: str | None = Field(
        default=None,
        description="Refresh token already obtained by the client, skips code exchange",
    )


class OAuthCheckResult(BaseModel):
    """Whether a local profile exists for the token's account."""

    registered: bool


class OAuthLoginRequest(OAuthLoginOptions):
    """
    Body of POST /oauth/login.

    Kakao signs in with ``authorization_code`` plus its PKCE ``code_verifier``;
    every other login type presents an identity-provider ``access_token``.
    """

    access_token: str | None = Field(default=None, min_length=1)
    login_type: LoginType = LoginType.EMAIL

    @model_validator(mode="after")
    def check_credentials(self) -> "OAuthLoginRequest":
        """Require the credential the login type signs in with."""
        if self.login_type == LoginType.KAKAO:
            if not (self.authorization_code and self.code_verifier):
                raise ValueError("Kakao login requires authorization_code and code_verifier")
        elif not self.access_token:
            raise ValueError("access_token is required")
        return self


class OAuthLookupRequest(BaseModel):
    """Body of POST /oauth/lookup. Kakao may look up by authorization code instead."""

    access_token: str | None = Field(default=None, min_length=1)
    login_type: LoginType = LoginType.EMAIL
    authorization_code: str | None = None
    code_verifier: str | None = None
    redirect_uri: str | None = None

    @property
    def uses_code(self) -> bool:
        """True for a Kakao lookup by authorization code."""
        return self.login_type == LoginType.KAKAO and bool(self.authorization_code)

    @model_validator(mode="after")
    def check_credentials(self) -> "OAuthLookupRequest":
        """Require a token, or a code with its verifier."""
        if self.uses_code:
            if not self.code_verifier:
                raise ValueError("code_verifier is required for Kakao PKCE lookup")
        elif not self.access_token:
            raise ValueError("access_token is required")
        return self


class KakaoTicketRequest(BaseModel):
    """Body of POST /oauth/kakao/finalize."""

    ticket: str = Field(..., min_length=1)


class OAuthRevokeRequest(BaseModel):
    """Body of POST /oauth/{provider}/revoke."""

    refresh_token: str | None = None


class AuthSessionResponse(BaseModel):
    """Login response body."""

    user: UserRecord
    session: SessionResponse
    tokens: TokenPair
    login_type: str

    @classmethod
    def from_auth_session(cls, auth_session: AuthSession) -> "AuthSessionResponse":
        """Attach the live session status."""
        return cls(
            user=auth_session.user,
            session=SessionResponse.model_validate(auth_session.session),
            tokens=auth_session.tokens,
            login_type=auth_session.login_type,
        )


class RefreshedSession(BaseModel):
    """Result of a refresh: the replacement session and tokens bound to it."""

    session: SessionRecord
    tokens: TokenPair
    login_type: str


class TokenRefreshRequest(BaseModel):
    """Body of POST /auth/refresh."""

    refresh_token: str = Field(..., min_length=1)


class TokenRefreshResponse(BaseModel):
    """Refresh response body."""

    session: SessionResponse
    tokens: TokenPair
    login_type: str

    @classmethod
    def from_refreshed_session(cls, refreshed: RefreshedSession) -> "TokenRefreshResponse":
        """Attach the live session status."""
        return cls(
            session=SessionResponse.model_validate(refreshed.session),
            tokens=refreshed.tokens,
            login_type=refreshed.login_type,
        )
