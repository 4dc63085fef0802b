"""Locally issued access/refresh tokens bound to a session."""
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import jwt

from core.config import Settings
from models.base import utcnow
from schemas.auth import TokenPair
from services.exceptions import UnauthorizedError

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


class JWTService:
    """HS256 token pair carrying ``sub``, ``session_id`` and ``login_type``."""

    def __init__(
        self,
        secret: str,
        issuer: str,
        audience: str,
        access_ttl_seconds: int = 3600,
        refresh_ttl_seconds: int = 7 * 24 * 3600,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._secret = secret
        self._issuer = issuer
        self._audience = audience
        self._access_ttl = timedelta(seconds=access_ttl_seconds)
        self._refresh_ttl = timedelta(seconds=refresh_ttl_seconds)
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "JWTService":
        """Build from application settings."""
        return cls(
            secret=settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
        )

    def _encode(self, claims: dict[str, Any], ttl: timedelta) -> str:
        now = self._clock()
        payload = {
            **claims,
            "iss": self._issuer,
            "aud": self._audience,
            "iat": now,
            "exp": now + ttl,
        }
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def issue_token_pair(self, user_id: str, session_id: str, login_type: str) -> TokenPair:
        """Sign an access token and a refresh token for one session."""
        claims = {"sub": user_id, "session_id": session_id, "login_type": login_type}
        return TokenPair(
            access_token=self._encode({**claims, "type": "access"}, self._access_ttl),
            refresh_token=self._encode(
                {**claims, "type": "refresh", "jti": secrets.token_urlsafe(16)},
                self._refresh_ttl,
            ),
            expires_in=int(self._access_ttl.total_seconds()),
        )

    def _decode(self, token: str, expected_type: str) -> dict[str, Any]:
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                audience=self._audience,
                issuer=self._issuer,
                options={"require": ["exp", "iat", "sub"], "verify_exp": False},
            )
        except jwt.InvalidTokenError as e:
            logger.debug("jwt_invalid: %s", e)
            raise UnauthorizedError("Invalid token") from e
        # Expiry follows the service clock
        if float(payload["exp"]) <= self._clock().timestamp():
            raise UnauthorizedError("Token has expired")
        if payload.get("type") != expected_type:
            raise UnauthorizedError("Invalid token type")
        return payload

    def verify_access_token(self, token: str) -> dict[str, Any]:
        """Decode and validate an access token."""
        return self._decode(token, "access")

    def verify_refresh_token(self, token: str) -> dict[str, Any]:
        """Decode and validate a refresh token."""
        return self._decode(token, "refresh")
