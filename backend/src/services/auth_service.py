"""Session issuance and the per-user auth cache."""
import logging
from typing import Any

from pydantic import ValidationError

from core.cache import TieredCache
from schemas.auth import AuthSession, RefreshedSession, UserRecord
from schemas.session import SessionRecord
from services.exceptions import UnauthorizedError
from services.jwt_service import JWTService
from services.session_service import SessionStore

logger = logging.getLogger(__name__)

# Cache version - bump when UserRecord fields change
CACHE_SCHEMA_VERSION = 1
USER_CACHE_TTL_SECONDS = 10 * 60


class AuthService:
    """Issues and rotates sessions with their token pairs, and authenticates requests."""

    USER_CACHE_PREFIX = f"auth:v{CACHE_SCHEMA_VERSION}:user"

    def __init__(self, sessions: SessionStore, jwt_service: JWTService, cache: TieredCache) -> None:
        self._sessions = sessions
        self._jwt = jwt_service
        self._cache = cache

    async def create_auth_session(self, user: UserRecord, login_type: str) -> AuthSession:
        """Create (replace) the user's session and sign tokens bound to it."""
        session = await self._sessions.create_session(user.id, login_type)
        tokens = self._jwt.issue_token_pair(user.id, session.session_id, login_type)
        return AuthSession(
            user=user,
            session=session,
            tokens=tokens,
            login_type=login_type,
        )

    async def warm_auth_caches(self, user: UserRecord) -> None:
        """Cache the user for request authentication."""
        await self._cache.set(
            user.id,
            user.model_dump(mode="json"),
            USER_CACHE_TTL_SECONDS,
            prefix=self.USER_CACHE_PREFIX,
        )

    async def get_cached_user(self, user_id: str) -> UserRecord | None:
        """User cached by ``warm_auth_caches``, or None."""
        cached = await self._cache.get(user_id, prefix=self.USER_CACHE_PREFIX)
        if not isinstance(cached, dict):
            return None
        try:
            return UserRecord.model_validate(cached)
        except ValidationError:
            logger.warning("auth_cache_corrupt user_id=%s", user_id)
            await self.invalidate_user(user_id)
            return None

    async def invalidate_user(self, user_id: str) -> None:
        """Drop the cached user."""
        await self._cache.delete(user_id, prefix=self.USER_CACHE_PREFIX)

    async def _bound_session(self, claims: dict[str, Any]) -> SessionRecord:
        session = await self._sessions.get_session(claims.get("session_id", ""))
        if session is None or session.user_id != claims["sub"]:
            raise UnauthorizedError("Session not found")
        if not session.is_active:
            raise UnauthorizedError(f"Session is {session.status}")
        return session

    async def authenticate(self, access_token: str) -> SessionRecord:
        """
        Resolve a locally issued access token to its active session.

        Raises:
            UnauthorizedError: Bad token, or the bound session is not active.
        """
        claims = self._jwt.verify_access_token(access_token)
        return await self._bound_session(claims)

    async def refresh(self, refresh_token: str) -> RefreshedSession:
        """
        Rotate the session bound to a refresh token.

        The bound session must still be the user's active one. It is replaced by
        a new session, so the presented refresh token (and every token issued
        with it) stops working.

        Raises:
            UnauthorizedError: Bad or expired token, or the session was replaced,
                revoked or has expired.
        """
        claims = self._jwt.verify_refresh_token(refresh_token)
        previous = await self._bound_session(claims)
        login_type = claims.get("login_type") or previous.login_type
        session = await self._sessions.create_session(previous.user_id, login_type)
        tokens = self._jwt.issue_token_pair(previous.user_id, session.session_id, login_type)
        logger.info(
            "session_refreshed user_id=%s previous=%s session_id=%s",
            previous.user_id,
            previous.session_id[:8],
            session.session_id[:8],
        )
        return RefreshedSession(session=session, tokens=tokens, login_type=login_type)
