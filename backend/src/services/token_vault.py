"""Durable store of OAuth provider refresh tokens."""
import logging

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.base import utcnow
from models.oauth_refresh_token import OAuthRefreshToken

logger = logging.getLogger(__name__)


class TokenVault:
    """
    One refresh token per (user, provider).

    Tokens are read only by the OAuth coordinator and account revocation; they are
    never cached and never logged.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_refresh_token(self, user_id: str, provider: str) -> str | None:
        """Stored refresh token, or None."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(OAuthRefreshToken.refresh_token).where(
                    OAuthRefreshToken.user_id == user_id,
                    OAuthRefreshToken.provider == provider,
                ),
            )
            return result.scalar_one_or_none()

    async def list_providers(self, user_id: str) -> list[str]:
        """Providers the user has a stored token for."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(OAuthRefreshToken.provider)
                .where(OAuthRefreshToken.user_id == user_id)
                .order_by(OAuthRefreshToken.provider),
            )
            return list(result.scalars())

    async def save_refresh_token(self, user_id: str, provider: str, refresh_token: str | None) -> None:
        """
        Create or overwrite the stored token. ``None`` deletes it.

        Handles the race where two logins insert the same (user, provider) at once:
        on IntegrityError the transaction is rolled back and the winner's row is
        overwritten.
        """
        if refresh_token is None:
            await self.delete_refresh_token(user_id, provider)
            return

        async with self._session_factory() as db:
            existing = await self._get_row(db, user_id, provider)
            if existing is None:
                db.add(OAuthRefreshToken(user_id=user_id, provider=provider, refresh_token=refresh_token))
                try:
                    await db.commit()
                    logger.info("oauth_refresh_token_saved user_id=%s provider=%s", user_id, provider)
                    return
                except IntegrityError:
                    await db.rollback()
                    existing = await self._get_row(db, user_id, provider)
                    if existing is None:
                        raise
            existing.refresh_token = refresh_token
            existing.updated_at = utcnow()
            await db.commit()
        logger.info("oauth_refresh_token_updated user_id=%s provider=%s", user_id, provider)

    async def delete_refresh_token(self, user_id: str, provider: str) -> bool:
        """Delete the stored token. Returns True if one existed."""
        async with self._session_factory() as db:
            result = await db.execute(
                delete(OAuthRefreshToken).where(
                    OAuthRefreshToken.user_id == user_id,
                    OAuthRefreshToken.provider == provider,
                ),
            )
            await db.commit()
        return bool(result.rowcount)

    @staticmethod
    async def _get_row(db: AsyncSession, user_id: str, provider: str) -> OAuthRefreshToken | None:
        result = await db.execute(
            select(OAuthRefreshToken).where(
                OAuthRefreshToken.user_id == user_id,
                OAuthRefreshToken.provider == provider,
            ),
        )
        return result.scalar_one_or_none()
