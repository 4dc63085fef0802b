"""Local profiles and the cached "does a profile exist" answer."""
import logging
import time
from collections.abc import Callable

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.cache import CACHE_MISS, LocalCache, TieredCache
from models.profile import Profile
from schemas.auth import IdentityAccount, LoginType, UserRecord

logger = logging.getLogger(__name__)

MEMORY_TTL_SECONDS = 60
CACHE_TTL_SECONDS = 5 * 60


class ProfileService:
    """
    Profile lookups for the OAuth signup-vs-login decision.

    Existence is answered from memory (60s), then the tiered cache
    ``profile_exists:{id}`` (5 min), then the ``profiles`` table; each answer
    backfills the faster tiers. The table stays authoritative.
    """

    CACHE_PREFIX = "profile_exists"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: TieredCache,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache
        self._memory = LocalCache(clock=clock)

    async def profile_exists(self, user_id: str) -> bool:
        """Whether a local profile exists for ``user_id``."""
        known = self._memory.get(user_id)
        if known is not CACHE_MISS:
            return known

        cached = await self._cache.get(user_id, prefix=self.CACHE_PREFIX)
        if isinstance(cached, bool):
            self._memory.set(user_id, cached, MEMORY_TTL_SECONDS)
            return cached

        async with self._session_factory() as db:
            result = await db.execute(select(Profile.id).where(Profile.id == user_id).limit(1))
            exists = result.scalar_one_or_none() is not None

        await self.remember_existence(user_id, exists)
        return exists

    async def remember_existence(self, user_id: str, exists: bool) -> None:
        """Backfill both existence tiers."""
        self._memory.set(user_id, exists, MEMORY_TTL_SECONDS)
        await self._cache.set(user_id, exists, CACHE_TTL_SECONDS, prefix=self.CACHE_PREFIX)

    async def get_profile(self, user_id: str) -> UserRecord | None:
        """Profile as a user record, or None."""
        async with self._session_factory() as db:
            profile = await db.get(Profile, user_id)
            return UserRecord.model_validate(profile) if profile is not None else None

    async def ensure_profile(self, account: IdentityAccount, login_type: str) -> UserRecord:
        """
        Get or create the profile for an identity account.

        Missing display fields are filled from the account. Handles concurrent
        first logins of the same account by re-reading after an IntegrityError.
        """
        prefer_display_name = login_type != LoginType.EMAIL
        seed = UserRecord.from_account(account, prefer_display_name=prefer_display_name)

        async with self._session_factory() as db:
            profile = await db.get(Profile, account.id)
            if profile is None:
                profile = Profile(
                    id=account.id,
                    email=seed.email,
                    name=seed.name,
                    avatar_url=seed.avatar_url,
                    username=seed.username,
                    login_type=login_type,
                )
                db.add(profile)
                try:
                    await db.commit()
                    logger.info("profile_created user_id=%s login_type=%s", account.id, login_type)
                except IntegrityError:
                    await db.rollback()
                    profile = await db.get(Profile, account.id)
                    if profile is None:
                        raise
            else:
                changed = False
                for field_name in ("email", "name", "avatar_url"):
                    value = getattr(seed, field_name)
                    if value and not getattr(profile, field_name):
                        setattr(profile, field_name, value)
                        changed = True
                if changed:
                    await db.commit()
            user = UserRecord.model_validate(profile)

        await self.remember_existence(account.id, True)
        return user

    async def delete_profile(self, user_id: str) -> bool:
        """Delete the profile row and forget its existence."""
        async with self._session_factory() as db:
            result = await db.execute(delete(Profile).where(Profile.id == user_id))
            await db.commit()
        await self.forget(user_id)
        return bool(result.rowcount)

    async def forget(self, user_id: str) -> None:
        """Drop cached existence for ``user_id`` from both tiers."""
        self._memory.delete(user_id)
        await self._cache.delete(user_id, prefix=self.CACHE_PREFIX)

    def clear(self) -> None:
        """Reset in-process state (tests and shutdown)."""
        self._memory.clear()
