"""Checks that a session's upstream identity account still exists."""
import logging
from typing import Protocol

from core.cache import TieredCache
from schemas.auth import IdentityAccount

logger = logging.getLogger(__name__)


class AccountLookup(Protocol):
    """The identity-provider call the validator depends on."""

    async def find_account_by_id(self, user_id: str) -> IdentityAccount | None: ...


class IdentityCrossValidator:
    """
    Cached "does this user's identity account still exist?" check.

    Fails open: any lookup error answers True and leaves the cached verdict as it
    was. Only an explicit "not found" answer yields False.
    """

    CACHE_PREFIX = "identity_valid"

    def __init__(
        self,
        identity_client: AccountLookup,
        cache: TieredCache,
        ttl_seconds: int = 300,
    ) -> None:
        self._identity = identity_client
        self._cache = cache
        self._ttl_seconds = ttl_seconds

    async def check_validity(self, user_id: str) -> bool:
        """Return False only when the provider explicitly reports the account gone."""
        cached = await self._cache.get(user_id, prefix=self.CACHE_PREFIX)
        if isinstance(cached, bool):
            return cached

        try:
            account = await self._identity.find_account_by_id(user_id)
        except Exception as e:  # noqa: BLE001 - every lookup failure is "provider unreachable"
            logger.warning("identity_validation_unavailable user_id=%s: %s", user_id, e)
            return True

        valid = account is not None
        if not valid:
            logger.info("identity_account_missing user_id=%s", user_id)
        await self._cache.set(user_id, valid, self._ttl_seconds, prefix=self.CACHE_PREFIX)
        return valid

    async def forget(self, user_id: str) -> None:
        """Drop any verdict for ``user_id``."""
        await self._cache.delete(user_id, prefix=self.CACHE_PREFIX)
