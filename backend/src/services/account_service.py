"""Account deletion across sessions, provider connections and the identity provider."""
import logging
from dataclasses import dataclass

from services.identity_provider import IdentityProviderClient
from services.oauth_providers import RevokeResult
from services.oauth_service import OAuthCoordinator
from services.profile_service import ProfileService
from services.session_service import SessionStore
from services.token_vault import TokenVault

logger = logging.getLogger(__name__)


@dataclass
class AccountDeletionResult:
    """What an account deletion removed."""

    identity_deleted: bool
    sessions_deleted: int = 0
    connections_revoked: int = 0


class AccountService:
    """
    Deletes an account.

    Secondary cleanup (provider revocation, cache invalidation) is best-effort and
    never fails the deletion; only the identity-provider deletion can.
    """

    def __init__(
        self,
        sessions: SessionStore,
        vault: TokenVault,
        oauth: OAuthCoordinator,
        identity: IdentityProviderClient,
        profiles: ProfileService,
    ) -> None:
        self._sessions = sessions
        self._vault = vault
        self._oauth = oauth
        self._identity = identity
        self._profiles = profiles

    async def delete_account(self, user_id: str) -> AccountDeletionResult:
        """
        Delete the account for ``user_id``.

        Order: revoke provider connections, drop sessions and the profile, delete
        the identity-provider account (an explicit "not found" counts as deleted),
        then invalidate caches. Tokens whose revocation failed stay stored; the
        cleanup job removes them once no profile references them.

        Raises:
            ServiceUnavailableError: The identity provider could not delete the account.
        """
        revoked = 0
        for provider in await self._vault.list_providers(user_id):
            result = await self._oauth.revoke_provider_connection(user_id, provider)
            if result in (RevokeResult.REVOKED, RevokeResult.NOT_FOUND):
                revoked += 1

        sessions_deleted = await self._sessions.delete_user_sessions(user_id)
        await self._profiles.delete_profile(user_id)
        existed = await self._identity.delete_account(user_id)

        try:
            await self._oauth.invalidate_user_caches(user_id)
        except Exception as e:  # noqa: BLE001 - cache invalidation is best-effort
            logger.warning("account_cache_invalidation_failed user_id=%s: %s", user_id, e)

        logger.info(
            "account_deleted user_id=%s identity_existed=%s sessions=%d revoked=%d",
            user_id,
            existed,
            sessions_deleted,
            revoked,
        )
        return AccountDeletionResult(
            identity_deleted=True,
            sessions_deleted=sessions_deleted,
            connections_revoked=revoked,
        )
