"""Process-wide wiring of the auth, session and cache components."""
import logging
from dataclasses import dataclass
from datetime import timedelta

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.cache import TieredCache
from core.config import Settings
from services.account_service import AccountService
from services.auth_service import AuthService
from services.background import BackgroundTaskRunner
from services.cross_validator import IdentityCrossValidator
from services.identity_provider import IdentityProviderClient
from services.jwt_service import JWTService
from services.oauth_providers import build_oauth_providers
from services.oauth_service import OAuthCoordinator
from services.profile_service import ProfileService
from services.session_service import SessionStore
from services.token_vault import TokenVault

logger = logging.getLogger(__name__)


@dataclass
class AuthComponents:
    """Everything a request handler needs, built once per process."""

    cache: TieredCache
    runner: BackgroundTaskRunner
    identity: IdentityProviderClient
    validator: IdentityCrossValidator
    sessions: SessionStore
    vault: TokenVault
    profiles: ProfileService
    auth: AuthService
    oauth: OAuthCoordinator
    accounts: AccountService

    def clear(self) -> None:
        """Reset every in-process cache tier (tests and shutdown)."""
        self.oauth.clear()
        self.sessions.clear()
        self.profiles.clear()
        self.cache.clear()


def build_components(
    settings: Settings,
    cache: TieredCache,
    session_factory: async_sessionmaker[AsyncSession],
    http_client: httpx.AsyncClient,
    runner: BackgroundTaskRunner | None = None,
) -> AuthComponents:
    """Construct the component graph from settings and shared clients."""
    runner = runner or BackgroundTaskRunner()
    identity = IdentityProviderClient(settings, http_client)
    validator = IdentityCrossValidator(
        identity,
        cache,
        ttl_seconds=settings.identity_validation_ttl_seconds,
    )
    sessions = SessionStore(
        session_factory,
        cache,
        validator=validator,
        runner=runner,
        session_ttl=timedelta(days=settings.session_ttl_days),
        cache_ttl_seconds=settings.session_cache_ttl_seconds,
        cleanup_interval_seconds=settings.session_cleanup_interval_seconds,
    )
    vault = TokenVault(session_factory)
    profiles = ProfileService(session_factory, cache)
    auth = AuthService(sessions, JWTService.from_settings(settings), cache)
    oauth = OAuthCoordinator(
        identity,
        auth,
        profiles,
        vault,
        build_oauth_providers(settings, http_client),
        cache,
        runner,
        trusted_issuer=settings.identity_issuer if settings.supabase_url else None,
        offline_secret=settings.supabase_jwt_secret,
    )
    accounts = AccountService(sessions, vault, oauth, identity, profiles)
    if not settings.identity_provider_configured:
        logger.warning("identity_provider_not_configured: logins will fail with 503")
    return AuthComponents(
        cache=cache,
        runner=runner,
        identity=identity,
        validator=validator,
        sessions=sessions,
        vault=vault,
        profiles=profiles,
        auth=auth,
        oauth=oauth,
        accounts=accounts,
    )


class _ComponentsState:
    """Container for the global components instance."""

    instance: AuthComponents | None = None


_state = _ComponentsState()


def get_components() -> AuthComponents | None:
    """Get the global components, or None before startup."""
    return _state.instance


def set_components(components: AuthComponents | None) -> None:
    """Set the global components (called during app lifespan)."""
    _state.instance = components
