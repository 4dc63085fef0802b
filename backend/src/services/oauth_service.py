"""
OAuth login coordination.

Turns an identity-provider access token (plus an optional provider authorization
code) into a local session, choosing the cheapest path that is still safe:

Login precedence:
1. Resolved user cached under the token hash (memory, then tiered cache)
2. Offline decode of a trusted, unexpired token, when a local profile exists
3. Full verification against the identity provider

Lookup ("is this account registered?") precedence:
1. In-process verdict for the token hash
2. An in-flight lookup for the same token (joined, at most 5s old)
3. Tiered cache ``oauth_check:{hash}``
4. Cached resolved user, then profile existence
5. Offline decode, then profile existence (provider verified in the background)
6. Full provider verification, then profile existence

Every answer backfills the faster tiers above the one that served it.

Providers that sign in with an authorization code alone (Kakao PKCE) redeem the
code for an OpenID id_token and trade that for an identity-provider session; the
resulting access token then follows the full verification path. A browser
callback hands the finished login back to the app through a short-lived,
single-use ticket.
"""
import asyncio
import hashlib
import logging
import secrets
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import jwt
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from core.cache import CACHE_MISS, LocalCache, TieredCache
from schemas.auth import (
    AuthSession,
    AuthSessionResponse,
    IdentityAccount,
    IdentitySignIn,
    OAuthCheckResult,
    OAuthLoginOptions,
    OAuthProvider,
    UserRecord,
)
from services.auth_service import AuthService
from services.background import BackgroundTaskRunner
from services.exceptions import ServiceUnavailableError, UnauthorizedError
from services.identity_provider import IdentityProviderClient
from services.oauth_providers import BaseOAuthProvider, RevokeResult
from services.profile_service import ProfileService
from services.token_vault import TokenVault

logger = logging.getLogger(__name__)

T = TypeVar("T")

CHECK_MEMORY_TTL_SECONDS = 5 * 60
CHECK_CACHE_TTL_SECONDS = 5 * 60
CHECK_NEGATIVE_CACHE_TTL_SECONDS = 2 * 60
LOOKUP_IN_FLIGHT_WINDOW_SECONDS = 5
TOKEN_USER_MEMORY_TTL_SECONDS = 5 * 60
TOKEN_USER_CACHE_TTL_SECONDS = 10 * 60
USER_INDEX_TTL_SECONDS = 30 * 60
USER_INDEX_LIMIT = 12
LOGIN_TICKET_TTL_SECONDS = 3 * 60
LOGIN_TICKET_REDEEM_TIMEOUT_SECONDS = 2.0

# Login types that carry a provider authorization code or refresh token
PROVIDER_LOGIN_TYPES = frozenset(provider.value for provider in OAuthProvider)


def hash_token(token: str) -> str:
    """SHA-256 hex digest used as the cache key for a token."""
    return hashlib.sha256(token.encode()).hexdigest()


class OAuthCoordinator:
    """
    OAuth login, lookup, code exchange and connection revocation.

    In-flight maps (code exchange, lookup, login) hold one shared task per key.
    The entry is registered before the first suspension point and removed when
    the task finishes, whether it succeeded or failed, so a failed exchange
    never wedges its key.
    """

    TOKEN_CACHE_PREFIX = "oauth:token"
    USER_INDEX_PREFIX = "oauth:user-index"
    CHECK_CACHE_PREFIX = "oauth_check"
    LOGIN_TICKET_PREFIX = "kakao:ticket"

    def __init__(
        self,
        identity: IdentityProviderClient,
        auth_service: AuthService,
        profiles: ProfileService,
        vault: TokenVault,
        providers: dict[str, BaseOAuthProvider],
        cache: TieredCache,
        runner: BackgroundTaskRunner,
        trusted_issuer: str | None = None,
        offline_secret: str | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self._identity = identity
        self._auth = auth_service
        self._profiles = profiles
        self._vault = vault
        self._providers = providers
        self._cache = cache
        self._runner = runner
        # Offline decode needs both: an issuer to match and a secret to verify with
        self._offline_secret = offline_secret or None
        self._trusted_issuer = (trusted_issuer or None) if self._offline_secret else None
        self._clock = clock
        self._wall_clock = wall_clock
        self._check_memory = LocalCache(clock=clock)
        self._user_memory = LocalCache(clock=clock)
        self._exchanges_in_flight: dict[str, tuple[asyncio.Task, float]] = {}
        self._lookups_in_flight: dict[str, tuple[asyncio.Task, float]] = {}
        self._logins_in_flight: dict[str, tuple[asyncio.Task, float]] = {}
        self._tickets_redeeming: set[str] = set()

    async def _shared(
        self,
        in_flight: dict[str, tuple[asyncio.Task, float]],
        key: str,
        operation: Callable[[], Awaitable[T]],
        window_seconds: float | None = None,
    ) -> T:
        """Join the in-flight task for ``key`` or start one."""
        now = self._clock()
        entry = in_flight.get(key)
        if entry is not None and (window_seconds is None or now - entry[1] <= window_seconds):
            task = entry[0]
        else:
            task = asyncio.ensure_future(operation())
            in_flight[key] = (task, now)

            def release(done: asyncio.Task) -> None:
                current = in_flight.get(key)
                if current is not None and current[0] is done:
                    del in_flight[key]

            task.add_done_callback(release)
        return await asyncio.shield(task)

    def _provider(self, provider: str) -> BaseOAuthProvider:
        client = self._providers.get(provider)
        if client is None:
            raise ServiceUnavailableError(f"OAuth provider not supported: {provider}")
        return client

    def decode_offline(self, access_token: str) -> dict[str, Any] | None:
        """
        Claims of a self-describing token from the trusted issuer, or None.

        The signature is verified with the identity provider's signing secret,
        ``iss`` must match and ``exp`` must not have passed. Without a configured
        secret the offline path is disabled and this always returns None.
        """
        if self._trusted_issuer is None or access_token.count(".") != 2:
            return None
        try:
            claims = jwt.decode(
                access_token,
                self._offline_secret,
                algorithms=["HS256"],
                options={"verify_aud": False, "verify_exp": False},
            )
        except jwt.InvalidTokenError:
            return None
        if claims.get("iss") != self._trusted_issuer or not claims.get("sub"):
            return None
        exp = claims.get("exp")
        if exp is not None and float(exp) <= self._wall_clock():
            return None
        return claims

    async def get_cached_oauth_user(self, access_token: str) -> UserRecord | None:
        """Resolved user previously cached for this token."""
        token_hash = hash_token(access_token)
        local = self._user_memory.get(token_hash)
        if local is not CACHE_MISS:
            return local
        cached = await self._cache.get(token_hash, prefix=self.TOKEN_CACHE_PREFIX)
        if not isinstance(cached, dict):
            return None
        try:
            user = UserRecord.model_validate(cached)
        except ValidationError:
            await self._cache.delete(token_hash, prefix=self.TOKEN_CACHE_PREFIX)
            return None
        self._user_memory.set(token_hash, user, TOKEN_USER_MEMORY_TTL_SECONDS)
        return user

    async def set_cached_oauth_user(self, access_token: str, user: UserRecord) -> None:
        """Cache the user under the token hash and index it by user."""
        token_hash = hash_token(access_token)
        self._user_memory.set(token_hash, user, TOKEN_USER_MEMORY_TTL_SECONDS)
        await self._cache.set(
            token_hash,
            user.model_dump(mode="json"),
            TOKEN_USER_CACHE_TTL_SECONDS,
            prefix=self.TOKEN_CACHE_PREFIX,
        )
        await self._track_token_key(user.id, token_hash)

    async def _track_token_key(self, user_id: str, token_hash: str) -> None:
        existing = await self._cache.get(user_id, prefix=self.USER_INDEX_PREFIX)
        keys = existing if isinstance(existing, list) else []
        deduped = [token_hash, *(key for key in keys if key != token_hash)][:USER_INDEX_LIMIT]
        await self._cache.set(user_id, deduped, USER_INDEX_TTL_SECONDS, prefix=self.USER_INDEX_PREFIX)

    async def invalidate_oauth_cache_by_user(self, user_id: str) -> int:
        """Drop every token mapping and lookup verdict indexed for ``user_id``."""
        existing = await self._cache.get(user_id, prefix=self.USER_INDEX_PREFIX)
        keys = existing if isinstance(existing, list) else []
        for token_hash in keys:
            self._user_memory.delete(token_hash)
            self._check_memory.delete(token_hash)
            await self._cache.delete(token_hash, prefix=self.TOKEN_CACHE_PREFIX)
            await self._cache.delete(token_hash, prefix=self.CHECK_CACHE_PREFIX)
        await self._cache.delete(user_id, prefix=self.USER_INDEX_PREFIX)
        return len(keys)

    async def invalidate_user_caches(self, user_id: str) -> None:
        """Drop OAuth, profile-existence and auth caches for ``user_id``."""
        await self.invalidate_oauth_cache_by_user(user_id)
        await self._profiles.forget(user_id)
        await self._auth.invalidate_user(user_id)

    async def exchange_authorization_code(
        self,
        provider: str,
        code: str,
        code_verifier: str | None = None,
        redirect_uri: str | None = None,
    ) -> str:
        """
        Exchange a single-use authorization code for a refresh token.

        Concurrent calls with the same (provider, code, verifier) share one
        upstream request and all receive its result or its error.
        """
        client = self._provider(provider)
        key = f"{provider}:{code}:{code_verifier or 'default'}"
        return await self._shared(
            self._exchanges_in_flight,
            key,
            lambda: client.exchange_code(code, code_verifier=code_verifier, redirect_uri=redirect_uri),
        )

    async def _obtain_refresh_token(self, login_type: str, options: OAuthLoginOptions) -> str | None:
        if login_type not in PROVIDER_LOGIN_TYPES:
            return None
        if options.provider_refresh_token:
            return options.provider_refresh_token
        if not options.authorization_code:
            return None
        return await self.exchange_authorization_code(
            login_type,
            options.authorization_code,
            code_verifier=options.code_verifier,
            redirect_uri=options.redirect_uri,
        )

    def _persist_refresh_token_later(self, user_id: str, login_type: str, options: OAuthLoginOptions) -> None:
        if login_type not in PROVIDER_LOGIN_TYPES:
            return
        if not (options.provider_refresh_token or options.authorization_code):
            return

        async def persist() -> None:
            refresh_token = await self._obtain_refresh_token(login_type, options)
            if refresh_token:
                await self._vault.save_refresh_token(user_id, login_type, refresh_token)

        self._runner.spawn(f"oauth-refresh-save:{user_id}", persist)

    async def login_with_oauth_token(
        self,
        access_token: str,
        login_type: str = "email",
        options: OAuthLoginOptions | None = None,
    ) -> AuthSession:
        """
        Issue a local session for an identity-provider access token.

        Concurrent identical logins (same token, login type and code) share one
        attempt and receive the same session.

        Raises:
            UnauthorizedError: The token was rejected.
            ServiceUnavailableError: A provider needed on this path is unreachable
                or not configured.
        """
        if not access_token:
            raise UnauthorizedError("Missing identity provider access token")
        options = options or OAuthLoginOptions()
        key = hash_token(f"{access_token}:{login_type}:{options.authorization_code or ''}")
        return await self._shared(
            self._logins_in_flight,
            key,
            lambda: self._login(access_token, login_type, options),
        )

    async def _login(self, access_token: str, login_type: str, options: OAuthLoginOptions) -> AuthSession:
        user = await self.get_cached_oauth_user(access_token)
        if user is not None:
            logger.debug("oauth_login_cache_hit user_id=%s", user.id)
            auth_session = await self._auth.create_auth_session(user, login_type)
            self._runner.spawn(f"oauth-warm-auth:{user.id}", lambda: self._auth.warm_auth_caches(user))
            if user.needs_hydration:
                self._runner.spawn(
                    f"oauth-hydrate:{user.id}",
                    lambda: self._hydrate_user(access_token, user.id, login_type),
                )
            self._persist_refresh_token_later(user.id, login_type, options)
            return auth_session

        claims = self.decode_offline(access_token)
        if claims is not None:
            user = await self._offline_user(claims)
            if user is not None:
                logger.debug("oauth_login_offline user_id=%s", user.id)
                auth_session = await self._auth.create_auth_session(user, login_type)
                self._runner.spawn(
                    f"oauth-cache-user:{user.id}",
                    lambda: self.set_cached_oauth_user(access_token, user),
                )
                self._runner.spawn(f"oauth-warm-auth:{user.id}", lambda: self._auth.warm_auth_caches(user))
                self._runner.spawn(
                    f"oauth-hydrate:{user.id}",
                    lambda: self._hydrate_user(access_token, user.id, login_type),
                )
                self._persist_refresh_token_later(user.id, login_type, options)
                return auth_session

        account = await self._identity.resolve_user_from_token(access_token)
        user = await self._profiles.ensure_profile(account, login_type)
        refresh_token = await self._obtain_refresh_token(login_type, options)
        return await self._complete_verified_login(access_token, user, login_type, refresh_token)

    async def _complete_verified_login(
        self,
        access_token: str,
        user: UserRecord,
        login_type: str,
        refresh_token: str | None,
    ) -> AuthSession:
        auth_session = await self._auth.create_auth_session(user, login_type)
        await self.set_cached_oauth_user(access_token, user)
        self._runner.spawn(f"oauth-warm-auth:{user.id}", lambda: self._auth.warm_auth_caches(user))
        if refresh_token:
            self._runner.spawn(
                f"oauth-refresh-save:{user.id}",
                lambda: self._vault.save_refresh_token(user.id, login_type, refresh_token),
                retries=1,
            )
        logger.info("oauth_login_verified user_id=%s login_type=%s", user.id, login_type)
        return auth_session

    async def _offline_user(self, claims: dict[str, Any]) -> UserRecord | None:
        user_id = str(claims["sub"])
        try:
            if not await self._profiles.profile_exists(user_id):
                return None
            profile = await self._profiles.get_profile(user_id)
        except SQLAlchemyError as e:
            logger.warning("oauth_offline_profile_failed user_id=%s: %s", user_id, e)
            return None
        if profile is None:
            return None
        metadata = claims.get("user_metadata") or {}
        return profile.model_copy(update={
            "email": profile.email or claims.get("email"),
            "name": profile.name or metadata.get("full_name") or metadata.get("name"),
        })

    async def _verify_token_owner(self, access_token: str, user_id: str) -> IdentityAccount | None:
        """Confirm the token still resolves to ``user_id``; prime a negative verdict if not."""
        try:
            account = await self._identity.resolve_user_from_token(access_token)
        except UnauthorizedError:
            account = None
        if account is None or account.id != user_id:
            token_hash = hash_token(access_token)
            logger.info("oauth_token_owner_mismatch user_id=%s", user_id)
            self._user_memory.delete(token_hash)
            await self._cache.delete(token_hash, prefix=self.TOKEN_CACHE_PREFIX)
            await self._prime_check(token_hash, False, ttl_seconds=CHECK_NEGATIVE_CACHE_TTL_SECONDS)
            return None
        return account

    async def _hydrate_user(self, access_token: str, user_id: str, login_type: str) -> None:
        account = await self._verify_token_owner(access_token, user_id)
        if account is None:
            return
        user = await self._profiles.ensure_profile(account, login_type)
        await self.set_cached_oauth_user(access_token, user)
        await self._auth.warm_auth_caches(user)

    async def _prime_check(
        self,
        token_hash: str,
        registered: bool,
        ttl_seconds: int = CHECK_CACHE_TTL_SECONDS,
    ) -> OAuthCheckResult:
        result = OAuthCheckResult(registered=registered)
        self._check_memory.set(token_hash, registered, min(ttl_seconds, CHECK_MEMORY_TTL_SECONDS))
        await self._cache.set(token_hash, result.model_dump(), ttl_seconds, prefix=self.CHECK_CACHE_PREFIX)
        return result

    async def check_oauth_account_registered(
        self,
        access_token: str,
        login_type: str = "email",
    ) -> OAuthCheckResult:
        """
        Whether a local profile exists for the token's account.

        Raises:
            UnauthorizedError: The token was rejected on the full verification path.
            ServiceUnavailableError: The identity provider is unreachable.
        """
        if not access_token:
            raise UnauthorizedError("Missing identity provider access token")
        token_hash = hash_token(access_token)
        known = self._check_memory.get(token_hash)
        if known is not CACHE_MISS:
            return OAuthCheckResult(registered=known)
        return await self._shared(
            self._lookups_in_flight,
            token_hash,
            lambda: self._lookup(access_token, token_hash),
            window_seconds=LOOKUP_IN_FLIGHT_WINDOW_SECONDS,
        )

    async def _lookup(self, access_token: str, token_hash: str) -> OAuthCheckResult:
        cached = await self._cache.get(token_hash, prefix=self.CHECK_CACHE_PREFIX)
        if isinstance(cached, dict) and isinstance(cached.get("registered"), bool):
            self._check_memory.set(token_hash, cached["registered"], CHECK_MEMORY_TTL_SECONDS)
            return OAuthCheckResult(registered=cached["registered"])

        user = await self.get_cached_oauth_user(access_token)
        if user is not None:
            return await self._prime_check(token_hash, await self._profiles.profile_exists(user.id))

        claims = self.decode_offline(access_token)
        if claims is not None:
            user_id = str(claims["sub"])
            result = await self._prime_check(token_hash, await self._profiles.profile_exists(user_id))
            self._runner.spawn(
                f"oauth-lookup-verify:{user_id}",
                lambda: self._verify_lookup(access_token, user_id),
            )
            return result

        account = await self._identity.resolve_user_from_token(access_token)
        registered = await self._profiles.profile_exists(account.id)
        result = await self._prime_check(token_hash, registered)
        if registered:
            self._runner.spawn(
                f"oauth-cache-user:{account.id}",
                lambda: self.set_cached_oauth_user(access_token, UserRecord.from_account(account)),
            )
        return result

    async def _verify_lookup(self, access_token: str, user_id: str) -> None:
        account = await self._verify_token_owner(access_token, user_id)
        if account is not None and await self._profiles.profile_exists(user_id):
            await self.set_cached_oauth_user(access_token, UserRecord.from_account(account))

    async def _sign_in_with_code(
        self,
        provider: str,
        code: str,
        code_verifier: str | None,
        redirect_uri: str | None,
    ) -> tuple[IdentitySignIn, str | None]:
        """
        Redeem a code for the provider's id_token and sign in with it.

        Shared per (provider, code, verifier) like plain code exchanges, so a
        login and a lookup racing on the same code spend it once.
        """
        client = self._provider(provider)
        if not code:
            raise UnauthorizedError("Missing authorization code")

        async def sign_in() -> tuple[IdentitySignIn, str | None]:
            tokens = await client.exchange_tokens(code, code_verifier=code_verifier, redirect_uri=redirect_uri)
            if not tokens.id_token:
                raise ServiceUnavailableError(f"{provider.title()} did not return an id_token")
            signed_in = await self._identity.sign_in_with_id_token(provider, tokens.id_token)
            return signed_in, tokens.refresh_token

        key = f"sign-in:{provider}:{code}:{code_verifier or 'default'}"
        return await self._shared(self._exchanges_in_flight, key, sign_in)

    async def login_with_authorization_code(
        self,
        provider: str,
        code: str,
        code_verifier: str | None = None,
        redirect_uri: str | None = None,
    ) -> AuthSession:
        """
        Issue a local session from a provider authorization code alone.

        The provider refresh token from the same exchange is stored in the vault.
        Concurrent logins with the same code share one attempt and one session.

        Raises:
            UnauthorizedError: The code or the resulting id_token was rejected.
            ServiceUnavailableError: A provider is unreachable or not configured,
                or returned no id_token.
        """
        async def login() -> AuthSession:
            signed_in, refresh_token = await self._sign_in_with_code(provider, code, code_verifier, redirect_uri)
            user = await self._profiles.ensure_profile(signed_in.account, provider)
            return await self._complete_verified_login(signed_in.access_token, user, provider, refresh_token)

        key = hash_token(f"code:{provider}:{code}:{code_verifier or ''}")
        return await self._shared(self._logins_in_flight, key, login)

    async def check_account_registered_with_code(
        self,
        provider: str,
        code: str,
        code_verifier: str | None = None,
        redirect_uri: str | None = None,
    ) -> OAuthCheckResult:
        """
        Whether a local profile exists for the account behind an authorization code.

        The code is spent. For registered users the provider refresh token is
        stored and the user is cached under the new identity token.
        """
        signed_in, refresh_token = await self._sign_in_with_code(provider, code, code_verifier, redirect_uri)
        account = signed_in.account
        registered = await self._profiles.profile_exists(account.id)
        result = await self._prime_check(hash_token(signed_in.access_token), registered)
        if registered:
            self._runner.spawn(
                f"oauth-cache-user:{account.id}",
                lambda: self.set_cached_oauth_user(signed_in.access_token, UserRecord.from_account(account)),
            )
            if refresh_token:
                self._runner.spawn(
                    f"oauth-refresh-save:{account.id}",
                    lambda: self._vault.save_refresh_token(account.id, provider, refresh_token),
                    retries=1,
                )
        return result

    async def create_login_ticket(self, auth_session: AuthSession) -> str:
        """Park a finished login under a random single-use ticket."""
        ticket = secrets.token_hex(32)
        payload = AuthSessionResponse.from_auth_session(auth_session).model_dump(mode="json")
        await self._cache.set(ticket, payload, LOGIN_TICKET_TTL_SECONDS, prefix=self.LOGIN_TICKET_PREFIX)
        return ticket

    async def redeem_login_ticket(self, ticket: str) -> AuthSessionResponse | None:
        """
        The login parked under ``ticket``, or None if it is unknown, expired or
        already redeemed.

        The ticket is deleted whatever the outcome. A cache read slower than
        ``LOGIN_TICKET_REDEEM_TIMEOUT_SECONDS`` counts as unknown.
        """
        if not ticket or ticket in self._tickets_redeeming:
            return None
        self._tickets_redeeming.add(ticket)
        try:
            try:
                payload = await asyncio.wait_for(
                    self._cache.get(ticket, prefix=self.LOGIN_TICKET_PREFIX),
                    LOGIN_TICKET_REDEEM_TIMEOUT_SECONDS,
                )
            except TimeoutError:
                logger.warning("login_ticket_read_timed_out")
                payload = None
            await self._cache.delete(ticket, prefix=self.LOGIN_TICKET_PREFIX)
        finally:
            self._tickets_redeeming.discard(ticket)
        if not isinstance(payload, dict):
            return None
        try:
            return AuthSessionResponse.model_validate(payload)
        except ValidationError:
            logger.warning("login_ticket_corrupt")
            return None

    async def revoke_provider_connection(
        self,
        user_id: str,
        provider: str,
        refresh_token_override: str | None = None,
    ) -> RevokeResult:
        """
        Revoke the user's connection at the provider. Never raises.

        The stored token is deleted (and the user's OAuth caches dropped) only when
        the provider confirms revocation or reports the token already gone; any
        other outcome leaves it in place for a later attempt.
        """
        try:
            token = refresh_token_override
            if token is None:
                token = await self._vault.get_refresh_token(user_id, provider)
            if not token:
                logger.info("oauth_revoke_skipped user_id=%s provider=%s (no token)", user_id, provider)
                return RevokeResult.SKIPPED

            result = await self._provider(provider).revoke(token)
            if result in (RevokeResult.REVOKED, RevokeResult.NOT_FOUND):
                await self._vault.delete_refresh_token(user_id, provider)
                await self.invalidate_oauth_cache_by_user(user_id)
            logger.info("oauth_revoke user_id=%s provider=%s result=%s", user_id, provider, result)
            return result
        except Exception as e:  # noqa: BLE001 - revocation is best-effort cleanup
            logger.warning("oauth_revoke_failed user_id=%s provider=%s: %s", user_id, provider, e)
            return RevokeResult.FAILED

    def clear(self) -> None:
        """Reset in-process state (tests and shutdown)."""
        self._check_memory.clear()
        self._user_memory.clear()
        self._exchanges_in_flight.clear()
        self._lookups_in_flight.clear()
        self._logins_in_flight.clear()
        self._tickets_redeeming.clear()
