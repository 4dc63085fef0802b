"""
Session lifecycle: create, read, touch, revoke and sweep.

Rows live in ``user_sessions`` (one per user); reads are fronted by the tiered
cache under ``session:{session_id}``. Cache writes always follow a committed
database write, so a crash in between only leaves a stale cache entry that the
next miss or expiry re-derives.
"""
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta

from pydantic import ValidationError
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.cache import TieredCache
from models.base import as_utc, utcnow
from models.user_session import UserSession
from schemas.session import SessionRecord, SessionStatus, derive_status
from services.background import BackgroundTaskRunner
from services.cross_validator import IdentityCrossValidator
from tasks.cleanup import CleanupStats, cleanup_expired_sessions

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = timedelta(days=30)


def generate_session_id() -> str:
    """Opaque, unguessable session identifier."""
    return secrets.token_urlsafe(32)


def _record_expired(payload: dict, now: datetime) -> bool:
    expires_at = as_utc(datetime.fromisoformat(payload["expires_at"]))
    return derive_status(None, expires_at, now) == SessionStatus.EXPIRED


class SessionStore:
    """
    Single-session-per-user store.

    Invariants:
    - Creating a session replaces the user's row (new id, fresh expiry, revocation
      cleared) inside one transaction; the previous id is evicted from the cache
      before the write and again after commit, so it can never be read again.
    - ``create_session`` returns only after the new id is cached, and re-checks the
      row afterwards so a create that lost a race never leaves its id cached.
    - Every read re-derives ``status`` from the clock; cache entries never outlive
      the session's remaining lifetime.
    """

    CACHE_PREFIX = "session"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: TieredCache,
        validator: IdentityCrossValidator | None = None,
        runner: BackgroundTaskRunner | None = None,
        session_ttl: timedelta = DEFAULT_SESSION_TTL,
        cache_ttl_seconds: int = 300,
        cleanup_interval_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache
        self._validator = validator
        self._runner = runner
        self._session_ttl = session_ttl
        self._cache_ttl_seconds = cache_ttl_seconds
        self._cleanup_interval = timedelta(seconds=cleanup_interval_seconds)
        self._clock = clock
        self._last_cleanup_at: datetime | None = None
        self._validations_in_flight: set[str] = set()

    async def _cache_record(self, record: SessionRecord, now: datetime) -> None:
        ttl = min(self._cache_ttl_seconds, int(record.remaining_seconds(now)))
        if ttl <= 0:
            await self._evict(record.session_id)
            return
        await self._cache.set(record.session_id, record.cache_payload(), ttl, prefix=self.CACHE_PREFIX)

    async def _evict(self, *session_ids: str) -> None:
        for session_id in session_ids:
            await self._cache.delete(session_id, prefix=self.CACHE_PREFIX)

    async def _cached_record(self, session_id: str) -> SessionRecord | None:
        cached = await self._cache.get(session_id, prefix=self.CACHE_PREFIX)
        if not isinstance(cached, dict):
            return None
        try:
            return SessionRecord.model_validate(cached)
        except ValidationError:
            logger.warning("session_cache_corrupt session_id=%s", session_id[:8])
            await self._evict(session_id)
            return None

    async def create_session(self, user_id: str, login_type: str) -> SessionRecord:
        """
        Issue a new session for ``user_id``, replacing any previous one.

        The previous session id stops resolving as soon as this returns.
        """
        now = self._clock()
        session_id = generate_session_id()
        previous_id: str | None = None

        for attempt in range(2):
            async with self._session_factory() as db:
                try:
                    row = (await db.execute(
                        select(UserSession)
                        .where(UserSession.user_id == user_id)
                        .with_for_update(),
                    )).scalar_one_or_none()
                    if row is None:
                        row = UserSession(user_id=user_id, session_id=session_id)
                        db.add(row)
                    else:
                        previous_id = row.session_id
                        await self._evict(previous_id)
                        row.session_id = session_id
                    row.login_type = login_type
                    row.created_at = now
                    row.last_seen_at = now
                    row.expires_at = now + self._session_ttl
                    row.revoked_at = None
                    await db.commit()
                    break
                except IntegrityError:
                    # A concurrent create for the same user inserted first; update it instead
                    await db.rollback()
                    if attempt:
                        raise

        if previous_id is not None:
            await self._evict(previous_id)

        record = SessionRecord(
            session_id=session_id,
            user_id=user_id,
            login_type=login_type,
            created_at=now,
            last_seen_at=now,
            expires_at=now + self._session_ttl,
        ).observed_at(now)
        await self._cache_record(record, now)
        if not await self._is_current(user_id, session_id):
            # A concurrent create replaced this session after our commit and may
            # have evicted it before our cache write landed
            await self._evict(session_id)
            logger.info("session_superseded user_id=%s session_id=%s", user_id, session_id[:8])
        logger.info(
            "session_created user_id=%s login_type=%s replaced=%s",
            user_id,
            login_type,
            previous_id is not None,
        )
        self._maybe_schedule_cleanup(now)
        return record

    async def _is_current(self, user_id: str, session_id: str) -> bool:
        async with self._session_factory() as db:
            current = (await db.execute(
                select(UserSession.session_id).where(UserSession.user_id == user_id),
            )).scalar_one_or_none()
        return current == session_id

    async def get_session(self, session_id: str) -> SessionRecord | None:
        """
        Read a session (cache first, then the database).

        Active records come back with ``identity_verified=True`` while an
        upstream account check runs in the background.
        """
        now = self._clock()
        record = await self._cached_record(session_id)
        if record is not None:
            record = record.observed_at(now)
            if record.status != SessionStatus.EXPIRED:
                logger.debug("session_cache_hit session_id=%s", session_id[:8])
                return self._after_read(record)
            await self._evict(session_id)

        async with self._session_factory() as db:
            row = (await db.execute(
                select(UserSession).where(UserSession.session_id == session_id),
            )).scalar_one_or_none()
            if row is None:
                return None
            record = SessionRecord.model_validate(row)

        record = record.observed_at(now)
        await self._cache_record(record, now)
        self._maybe_schedule_cleanup(now)
        return self._after_read(record)

    async def touch_session(self, session_id: str) -> bool:
        """
        Bump ``last_seen_at`` if the session is still active.

        Returns:
            True if the row was updated.
        """
        now = self._clock()
        async with self._session_factory() as db:
            result = await db.execute(
                update(UserSession)
                .where(
                    UserSession.session_id == session_id,
                    UserSession.revoked_at.is_(None),
                    UserSession.expires_at > now,
                )
                .values(last_seen_at=now),
            )
            await db.commit()

        if not result.rowcount:
            await self._evict(session_id)
            return False

        cached = await self._cached_record(session_id)
        if cached is not None:
            await self._cache_record(cached.model_copy(update={"last_seen_at": now}), now)
        return True

    async def delete_session(self, session_id: str) -> bool:
        """
        Revoke a session (soft delete).

        Returns:
            True on the first call, False if already revoked or unknown.
        """
        now = self._clock()
        async with self._session_factory() as db:
            result = await db.execute(
                update(UserSession)
                .where(
                    UserSession.session_id == session_id,
                    UserSession.revoked_at.is_(None),
                )
                .values(revoked_at=now),
            )
            await db.commit()

        await self._evict(session_id)
        revoked = bool(result.rowcount)
        logger.info("session_revoked session_id=%s revoked=%s", session_id[:8], revoked)
        return revoked

    async def delete_user_sessions(self, user_id: str) -> int:
        """Hard-delete every session row for a user (account deletion)."""
        async with self._session_factory() as db:
            session_ids = list((await db.execute(
                select(UserSession.session_id).where(UserSession.user_id == user_id),
            )).scalars())
            result = await db.execute(delete(UserSession).where(UserSession.user_id == user_id))
            await db.commit()

        await self._evict(*session_ids)
        deleted = result.rowcount or 0
        logger.info("user_sessions_deleted user_id=%s count=%d", user_id, deleted)
        return deleted

    async def revoke_user_sessions(self, user_id: str) -> int:
        """Revoke the user's active session (role change, forced logout, lost account)."""
        now = self._clock()
        async with self._session_factory() as db:
            session_ids = list((await db.execute(
                select(UserSession.session_id).where(
                    UserSession.user_id == user_id,
                    UserSession.revoked_at.is_(None),
                ),
            )).scalars())
            result = await db.execute(
                update(UserSession)
                .where(UserSession.user_id == user_id, UserSession.revoked_at.is_(None))
                .values(revoked_at=now),
            )
            await db.commit()

        await self._evict(*session_ids)
        revoked = result.rowcount or 0
        if revoked:
            logger.info("user_sessions_revoked user_id=%s count=%d", user_id, revoked)
        return revoked

    def _after_read(self, record: SessionRecord) -> SessionRecord:
        if not record.is_active or self._validator is None:
            return record
        self._schedule_validation(record.user_id)
        return record.model_copy(update={"identity_verified": True})

    def _schedule_validation(self, user_id: str) -> None:
        if self._runner is None or user_id in self._validations_in_flight:
            return
        validator = self._validator
        self._validations_in_flight.add(user_id)

        async def validate() -> None:
            try:
                if not await validator.check_validity(user_id):
                    revoked = await self.revoke_user_sessions(user_id)
                    logger.warning(
                        "session_identity_invalid user_id=%s revoked=%d",
                        user_id,
                        revoked,
                    )
            finally:
                self._validations_in_flight.discard(user_id)

        if self._runner.spawn(f"session-validate:{user_id}", validate) is None:
            self._validations_in_flight.discard(user_id)

    def _maybe_schedule_cleanup(self, now: datetime) -> None:
        if self._runner is None:
            return
        if self._last_cleanup_at is not None and now - self._last_cleanup_at < self._cleanup_interval:
            return
        self._last_cleanup_at = now
        self._runner.spawn("session-cleanup", self.cleanup_expired)

    async def cleanup_expired(self) -> CleanupStats:
        """Hard-delete expired rows, then drop cache entries whose record has expired."""
        now = self._clock()
        async with self._session_factory() as db:
            stats = await cleanup_expired_sessions(db, now=now)
        stats.cache_entries_swept = await self._cache.sweep(
            f"{self.CACHE_PREFIX}:*",
            lambda payload: _record_expired(payload, now),
        )
        logger.info("session_cleanup %s", stats.to_dict())
        return stats

    def clear(self) -> None:
        """Reset in-process state (tests and shutdown)."""
        self._last_cleanup_at = None
        self._validations_in_flight.clear()
