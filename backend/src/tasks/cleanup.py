"""
Scheduled cleanup task.

This module hard-deletes expired session rows and refresh tokens whose owner no
longer has a profile. SessionStore runs the session part opportunistically (rate
limited); it can also run as a cron job.

Usage:
    python -m tasks.cleanup

The task:
1. Deletes session rows whose expires_at has passed (revoked or not)
2. Deletes stored OAuth refresh tokens for users without a profile
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.session import get_session_factory
from models.oauth_refresh_token import OAuthRefreshToken
from models.profile import Profile
from models.user_session import UserSession

logger = logging.getLogger(__name__)


@dataclass
class CleanupStats:
    """Statistics from a cleanup run."""

    expired_sessions_deleted: int = 0
    orphaned_tokens_deleted: int = 0
    cache_entries_swept: int = 0

    def to_dict(self) -> dict[str, int]:
        """Convert to simple dict for logging/return."""
        return {
            "expired_sessions_deleted": self.expired_sessions_deleted,
            "orphaned_tokens_deleted": self.orphaned_tokens_deleted,
            "cache_entries_swept": self.cache_entries_swept,
        }


async def cleanup_expired_sessions(
    db: AsyncSession,
    now: datetime | None = None,
) -> CleanupStats:
    """
    Hard-delete session rows past expires_at.

    Revocation does not matter here: a revoked row is kept (so a repeated logout
    reports False) until its expiry passes.

    Args:
        db: Database session.
        now: Current time for the cutoff. Defaults to datetime.now(UTC).
             Inject a specific time for testing boundary conditions.

    Returns:
        CleanupStats with expired_sessions_deleted set.
    """
    if now is None:
        now = datetime.now(UTC)

    result = await db.execute(
        delete(UserSession).where(UserSession.expires_at <= now),
    )
    await db.commit()

    stats = CleanupStats(expired_sessions_deleted=result.rowcount or 0)
    if stats.expired_sessions_deleted:
        logger.info(
            "Deleted %d expired sessions (cutoff=%s)",
            stats.expired_sessions_deleted,
            now.isoformat(),
        )
    return stats


async def cleanup_orphaned_refresh_tokens(db: AsyncSession) -> CleanupStats:
    """Delete stored refresh tokens whose user has no local profile."""
    profile_exists = select(Profile.id).where(Profile.id == OAuthRefreshToken.user_id).exists()
    result = await db.execute(delete(OAuthRefreshToken).where(~profile_exists))
    await db.commit()

    stats = CleanupStats(orphaned_tokens_deleted=result.rowcount or 0)
    if stats.orphaned_tokens_deleted:
        logger.info("Deleted %d orphaned OAuth refresh tokens", stats.orphaned_tokens_deleted)
    return stats


async def run_cleanup(
    db: AsyncSession | None = None,
    now: datetime | None = None,
) -> CleanupStats:
    """
    Run all cleanup tasks.

    Args:
        db: Database session. If None, creates one from the session factory.
        now: Current time for cutoff calculation. Defaults to datetime.now(UTC).

    Returns:
        Combined CleanupStats.
    """
    logger.info("Starting cleanup task")

    async def _run(session: AsyncSession) -> CleanupStats:
        session_stats = await cleanup_expired_sessions(session, now=now)
        token_stats = await cleanup_orphaned_refresh_tokens(session)
        return CleanupStats(
            expired_sessions_deleted=session_stats.expired_sessions_deleted,
            orphaned_tokens_deleted=token_stats.orphaned_tokens_deleted,
        )

    if db is not None:
        stats = await _run(db)
    else:
        async with get_session_factory()() as session:
            stats = await _run(session)

    logger.info("Cleanup complete: %s", stats.to_dict())
    return stats


def main() -> None:
    """Entry point for running cleanup as a script."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    asyncio.run(run_cleanup())


if __name__ == "__main__":
    main()
