"""Tests for profile existence and provisioning."""
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.cache import TieredCache
from models.profile import Profile
from schemas.auth import IdentityAccount
from services.profile_service import ProfileService


@pytest.fixture
def profiles(
    session_factory: async_sessionmaker[AsyncSession],
    cache: TieredCache,
    monotonic,
) -> ProfileService:
    """Profile service over the test database."""
    return ProfileService(session_factory, cache, clock=monotonic)


def google_account(user_id: str = "u1") -> IdentityAccount:
    """Account as returned after a Google sign-in."""
    return IdentityAccount(
        id=user_id,
        email="jane@example.com",
        metadata={"full_name": "Jane Doe", "avatar_url": "https://img.test/jane.png"},
    )


class TestProfileExists:
    """Memory, then tiered cache, then the profiles table."""

    async def test__profile_exists__false_for_unknown_user(self, profiles: ProfileService) -> None:
        """No row means not registered."""
        assert await profiles.profile_exists("nobody") is False

    async def test__profile_exists__true_after_ensure_profile(self, profiles: ProfileService) -> None:
        """Provisioning marks the profile as existing in every tier."""
        await profiles.ensure_profile(google_account(), "google")
        assert await profiles.profile_exists("u1") is True

    async def test__profile_exists__served_from_memory_without_database(
        self, profiles: ProfileService, db_session: AsyncSession,
    ) -> None:
        """A remembered answer skips the database."""
        db_session.add(Profile(id="u1"))
        await db_session.commit()
        assert await profiles.profile_exists("u1") is True

        with patch.object(profiles, "_session_factory", side_effect=AssertionError("db hit")):
            assert await profiles.profile_exists("u1") is True

    async def test__profile_exists__backfills_memory_from_cache(
        self, profiles: ProfileService, cache: TieredCache, monotonic,
    ) -> None:
        """A tiered-cache answer is copied into memory."""
        await cache.set("u9", True, 300, prefix=ProfileService.CACHE_PREFIX)
        assert await profiles.profile_exists("u9") is True

        await cache.delete("u9", prefix=ProfileService.CACHE_PREFIX)
        assert await profiles.profile_exists("u9") is True

        monotonic.advance(61)
        assert await profiles.profile_exists("u9") is False

    async def test__forget__drops_every_tier(self, profiles: ProfileService) -> None:
        """After forget the table is consulted again."""
        await profiles.remember_existence("u1", True)
        await profiles.forget("u1")
        assert await profiles.profile_exists("u1") is False


class TestEnsureProfile:
    """Get-or-create during full verification."""

    async def test__ensure_profile__creates_profile_from_account(self, profiles: ProfileService) -> None:
        """Display fields come from provider metadata."""
        user = await profiles.ensure_profile(google_account(), "google")

        assert user.id == "u1"
        assert user.email == "jane@example.com"
        assert user.name == "Jane Doe"
        assert user.avatar_url == "https://img.test/jane.png"
        assert user.username == "Jane Doe"
        assert user.role == "user"

    async def test__ensure_profile__email_login_uses_email_local_part(
        self, profiles: ProfileService,
    ) -> None:
        """Email sign-ups get their username from the address."""
        user = await profiles.ensure_profile(google_account(), "email")
        assert user.username == "jane"

    async def test__ensure_profile__fills_only_blank_fields(
        self, profiles: ProfileService, db_session: AsyncSession,
    ) -> None:
        """Existing values are kept; missing ones are filled."""
        db_session.add(Profile(id="u1", name="Custom Name"))
        await db_session.commit()

        user = await profiles.ensure_profile(google_account(), "google")

        assert user.name == "Custom Name"
        assert user.avatar_url == "https://img.test/jane.png"
        assert user.email == "jane@example.com"

    async def test__get_profile__returns_record(
        self, profiles: ProfileService,
    ) -> None:
        """A provisioned profile reads back as a user record."""
        await profiles.ensure_profile(google_account(), "google")
        user = await profiles.get_profile("u1")
        assert user.id == "u1"

    async def test__delete_profile__removes_row_and_existence(self, profiles: ProfileService) -> None:
        """Deleted profiles read as not registered right away."""
        await profiles.ensure_profile(google_account(), "google")
        assert await profiles.delete_profile("u1") is True
        assert await profiles.profile_exists("u1") is False
        assert await profiles.get_profile("u1") is None
