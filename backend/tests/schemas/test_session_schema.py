"""Tests for session, user and OAuth request schemas."""
from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from schemas.auth import IdentityAccount, OAuthLoginRequest, OAuthLookupRequest, UserRecord
from schemas.session import SessionRecord, SessionStatus, derive_status

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def make_record(**overrides) -> SessionRecord:
    """Session record expiring in a day."""
    values = {
        "session_id": "sess-1",
        "user_id": "u1",
        "login_type": "email",
        "created_at": NOW - timedelta(days=1),
        "last_seen_at": NOW,
        "expires_at": NOW + timedelta(days=1),
    }
    values.update(overrides)
    return SessionRecord(**values)


class TestDeriveStatus:
    """Revocation wins over expiry; expiry is inclusive."""

    def test__derive_status__active_before_expiry(self) -> None:
        """One second of lifetime left is active."""
        assert derive_status(None, NOW + timedelta(seconds=1), NOW) == SessionStatus.ACTIVE

    def test__derive_status__expired_at_expiry(self) -> None:
        """A session is expired at exactly expires_at."""
        assert derive_status(None, NOW, NOW) == SessionStatus.EXPIRED

    def test__derive_status__revoked_wins_over_expired(self) -> None:
        """A revoked and expired session reads as revoked."""
        assert derive_status(NOW - timedelta(days=2), NOW - timedelta(days=1), NOW) == SessionStatus.REVOKED

    def test__derive_status__naive_expiry_is_utc(self) -> None:
        """Timestamps read back without tzinfo are treated as UTC."""
        naive = (NOW + timedelta(minutes=1)).replace(tzinfo=None)
        assert derive_status(None, naive, NOW) == SessionStatus.ACTIVE


class TestSessionRecord:
    """Snapshot and cache payload."""

    def test__observed_at__derives_status_and_flag(self) -> None:
        """Status and is_active follow the clock, not the stored values."""
        record = make_record(status=SessionStatus.ACTIVE, is_active=True)

        later = record.observed_at(NOW + timedelta(days=2))

        assert later.status == SessionStatus.EXPIRED
        assert later.is_active is False

    def test__cache_payload__omits_derived_fields(self) -> None:
        """Derived fields are never cached."""
        payload = make_record().cache_payload()
        assert "status" not in payload
        assert "is_active" not in payload
        assert payload["session_id"] == "sess-1"

    def test__cache_payload__round_trips_to_utc(self) -> None:
        """Cached timestamps come back timezone-aware."""
        restored = SessionRecord.model_validate(make_record().cache_payload())
        assert restored.expires_at == NOW + timedelta(days=1)
        assert restored.expires_at.tzinfo is not None

    def test__remaining_seconds__never_negative(self) -> None:
        """Expired records have no remaining lifetime."""
        record = make_record()
        assert record.remaining_seconds(NOW) == 86400
        assert record.remaining_seconds(NOW + timedelta(days=3)) == 0


class TestUserRecord:
    """User record construction."""

    def test__from_account__email_login_uses_local_part(self) -> None:
        """Email users are named after their address."""
        user = UserRecord.from_account(IdentityAccount(id="u1", email="jane@example.com"))
        assert user.username == "jane"

    def test__from_account__falls_back_to_id(self) -> None:
        """An account with no email or name still gets a username."""
        assert UserRecord.from_account(IdentityAccount(id="u1")).username == "u1"

    def test__needs_hydration__missing_display_fields(self) -> None:
        """Users without a name or avatar are refreshed in the background."""
        assert UserRecord(id="u1").needs_hydration is True
        assert UserRecord(id="u1", name="Jane", avatar_url="https://img.test/j.png").needs_hydration is False


class TestOAuthRequests:
    """Which credential each login type must present."""

    def test__login_request__kakao_needs_code_and_verifier(self) -> None:
        """Kakao signs in by PKCE code; an access token alone is refused."""
        request = OAuthLoginRequest(login_type="kakao", authorization_code="c", code_verifier="v")
        assert request.access_token is None
        with pytest.raises(ValidationError, match="code_verifier"):
            OAuthLoginRequest(login_type="kakao", access_token="t", authorization_code="c")

    def test__login_request__other_types_need_access_token(self) -> None:
        """Email, Google and Apple present an identity-provider token."""
        with pytest.raises(ValidationError, match="access_token is required"):
            OAuthLoginRequest(login_type="apple", authorization_code="c")

    def test__lookup_request__kakao_code_or_token(self) -> None:
        """Kakao lookups use the code when one is sent and the token otherwise."""
        assert OAuthLookupRequest(login_type="kakao", authorization_code="c", code_verifier="v").uses_code
        assert not OAuthLookupRequest(login_type="kakao", access_token="t").uses_code
        assert not OAuthLookupRequest(login_type="google", access_token="t", authorization_code="c").uses_code
