"""Session record schemas."""
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models.base import as_utc

# Derived fields, never written to the cache
DERIVED_FIELDS = frozenset({"status", "is_active"})


class SessionStatus(StrEnum):
    """Derived session state."""

    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


def derive_status(revoked_at: datetime | None, expires_at: datetime, now: datetime) -> SessionStatus:
    """Revocation wins over expiry; expiry is inclusive of ``expires_at``."""
    if revoked_at is not None:
        return SessionStatus.REVOKED
    if as_utc(expires_at) <= now:
        return SessionStatus.EXPIRED
    return SessionStatus.ACTIVE


class SessionRecord(BaseModel):
    """
    Session as served to callers.

    ``status`` and ``is_active`` are snapshots taken by ``observed_at``. The cache
    stores the record without them (see ``cache_payload``) and every read
    re-derives them from ``revoked_at`` and ``expires_at`` against the clock.
    """

    model_config = ConfigDict(from_attributes=True)

    session_id: str
    user_id: str
    login_type: str
    created_at: datetime
    last_seen_at: datetime
    expires_at: datetime
    revoked_at: datetime | None = None
    identity_verified: bool = False
    status: SessionStatus = SessionStatus.ACTIVE
    is_active: bool = True

    @field_validator("created_at", "last_seen_at", "expires_at", "revoked_at")
    @classmethod
    def ensure_timezone(cls, value: datetime | None) -> datetime | None:
        """Normalize naive timestamps to UTC."""
        return as_utc(value) if value is not None else None

    def observed_at(self, now: datetime) -> "SessionRecord":
        """Copy with ``status``/``is_active`` derived at ``now``."""
        status = derive_status(self.revoked_at, self.expires_at, now)
        return self.model_copy(
            update={"status": status, "is_active": status == SessionStatus.ACTIVE},
        )

    def remaining_seconds(self, now: datetime) -> float:
        """Seconds of lifetime left at ``now`` (0 when expired)."""
        return max(0.0, (self.expires_at - now).total_seconds())

    def cache_payload(self) -> dict:
        """JSON-ready dict without the derived fields."""
        return self.model_dump(mode="json", exclude=set(DERIVED_FIELDS))


class SessionResponse(BaseModel):
    """Session payload returned by the session endpoints."""

    model_config = ConfigDict(from_attributes=True)

    session_id: str
    user_id: str
    login_type: str
    status: SessionStatus
    is_active: bool
    created_at: datetime
    last_seen_at: datetime
    expires_at: datetime
    revoked_at: datetime | None = None


class SessionDeleteResponse(BaseModel):
    """Result of a logout."""

    revoked: bool = Field(..., description="False when the session was already revoked or unknown")
