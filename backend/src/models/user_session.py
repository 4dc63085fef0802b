"""Session record model (one row per user)."""
from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, UUIDv7Mixin, utcnow


class UserSession(Base, UUIDv7Mixin):
    """
    Server-issued session.

    ``user_id`` is unique: creating a session replaces the user's previous row
    (new ``session_id``, fresh expiry, revocation cleared) instead of adding one,
    which is what keeps at most one active session per user.
    """

    __tablename__ = "user_sessions"

    user_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        index=True,
        comment="Identity-provider user id",
    )
    session_id: Mapped[str] = mapped_column(
        String(128),
        unique=True,
        index=True,
        comment="Opaque session token handed to the client",
    )
    login_type: Mapped[str] = mapped_column(String(20))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    revoked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
