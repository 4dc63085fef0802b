"""Stored OAuth provider refresh tokens."""
from sqlalchemy import String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin, UUIDv7Mixin


class OAuthRefreshToken(Base, UUIDv7Mixin, TimestampMixin):
    """
    Long-lived provider refresh token, one per (user, provider).

    This is the only durable secret the auth core owns. It is never copied into a
    cached or user-facing object.
    """

    __tablename__ = "oauth_refresh_tokens"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_oauth_refresh_tokens_user_provider"),
    )

    user_id: Mapped[str] = mapped_column(String(64), index=True)
    provider: Mapped[str] = mapped_column(
        String(20),
        comment="OAuth provider, e.g. 'google', 'apple'",
    )
    refresh_token: Mapped[str] = mapped_column(Text)
