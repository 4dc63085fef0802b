"""SQLAlchemy models."""
from models.base import Base, TimestampMixin, UUIDv7Mixin
from models.oauth_refresh_token import OAuthRefreshToken
from models.profile import Profile
from models.user_session import UserSession

__all__ = [
    "Base",
    "OAuthRefreshToken",
    "Profile",
    "TimestampMixin",
    "UUIDv7Mixin",
    "UserSession",
]
