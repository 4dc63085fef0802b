"""Local user profile model."""
from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin


class Profile(Base, TimestampMixin):
    """Local profile keyed by the identity-provider user id."""

    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        comment="Identity-provider user id",
    )
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    avatar_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    username: Mapped[str | None] = mapped_column(String(50), nullable=True)
    login_type: Mapped[str] = mapped_column(String(20), default="email")
    role: Mapped[str] = mapped_column(String(20), default="user")
