"""Application configuration using pydantic-settings."""
from enum import StrEnum
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Signing key used only when JWT_SECRET is unset outside production
DEV_JWT_SECRET = "development-only-jwt-secret-do-not-deploy"


class Environment(StrEnum):
    """Deployment environment."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    environment: Environment = Field(
        default=Environment.DEVELOPMENT, validation_alias="APP_ENV",
    )

    # Database
    database_url: str
    db_pool_size: int = Field(default=10, validation_alias="DB_POOL_SIZE")
    db_max_overflow: int = Field(default=10, validation_alias="DB_MAX_OVERFLOW")

    # Redis - primary cache tier (in-process memory is the fallback tier)
    redis_url: str = Field(default="redis://localhost:6379", validation_alias="REDIS_URL")
    redis_enabled: bool = Field(default=True, validation_alias="REDIS_ENABLED")
    redis_pool_size: int = Field(default=20, validation_alias="REDIS_POOL_SIZE")
    redis_socket_timeout: float = Field(default=0.5, validation_alias="REDIS_SOCKET_TIMEOUT")
    redis_cooldown_seconds: float = Field(default=30.0, validation_alias="REDIS_COOLDOWN_SECONDS")
    redis_max_cooldown_seconds: float = Field(
        default=150.0, validation_alias="REDIS_MAX_COOLDOWN_SECONDS",
    )

    # Sessions
    session_ttl_days: int = Field(default=30, validation_alias="SESSION_TTL_DAYS")
    session_cache_ttl_seconds: int = Field(
        default=300, validation_alias="SESSION_CACHE_TTL_SECONDS",
    )
    session_cleanup_interval_dev_seconds: int = Field(
        default=5 * 60, validation_alias="SESSION_CLEANUP_INTERVAL_DEV_SECONDS",
    )
    session_cleanup_interval_prod_seconds: int = Field(
        default=60 * 60, validation_alias="SESSION_CLEANUP_INTERVAL_PROD_SECONDS",
    )
    identity_validation_ttl_seconds: int = Field(
        default=300, validation_alias="IDENTITY_VALIDATION_TTL_SECONDS",
    )

    # Identity provider (Supabase GoTrue)
    supabase_url: str = Field(default="", validation_alias="SUPABASE_URL")
    supabase_anon_key: str = Field(default="", validation_alias="SUPABASE_ANON_KEY")
    supabase_service_role_key: str = Field(
        default="", validation_alias="SUPABASE_SERVICE_ROLE_KEY",
    )
    supabase_jwt_secret: str = Field(default="", validation_alias="SUPABASE_JWT_SECRET")

    # OAuth providers
    google_client_id: str = Field(default="", validation_alias="GOOGLE_CLIENT_ID")
    google_client_secret: str = Field(default="", validation_alias="GOOGLE_CLIENT_SECRET")
    google_redirect_uri: str = Field(default="", validation_alias="GOOGLE_REDIRECT_URI")
    apple_client_id: str = Field(default="", validation_alias="APPLE_CLIENT_ID")
    apple_team_id: str = Field(default="", validation_alias="APPLE_TEAM_ID")
    apple_key_id: str = Field(default="", validation_alias="APPLE_KEY_ID")
    apple_private_key: str = Field(default="", validation_alias="APPLE_PRIVATE_KEY")
    kakao_rest_api_key: str = Field(default="", validation_alias="KAKAO_REST_API_KEY")
    kakao_client_secret: str = Field(default="", validation_alias="KAKAO_CLIENT_SECRET")
    kakao_redirect_uri: str = Field(default="", validation_alias="KAKAO_REDIRECT_URI")
    # Deep link the Kakao callback hands the login ticket (or error) back to
    kakao_app_redirect_uri: str = Field(
        default="sseudam://oauth/kakao", validation_alias="KAKAO_APP_REDIRECT_URI",
    )
    oauth_timeout_seconds: float = Field(default=8.0, validation_alias="OAUTH_TIMEOUT_SECONDS")

    # Locally issued session tokens
    jwt_secret: str = Field(default=DEV_JWT_SECRET, validation_alias="JWT_SECRET")
    jwt_issuer: str = Field(default="sseudam-api", validation_alias="JWT_ISSUER")
    jwt_audience: str = Field(default="sseudam-app", validation_alias="JWT_AUDIENCE")
    access_token_ttl_seconds: int = Field(default=3600, validation_alias="ACCESS_TOKEN_TTL")
    refresh_token_ttl_seconds: int = Field(
        default=7 * 24 * 3600, validation_alias="REFRESH_TOKEN_TTL",
    )

    # CORS - comma-separated list of allowed origins (stored as string, parsed via property)
    cors_origins_str: str = Field(
        default="http://localhost:8081",
        validation_alias="CORS_ORIGINS",
    )

    @model_validator(mode="after")
    def validate_production_secrets(self) -> "Settings":
        """
        Refuse to start in production without a JWT signing secret.

        Provider credentials are deliberately NOT validated here: a missing
        provider only disables that provider's call sites.
        """
        insecure = self.jwt_secret in ("", DEV_JWT_SECRET)
        if self.environment == Environment.PRODUCTION and insecure:
            raise ValueError("JWT_SECRET must be set when APP_ENV=production")
        return self

    @property
    def cors_origins(self) -> list[str]:
        """Parse comma-separated CORS origins string into a list."""
        if not self.cors_origins_str:
            return []
        return [origin.strip() for origin in self.cors_origins_str.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        """True when running with production policies."""
        return self.environment == Environment.PRODUCTION

    @property
    def session_cleanup_interval_seconds(self) -> int:
        """Minimum spacing between two expired-session sweeps."""
        if self.is_production:
            return self.session_cleanup_interval_prod_seconds
        return self.session_cleanup_interval_dev_seconds

    @property
    def identity_issuer(self) -> str:
        """Issuer claim carried by identity-provider access tokens."""
        return f"{self.supabase_url.rstrip('/')}/auth/v1"

    @property
    def identity_provider_configured(self) -> bool:
        """Whether the identity provider can be called at all."""
        return bool(self.supabase_url and self.supabase_anon_key)

    @property
    def identity_admin_configured(self) -> bool:
        """Whether admin (service role) calls can be made."""
        return bool(self.supabase_url and self.supabase_service_role_key)

    @property
    def google_configured(self) -> bool:
        """Whether Google code exchange and revoke can be made."""
        return bool(self.google_client_id and self.google_client_secret)

    @property
    def apple_configured(self) -> bool:
        """Whether an Apple client secret can be signed."""
        return bool(
            self.apple_client_id
            and self.apple_team_id
            and self.apple_key_id
            and self.apple_private_key,
        )

    @property
    def kakao_configured(self) -> bool:
        """Whether Kakao code exchange and unlink can be made."""
        return bool(self.kakao_rest_api_key)

    @property
    def apple_private_key_pem(self) -> str:
        """Apple private key with escaped newlines restored."""
        return self.apple_private_key.replace("\\n", "\n")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
