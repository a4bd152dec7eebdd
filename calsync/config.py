"""Application configuration."""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
import structlog

logger = structlog.get_logger()


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: str = "development"
    debug: bool = False  # Secure by default - enable explicitly for development
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000
    app_base_url: str = "http://localhost:8000"

    # Frontend the OAuth callback redirects back into
    app_site_url: str = "https://violetsandvibes.com"

    # Database
    database_url: str = "sqlite:///./data/calendar_sync.db"

    # OAuth token encryption at rest (Fernet key, urlsafe base64)
    token_encryption_key: Optional[str] = None
    token_encryption_key_path: str = "./data/sync_encryption.key"

    # OAuth state signing
    calendar_oauth_state_secret: Optional[str] = None
    calendar_oauth_callback_url: Optional[str] = None

    # Google Calendar OAuth client
    google_calendar_client_id: Optional[str] = None
    google_calendar_client_secret: Optional[str] = None

    # Microsoft Outlook (Graph) OAuth client
    outlook_calendar_client_id: Optional[str] = None
    outlook_calendar_client_secret: Optional[str] = None

    # Bearer token verification (HS256 access tokens issued by the auth backend)
    auth_jwt_secret: Optional[str] = None
    auth_jwt_audience: Optional[str] = None

    # Upper bound for any single provider HTTP call
    provider_timeout_seconds: float = 15.0

    # Security
    cors_origins: str = "https://violetsandvibes.com"

    def __init__(self, **kwargs):
        """Initialize settings with security validation."""
        super().__init__(**kwargs)

        # Only validate in production environment
        if self.app_env == "production":
            if not self.state_secret or len(self.state_secret) < 32:
                raise ValueError(
                    "CALENDAR_OAUTH_STATE_SECRET must be set to a secure value (minimum 32 characters). "
                    "Generate one with: python -c 'import secrets; print(secrets.token_urlsafe(32))'"
                )
            if not self.auth_jwt_secret:
                raise ValueError("AUTH_JWT_SECRET must be set in production.")
        else:
            # Development mode - warn if using weak secrets
            if self.state_secret and len(self.state_secret) < 32:
                logger.warning("weak_state_secret",
                             message="OAuth state secret is too short (< 32 chars). OK for dev, but change for production!")
            if not self.auth_jwt_secret:
                logger.warning("missing_auth_jwt_secret",
                             message="AUTH_JWT_SECRET not set. Authenticated endpoints will reject every request.")

    @property
    def state_secret(self) -> Optional[str]:
        """Secret used to sign OAuth state tokens."""
        return self.calendar_oauth_state_secret or self.auth_jwt_secret

    @property
    def oauth_callback_url(self) -> str:
        """Redirect URI registered with both calendar providers."""
        if self.calendar_oauth_callback_url:
            return self.calendar_oauth_callback_url
        return f"{self.app_base_url.rstrip('/')}/api/calendar/oauth/callback"


# Global settings instance
settings = Settings()
