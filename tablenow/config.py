"""Configuration management for TableNow using Pydantic."""

import logging

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Config(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage Configuration
    database_path: str = Field(
        default="tablenow.db", description="SQLite database file (or :memory:)"
    )

    # Reservation Configuration
    confirmation_prefix: str = Field(
        default="TN", description="Prefix for generated confirmation codes"
    )
    default_timezone: str = Field(
        default="UTC", description="Timezone for tenants that do not set one"
    )
    default_capacity: int = Field(
        default=50, description="Seats assumed when a tenant has no capacity set"
    )

    # Google Calendar Configuration
    google_client_id: str | None = Field(None, description="Google OAuth client ID")
    google_client_secret: str | None = Field(
        None, description="Google OAuth client secret"
    )

    # HubSpot Configuration
    hubspot_access_token: str | None = Field(
        None, description="HubSpot private app access token"
    )

    # SMTP Configuration
    smtp_host: str = Field(default="smtp.sendgrid.net", description="SMTP host")
    smtp_port: int = Field(default=465, description="SMTP port")
    smtp_user: str = Field(default="apikey", description="SMTP username")
    smtp_password: str | None = Field(None, description="SMTP password")
    email_from: str = Field(
        default='"TableNow" <bookings@tablenow.io>', description="Sender address"
    )

    # OpenAI Configuration
    openai_api_key: str | None = Field(None, description="OpenAI API key")
    knowledge_model: str = Field(
        default="gpt-4o-mini", description="OpenAI model for restaurant questions"
    )

    # Server Configuration
    server_host: str = Field(default="0.0.0.0", description="Server host")
    server_port: int = Field(default=8080, description="Server port")
    server_url: str = Field(
        default="http://localhost:8080",
        description="Server URL for the replay CLI to connect to",
    )

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Logging level")

    def has_google_config(self) -> bool:
        """Check if Google OAuth refresh is possible."""
        return bool(self.google_client_id and self.google_client_secret)

    def has_hubspot_config(self) -> bool:
        """Check if HubSpot is configured."""
        return bool(self.hubspot_access_token)

    def has_smtp_config(self) -> bool:
        """Check if outbound email is configured."""
        return bool(self.smtp_host and self.smtp_password)

    def model_post_init(self, __context) -> None:
        """Validate configuration after initialization."""
        if not self.has_google_config():
            logger.warning(
                "GOOGLE_CLIENT_ID/SECRET not set - calendar token refresh disabled"
            )

        if not self.hubspot_access_token:
            logger.warning("HUBSPOT_ACCESS_TOKEN not set - CRM sync disabled")

        if not self.smtp_password:
            logger.warning("SMTP_PASSWORD not set - email notifications disabled")

        if not self.openai_api_key:
            logger.warning("OPENAI_API_KEY not set - question answering disabled")


# Global config instance
config: Config | None = None


def get_config() -> Config:
    """Get or create the global configuration instance."""
    global config
    if config is None:
        config = Config()
    return config


def setup_logging(cfg: Config | None = None) -> None:
    """Configure logging for the application."""
    if cfg is None:
        cfg = get_config()

    log_level = getattr(logging, cfg.log_level.upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Reduce noise from external libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
