"""Configuration management using Pydantic Settings."""

import logging
from functools import lru_cache
from typing import Literal

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase Configuration
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_ROLE_KEY: SecretStr = SecretStr("")

    # LLM (drafting). Empty key means template drafts only.
    ANTHROPIC_API_KEY: SecretStr = SecretStr("")
    FOLLOW_UP_DRAFT_MODEL: str = "anthropic/claude-sonnet-4-20250514"
    LLM_TIMEOUT_SECONDS: float = 60.0

    # Composio (Gmail access)
    COMPOSIO_API_KEY: SecretStr | None = None
    MAIL_PROVIDER_TIMEOUT_SECONDS: float = 30.0

    # Application Settings
    APP_ENV: Literal["development", "staging", "production"] = "development"

    # Follow-up detection
    FOLLOW_UP_LOOKBACK_DAYS: int = 14
    FOLLOW_UP_IDLE_DAYS: int = 3
    FOLLOW_UP_MAX_THREADS: int = 25

    # Follow-up background jobs
    ENABLE_SCHEDULER: bool = True
    FOLLOW_UP_DISCOVERY_INTERVAL_MINUTES: int = 30
    FOLLOW_UP_SCHEDULER_INTERVAL_MINUTES: int = 5
    FOLLOW_UP_SEND_BATCH_SIZE: int = 20
    FOLLOW_UP_AUTO_APPROVE: bool = False

    # Logging
    LOG_FORMAT: Literal["text", "json"] = "text"
    LOG_LEVEL: str = "INFO"

    # CORS Configuration
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    @field_validator("SUPABASE_URL")
    @classmethod
    def validate_supabase_url(cls, v: str) -> str:
        """Validate that SUPABASE_URL is a valid URL."""
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("SUPABASE_URL must start with http:// or https://")
        return v.rstrip("/") if v else v

    @field_validator(
        "FOLLOW_UP_LOOKBACK_DAYS",
        "FOLLOW_UP_IDLE_DAYS",
        "FOLLOW_UP_MAX_THREADS",
        "FOLLOW_UP_DISCOVERY_INTERVAL_MINUTES",
        "FOLLOW_UP_SCHEDULER_INTERVAL_MINUTES",
        "FOLLOW_UP_SEND_BATCH_SIZE",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Reject zero or negative windows, intervals and batch sizes."""
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @property
    def cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def llm_configured(self) -> bool:
        """Check if an LLM key is available for drafting."""
        return bool(self.ANTHROPIC_API_KEY.get_secret_value())

    def validate_startup(self) -> None:
        """Validate that all required secrets are configured.

        Raises:
            ValueError: If any required secret is missing or empty.
        """
        required_secrets = {
            "SUPABASE_URL": self.SUPABASE_URL,
            "SUPABASE_SERVICE_ROLE_KEY": self.SUPABASE_SERVICE_ROLE_KEY.get_secret_value(),
        }
        missing = [name for name, value in required_secrets.items() if not value]
        if missing:
            raise ValueError(f"Required secrets are missing or empty: {', '.join(missing)}")
        if not self.llm_configured:
            logger.warning("ANTHROPIC_API_KEY not configured - follow-up drafts use templates")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings instance loaded from the environment.
    """
    return Settings()


# Global settings instance - import this for easy access
settings = get_settings()
