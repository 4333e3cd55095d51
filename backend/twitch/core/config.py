"""Twitch bot configuration"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from twitch.core.eventsub_transport import EVENTSUB_WS_URL

logger = logging.getLogger(__name__)

TWITCH_DIR = Path(__file__).parent.parent


class BotSettings(BaseSettings):
    """Bot settings"""

    model_config = SettingsConfigDict(
        env_file=TWITCH_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Twitch OAuth
    client_id: str = Field(..., description="Twitch OAuth Client ID")
    client_secret: str = Field(..., description="Twitch OAuth Client Secret")

    # Shared bot account (login or user id); blank = always post as broadcaster
    bot_username: str = Field(default="", description="Bot account login or user ID")

    # Database
    database_url: str = Field(..., description="PostgreSQL database URL")
    database_ssl: str = Field(default="prefer", description="asyncpg ssl mode")

    # Eligibility cache
    redis_host: str = Field(default="", description="Redis host[:port] or redis:// URL")
    redis_key_namespace: str = Field(default="default", description="Cache key namespace")

    # EventSub
    eventsub_ws_url: str = Field(default=EVENTSUB_WS_URL, description="EventSub websocket URL")
    subscribe_chat: bool = Field(default=True, description="Subscribe channel.chat.message")

    # Environment
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Validate database URL is a PostgreSQL URL"""
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError("DATABASE_URL must start with 'postgresql://'")
        return v

    @field_validator("bot_username", "redis_host")
    @classmethod
    def strip_identifiers(cls, v: str) -> str:
        return v.strip()

    @field_validator("redis_key_namespace")
    @classmethod
    def normalize_namespace(cls, v: str) -> str:
        """Cache keys are lower-case; a blank namespace means 'default'"""
        return v.strip().lower() or "default"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            logger.warning(f"Invalid log level '{v}', defaulting to INFO")
            return "INFO"
        return v_upper


@lru_cache
def get_settings() -> BotSettings:
    """Get cached settings instance"""
    return BotSettings()  # type: ignore[call-arg]
