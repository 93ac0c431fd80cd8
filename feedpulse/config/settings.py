"""
FeedPulse Configuration System
==============================

Configuration management with environment variables and Pydantic models.
Environment variables (FEEDPULSE_ prefix, ``__`` between nested sections)
override Field defaults.
"""

from typing import Optional
from enum import Enum

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

from ..utils.exceptions import ConfigurationError, ErrorCode


class LogLevel(str, Enum):
    """Available log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class SinkType(str, Enum):
    """Available event sinks for newly discovered items."""
    LOG = "log"
    TELEGRAM = "telegram"


class PollingSettings(BaseModel):
    """Scheduler cadence, concurrency and backoff configuration."""
    default_interval_minutes: int = Field(default=10, ge=1, le=1440, description="Poll interval when a feed declares no ttl")
    min_interval_minutes: int = Field(default=5, ge=1, le=1440, description="Floor applied to every poll interval")
    workers: int = Field(default=4, ge=1, le=64, description="Concurrent poll workers")
    tick_seconds: float = Field(default=30.0, gt=0, le=3600, description="Max dispatcher sleep between due-feed scans")
    backoff_base_seconds: float = Field(default=60.0, gt=0, description="First retry delay after a transient failure")
    backoff_max_seconds: float = Field(default=3600.0, gt=0, description="Upper bound on retry delay")
    backoff_jitter: float = Field(default=0.1, ge=0.0, le=1.0, description="Relative jitter applied to retry delays")

    @field_validator('backoff_max_seconds')
    @classmethod
    def validate_backoff_cap(cls, v, info):
        """Cap must not be below the base delay."""
        base = info.data.get('backoff_base_seconds')
        if base is not None and v < base:
            raise ValueError("backoff_max_seconds must be >= backoff_base_seconds")
        return v


class FetchSettings(BaseModel):
    """HTTP fetcher configuration."""
    request_timeout: float = Field(default=30.0, gt=0, le=300, description="Total timeout per request in seconds")
    max_redirects: int = Field(default=5, ge=0, le=20, description="Redirect hops followed per request")
    user_agent: str = Field(default="FeedPulse/1.0 (+https://github.com/feedpulse/feedpulse)", description="User-Agent header")
    max_body_bytes: int = Field(default=10 * 1024 * 1024, ge=1024, description="Largest accepted feed document")
    allow_private_hosts: bool = Field(default=False, description="Allow subscribing to loopback/private hosts")


class StoreSettings(BaseModel):
    """Reconciliation policy."""
    refresh_items_on_reobservation: bool = Field(
        default=False,
        description="Update title/body/timestamps of known items when they reappear",
    )


class DatabaseSettings(BaseModel):
    """Database configuration."""
    path: str = Field(default="data/feedpulse.db", description="SQLite database file path")
    pool_size: int = Field(default=5, ge=1, le=20, description="Connection pool size")


class LoggingSettings(BaseModel):
    """Logging configuration."""
    level: LogLevel = Field(default=LogLevel.INFO, description="Global log level")
    file_path: Optional[str] = Field(default="logs/feedpulse.log", description="Log file path")
    max_file_size_mb: int = Field(default=10, ge=1, le=100, description="Max log file size in MB")
    backup_count: int = Field(default=5, ge=1, le=20, description="Number of log backup files")
    structured_logging: bool = Field(default=False, description="Use structured JSON logging")
    console_logging: bool = Field(default=True, description="Enable console logging")


class DeliverySettings(BaseModel):
    """Event sink configuration."""
    sink: SinkType = Field(default=SinkType.LOG, description="Where new items are handed off")
    message_delay: float = Field(default=0.5, ge=0.0, le=10.0, description="Seconds between outgoing messages")
    max_retries: int = Field(default=3, ge=1, le=10, description="Send attempts per message on transient errors")


class TelegramSettings(BaseModel):
    """Telegram sink configuration."""
    bot_token: Optional[str] = Field(default=None, description="Telegram bot token")
    chat_id: Optional[str] = Field(default=None, description="Chat or channel receiving new items")

    @field_validator('bot_token')
    @classmethod
    def validate_bot_token(cls, v):
        """Validate Telegram bot token format."""
        if v is None:
            return v
        if not v or ':' not in v:
            raise ValueError("Invalid Telegram bot token format")
        return v


class FeedPulseSettings(BaseSettings):
    """Main application settings."""

    polling: PollingSettings = Field(default_factory=PollingSettings)
    fetch: FetchSettings = Field(default_factory=FetchSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    delivery: DeliverySettings = Field(default_factory=DeliverySettings)
    telegram: TelegramSettings = Field(default_factory=TelegramSettings)

    app_name: str = Field(default="FeedPulse", description="Application name")
    version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "env_nested_delimiter": "__",
        "env_prefix": "FEEDPULSE_",
        "extra": "ignore",
    }

    def validate_configuration(self) -> None:
        """Cross-section checks that single-field validators cannot express.

        Raises:
            ConfigurationError: If the combination of settings is unusable
        """
        if self.delivery.sink == SinkType.TELEGRAM:
            if not self.telegram.bot_token:
                raise ConfigurationError(
                    "Telegram sink selected but no bot token configured",
                    config_key="telegram.bot_token",
                    error_code=ErrorCode.CONFIG_MISSING,
                )
            if not self.telegram.chat_id:
                raise ConfigurationError(
                    "Telegram sink selected but no chat id configured",
                    config_key="telegram.chat_id",
                    error_code=ErrorCode.CONFIG_MISSING,
                )

        if self.polling.min_interval_minutes > self.polling.default_interval_minutes:
            raise ConfigurationError(
                "polling.min_interval_minutes exceeds polling.default_interval_minutes",
                config_key="polling.min_interval_minutes",
            )

    def get_effective_log_level(self) -> str:
        """Debug mode forces DEBUG regardless of the configured level."""
        if self.debug:
            return LogLevel.DEBUG.value
        return self.logging.level.value


def load_settings() -> FeedPulseSettings:
    """Load settings from environment variables and defaults.

    Returns:
        Loaded and validated settings

    Raises:
        ConfigurationError: If configuration is invalid
    """
    # Load environment variables from .env file
    from dotenv import load_dotenv
    load_dotenv()

    try:
        settings = FeedPulseSettings()
        settings.validate_configuration()
        return settings

    except Exception as e:
        if isinstance(e, ConfigurationError):
            raise
        raise ConfigurationError(
            f"Failed to initialize settings: {e}",
            error_code=ErrorCode.CONFIG_INVALID
        )


# Global settings instance
_settings: Optional[FeedPulseSettings] = None


def get_settings(reload: bool = False) -> FeedPulseSettings:
    """Get global settings instance (singleton pattern).

    Args:
        reload: Force reload of settings

    Returns:
        Global settings instance
    """
    global _settings

    if _settings is None or reload:
        _settings = load_settings()

    return _settings
