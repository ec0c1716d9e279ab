"""Centralized configuration management for the egress service."""

from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class Environment(str, Enum):
    """Application environment types."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """
    Centralized configuration management with Pydantic validation.

    Values are loaded from ``EGRESS_``-prefixed environment variables
    (or a ``.env`` file) with validation and sane defaults.
    """

    # =============================================================================
    # ENVIRONMENT CONFIGURATION
    # =============================================================================

    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Application environment"
    )

    log_level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Logging level"
    )

    log_format: str = Field(
        default="json",
        description="Log format (json or text)"
    )

    debug: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    # =============================================================================
    # EGRESS DEFAULTS
    # =============================================================================

    default_base_url: str = Field(
        default="https://recorder.livekit.io",
        description="Rendering surface used by room composite egress without a custom base URL"
    )

    output_directory: Path = Field(
        default=Path("/tmp/egress"),
        description="Local directory for file outputs and upload staging"
    )

    segment_duration: int = Field(
        default=6,
        gt=0,
        le=60,
        description="Default segment duration in seconds for segmented outputs"
    )

    max_active_egress: int = Field(
        default=0,
        ge=0,
        description="Maximum concurrently running egress jobs (0 disables the limit)"
    )

    # =============================================================================
    # DELIVERY RETRY POLICY
    # =============================================================================

    delivery_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per write/upload before a delivery error becomes fatal"
    )

    delivery_base_delay: float = Field(
        default=0.5,
        ge=0,
        description="Initial retry delay in seconds"
    )

    delivery_max_delay: float = Field(
        default=10.0,
        gt=0,
        description="Maximum retry delay in seconds"
    )

    delivery_backoff_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        description="Retry backoff multiplier"
    )

    delivery_jitter: bool = Field(
        default=True,
        description="Randomize retry delays"
    )

    websocket_connect_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Connect timeout in seconds for websocket endpoints"
    )

    # =============================================================================
    # PERSISTENCE AND MONITORING
    # =============================================================================

    database_url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy URL for persisting egress descriptors (in-memory only when unset)"
    )

    enable_metrics: bool = Field(
        default=True,
        description="Enable metrics collection"
    )

    # =============================================================================
    # VALIDATORS
    # =============================================================================

    @field_validator('log_format')
    @classmethod
    def validate_log_format(cls, v):
        """Only json and text formats are supported."""
        v = v.lower()
        if v not in ("json", "text"):
            raise ValueError(f"Invalid log format: {v}")
        return v

    @field_validator('default_base_url')
    @classmethod
    def validate_base_url(cls, v):
        """Base URL must be an http(s) URL."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Invalid base URL: {v}")
        return v.rstrip("/")

    @model_validator(mode='after')
    def validate_retry_delays(self):
        """Base delay may not exceed the delay cap."""
        if self.delivery_base_delay > self.delivery_max_delay:
            raise ValueError("delivery_base_delay must not exceed delivery_max_delay")
        return self

    # =============================================================================
    # PROPERTIES
    # =============================================================================

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_testing(self) -> bool:
        """Check if running in testing mode."""
        return self.environment == Environment.TESTING

    @property
    def persistence_enabled(self) -> bool:
        """Check if descriptors are persisted."""
        return bool(self.database_url)

    @property
    def logging_config(self) -> Dict[str, Any]:
        """Get logging configuration."""
        return {
            'level': self.log_level.value,
            'format': self.log_format,
            'debug': self.debug
        }

    @property
    def retry_config(self) -> Dict[str, Any]:
        """Get delivery retry configuration."""
        return {
            'max_attempts': self.delivery_max_attempts,
            'base_delay': self.delivery_base_delay,
            'max_delay': self.delivery_max_delay,
            'exponential_base': self.delivery_backoff_multiplier,
            'jitter': self.delivery_jitter
        }

    model_config = {
        'env_file': '.env',
        'env_file_encoding': 'utf-8',
        'case_sensitive': False,
        'validate_assignment': True,
        'extra': 'ignore',
        'env_prefix': 'EGRESS_',
    }


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global settings instance.

    Returns:
        Settings: The global settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """
    Reload settings from environment variables.

    Returns:
        Settings: The reloaded settings instance
    """
    global _settings
    _settings = Settings()
    return _settings


def validate_settings() -> Dict[str, Any]:
    """
    Validate current settings and return validation report.

    Returns:
        Dict containing validation results
    """
    try:
        settings = get_settings()
        warnings = []
        if settings.is_production and not settings.persistence_enabled:
            warnings.append("egress history is not persisted (database_url unset)")
        return {
            'valid': True,
            'environment': settings.environment.value,
            'persistence': settings.persistence_enabled,
            'warnings': warnings
        }
    except Exception as e:
        return {
            'valid': False,
            'error': str(e),
            'environment': 'unknown'
        }
