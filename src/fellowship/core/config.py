"""Client configuration with validation."""

from pathlib import Path

from pydantic_settings import BaseSettings
from pydantic import Field, field_validator


class ConfigurationError(Exception):
    """Raised when client configuration is missing or invalid."""
    pass


class Settings(BaseSettings):
    """
    Client settings with validation.

    Every value can be overridden with a ``FELLOWSHIP_``-prefixed
    environment variable or a ``.env`` file.
    """

    # API Configuration
    # No default base URL: deployments must point the client at their backend.
    api_url: str = Field(
        default="",
        description="Base URL of the church administration REST API"
    )
    api_timeout: float = Field(
        default=30.0,
        description="Request timeout in seconds"
    )

    # Session
    idle_timeout_seconds: float = Field(
        default=30 * 60,
        description="Seconds without user activity before automatic logout"
    )
    token_store_path: Path = Field(
        default=Path.home() / ".fellowship" / "session.json",
        description="File holding the persisted token and identity"
    )

    # Polling intervals
    event_status_poll_seconds: float = Field(
        default=30.0,
        description="How often event statuses are re-evaluated against the clock"
    )
    event_list_refresh_seconds: float = Field(
        default=60.0,
        description="How often an open events list is re-fetched"
    )
    group_list_refresh_seconds: float = Field(
        default=60.0,
        description="How often an open groups list is re-fetched"
    )

    # Search
    search_debounce_seconds: float = Field(
        default=0.3,
        description="Delay after the last keystroke before a person search runs"
    )
    search_min_chars: int = Field(
        default=2,
        description="Minimum query length for person search"
    )
    attendee_search_min_chars: int = Field(
        default=3,
        description="Minimum phone fragment length for attendee search"
    )

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_format: str = Field(
        default="json",
        description="Log output format: 'json' for structured, 'text' for human-readable"
    )

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard Python logging levels."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v_upper

    @field_validator('log_format')
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v_lower = v.lower()
        if v_lower not in ('json', 'text'):
            raise ValueError("Invalid log format. Must be 'json' or 'text'")
        return v_lower

    @field_validator('api_url')
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.strip().rstrip('/')

    def require_api_url(self) -> str:
        """Return the configured API base URL.

        Raises:
            ConfigurationError: If no URL has been configured.
        """
        if not self.api_url:
            raise ConfigurationError(
                "FELLOWSHIP_API_URL is not set. "
                "Point it at the church administration API "
                "(e.g. http://localhost:5000/api)."
            )
        return self.api_url

    class Config:
        """Pydantic configuration."""
        env_prefix = "FELLOWSHIP_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


# Global settings instance
settings = Settings()
