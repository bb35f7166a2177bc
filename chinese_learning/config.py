"""Configuration management for the Chinese learning backend."""

from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore"  # Ignore extra environment variables
    )

    # Server configuration
    port: int = 8000
    host: str = "0.0.0.0"

    # Database configuration
    database_url: str = ""
    database_echo: bool = False

    # Pinata (IPFS pinning) configuration
    pinata_jwt: str = ""
    pinata_gateway_url: str = ""
    pinata_api_url: str = "https://api.pinata.cloud"
    pinata_timeout: float = 30.0

    # Gemini configuration
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"
    gemini_timeout: float = 60.0
    gemini_health_ttl_seconds: float = 300.0

    # ElevenLabs configuration
    elevenlabs_api_key: str = ""
    elevenlabs_base_url: str = "https://api.elevenlabs.io/v1"
    elevenlabs_timeout: float = 60.0

    # Pronunciation workflow settings
    unpin_on_failure: bool = True
    stale_attempt_minutes: int = 30
    max_audio_bytes: int = 10 * 1024 * 1024

    # Rate limiting
    rate_limit_requests: int = 100
    rate_limit_window_seconds: int = 60

    # Logging configuration
    log_level: str = "INFO"

    # Observability
    otlp_endpoint: Optional[str] = None
    enable_console_export: bool = False

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f'LOG_LEVEL must be a standard logging level, got {v}')
        return level

    @field_validator('pinata_timeout', 'gemini_timeout', 'elevenlabs_timeout')
    @classmethod
    def validate_timeout(cls, v):
        if v <= 0:
            raise ValueError('Timeouts must be positive')
        return v

    @field_validator('stale_attempt_minutes', 'max_audio_bytes', 'rate_limit_requests', 'rate_limit_window_seconds')
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError('Value must be at least 1')
        return v

    @field_validator('pinata_gateway_url')
    @classmethod
    def strip_gateway_scheme(cls, v):
        # Public URLs are built as https://<gateway>/ipfs/<hash>
        for prefix in ("https://", "http://"):
            if v.startswith(prefix):
                v = v[len(prefix):]
        return v.rstrip("/")


# Global settings instance
settings = Settings()
