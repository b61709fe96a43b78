"""Application configuration."""

import logging
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings."""

    # Environment
    environment: str = "development"  # development, staging, production

    # API Configuration
    backend_host: str = "0.0.0.0"
    backend_port: int = 8000
    api_base_url: str = "http://localhost:8000"
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment.lower() == "production"

    # AI providers
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"

    @property
    def configured_providers(self) -> List[str]:
        """Providers whose API key is present."""
        keys = {
            "anthropic": self.anthropic_api_key,
            "openai": self.openai_api_key,
            "openrouter": self.openrouter_api_key,
        }
        return [name for name, key in keys.items() if key and key.strip()]

    # Persistence
    database_url: str = "sqlite+aiosqlite:///./siftstream.db"
    persistence_enabled: bool = True

    # Logging
    log_level: str = "INFO"
    log_format: str = "development"  # "development" for readable, "json" for structured

    # Streaming
    stream_handle_ttl_seconds: int = 300  # Unopened stream handles expire after this
    provider_idle_timeout_seconds: float = 60.0  # Max wait between two provider chunks
    provider_max_tokens: int = 4096
    disconnect_poll_interval_seconds: float = 0.5

    # Input limits
    max_input_length: int = 20000
    max_history_messages: int = 100

    # Circuit breaker for provider calls
    provider_failure_threshold: int = 5
    provider_recovery_timeout_seconds: float = 30.0

    # Application version (for health checks)
    version: str = "1.0.0"

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize log level and fall back to INFO on unknown values."""
        level = (v or "INFO").strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            logger.warning(f"Unknown LOG_LEVEL {v!r}, using INFO")
            return "INFO"
        return level

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra fields in .env


settings = Settings()
