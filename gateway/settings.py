"""Gateway settings."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

UNLIMITED = -1


class Settings(BaseSettings):
    """Gateway settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    log_level: str = Field(default="info", alias="GATEWAY_LOG_LEVEL")
    debug: bool = Field(default=False, alias="GATEWAY_DEBUG")

    # Routing defaults
    default_backend: str = Field(default="openai", alias="GATEWAY_DEFAULT_BACKEND")
    default_model: str = Field(default="gpt-3.5-turbo", alias="GATEWAY_DEFAULT_MODEL")
    backend_order: list[str] = Field(
        default=["openai", "anthropic", "groq", "google", "mock"],
        alias="GATEWAY_BACKEND_ORDER",
    )
    default_temperature: float = Field(default=0.7, alias="GATEWAY_DEFAULT_TEMPERATURE")
    default_max_output_tokens: int = Field(default=2048, alias="GATEWAY_DEFAULT_MAX_OUTPUT_TOKENS")
    max_output_tokens_limit: int = Field(default=32000, alias="GATEWAY_MAX_OUTPUT_TOKENS_LIMIT")

    # Backend credentials - SecretStr keeps them out of reprs and logs
    openai_api_key: Optional[SecretStr] = Field(default=None, alias="OPENAI_API_KEY")
    openai_api_base: Optional[str] = Field(default=None, alias="OPENAI_API_BASE")
    openai_model: str = Field(default="gpt-3.5-turbo", alias="GATEWAY_OPENAI_MODEL")
    embedding_model: str = Field(
        default="text-embedding-ada-002", alias="GATEWAY_EMBEDDING_MODEL"
    )

    anthropic_api_key: Optional[SecretStr] = Field(default=None, alias="ANTHROPIC_API_KEY")
    anthropic_model: str = Field(
        default="claude-3-haiku-20240307", alias="GATEWAY_ANTHROPIC_MODEL"
    )

    groq_api_key: Optional[SecretStr] = Field(default=None, alias="GROQ_API_KEY")
    groq_api_base: str = Field(
        default="https://api.groq.com/openai/v1", alias="GROQ_API_BASE"
    )
    groq_model: str = Field(default="mixtral-8x7b-32768", alias="GATEWAY_GROQ_MODEL")

    google_api_key: Optional[SecretStr] = Field(default=None, alias="GOOGLE_API_KEY")
    google_model: str = Field(default="gemini-pro", alias="GATEWAY_GOOGLE_MODEL")

    enable_mock_backend: bool = Field(default=False, alias="GATEWAY_ENABLE_MOCK_BACKEND")
    mock_model: str = Field(default="mock-deterministic", alias="GATEWAY_MOCK_MODEL")

    # Retry and failover
    retry_attempts: int = Field(default=3, alias="GATEWAY_RETRY_ATTEMPTS")
    retry_backoff_seconds: list[float] = Field(
        default=[0.0, 0.2, 0.5], alias="GATEWAY_RETRY_BACKOFF_SECONDS"
    )
    request_timeout_seconds: float = Field(default=30.0, alias="GATEWAY_REQUEST_TIMEOUT_SECONDS")
    stream_idle_timeout_seconds: float = Field(
        default=60.0, alias="GATEWAY_STREAM_IDLE_TIMEOUT_SECONDS"
    )
    unhealthy_after_failures: int = Field(default=5, alias="GATEWAY_UNHEALTHY_AFTER_FAILURES")

    # Response cache
    cache_backend: Literal["memory", "redis"] = Field(default="memory", alias="GATEWAY_CACHE_BACKEND")
    cache_ttl_seconds: int = Field(default=300, alias="GATEWAY_CACHE_TTL_SECONDS")
    cache_sweep_interval_seconds: float = Field(
        default=60.0, alias="GATEWAY_CACHE_SWEEP_INTERVAL_SECONDS"
    )
    redis_url: Optional[str] = Field(default=None, alias="GATEWAY_REDIS_URL")

    # Quotas
    quota_backend: Literal["memory", "redis"] = Field(default="memory", alias="GATEWAY_QUOTA_BACKEND")
    tier_daily_limits: dict[str, int] = Field(
        default={"free": 20, "plus": 100, "pro": 200, "enterprise": UNLIMITED},
        alias="GATEWAY_TIER_DAILY_LIMITS",
    )

    # Usage recording
    usage_queue_size: int = Field(default=1000, alias="GATEWAY_USAGE_QUEUE_SIZE")

    @field_validator("default_temperature")
    @classmethod
    def validate_temperature(cls, v: float) -> float:
        """Validate temperature is in the range every backend accepts."""
        if not 0.0 <= v <= 2.0:
            raise ValueError(f"default_temperature must be between 0 and 2, got {v}")
        return v

    @field_validator(
        "default_max_output_tokens",
        "max_output_tokens_limit",
        "retry_attempts",
        "unhealthy_after_failures",
        "usage_queue_size",
        "cache_ttl_seconds",
    )
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Validate counters and limits are positive."""
        if v < 1:
            raise ValueError(f"value must be at least 1, got {v}")
        return v

    @field_validator("request_timeout_seconds", "stream_idle_timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        """Validate timeout is positive."""
        if v <= 0:
            raise ValueError(f"timeout must be positive, got {v}")
        return v

    @field_validator("retry_backoff_seconds")
    @classmethod
    def validate_backoff(cls, v: list[float]) -> list[float]:
        """Validate backoff delays are non-negative."""
        if any(delay < 0 for delay in v):
            raise ValueError(f"retry_backoff_seconds must be non-negative, got {v}")
        return v

    @field_validator("tier_daily_limits")
    @classmethod
    def validate_tier_limits(cls, v: dict[str, int]) -> dict[str, int]:
        """Validate each tier has a non-negative limit or the unlimited sentinel."""
        for tier, limit in v.items():
            if limit < 0 and limit != UNLIMITED:
                raise ValueError(f"daily limit for tier '{tier}' must be >= 0 or {UNLIMITED}")
        return v

    def backoff_before(self, attempt: int) -> float:
        """Delay before the given 1-based attempt.

        Attempts beyond the configured schedule reuse its last delay.
        """
        if not self.retry_backoff_seconds:
            return 0.0
        index = min(attempt - 1, len(self.retry_backoff_seconds) - 1)
        return self.retry_backoff_seconds[index]

    def default_model_for(self, backend: str) -> str:
        """Model used when a backend is reached without an explicit model."""
        return {
            "openai": self.openai_model,
            "anthropic": self.anthropic_model,
            "groq": self.groq_model,
            "google": self.google_model,
            "mock": self.mock_model,
        }.get(backend, self.default_model)


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
