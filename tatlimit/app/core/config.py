from typing import Literal

from pydantic import model_validator, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tatlimit.app.limiter.models import DEFAULT_KEY_PREFIX, Limit

BackendName = Literal["redis", "redis_lock", "memory"]


class Settings(BaseSettings):
    """Limiter settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Redis settings
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"

    # Backend selection: redis (Lua script), redis_lock (distributed lock), memory
    # Left empty it follows redis_enabled.
    rate_limit_backend: BackendName | None = None
    rate_limit_key_prefix: str = DEFAULT_KEY_PREFIX

    # Default limit applied by the middleware
    rate_limit_rate: int = 60
    rate_limit_burst: int = 60
    rate_limit_period_seconds: float = 60.0

    rate_limit_fail_closed: bool = (
        False  # If True, deny requests when the store is unavailable
    )

    # Distributed lock used by the redis_lock backend
    rate_limit_lock_timeout: float = 5.0  # Lock auto-release after this many seconds
    rate_limit_lock_blocking_timeout: float = 2.0  # Max wait to acquire the lock

    @field_validator("rate_limit_rate", "rate_limit_burst")
    @classmethod
    def validate_rate_limit_positive(cls, v: int) -> int:
        """Validate rate limit values are positive."""
        if v < 1:
            raise ValueError("Rate limit values must be at least 1")
        return v

    @field_validator(
        "rate_limit_period_seconds",
        "rate_limit_lock_timeout",
        "rate_limit_lock_blocking_timeout",
    )
    @classmethod
    def validate_seconds_positive(cls, v: float) -> float:
        """Validate durations are positive."""
        if v <= 0:
            raise ValueError("Durations must be positive")
        return v

    @field_validator("rate_limit_key_prefix")
    @classmethod
    def validate_key_prefix(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("rate_limit_key_prefix must not be empty")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("text", "structured", "json"):
            raise ValueError("log_format must be one of: text, structured, json")
        return v

    @model_validator(mode="after")
    def resolve_backend(self) -> "Settings":
        if self.rate_limit_backend is None:
            self.rate_limit_backend = "redis" if self.redis_enabled else "memory"
        return self

    @property
    def default_limit(self) -> Limit:
        """Build the configured default Limit."""
        return Limit(
            rate=self.rate_limit_rate,
            burst=self.rate_limit_burst,
            period=self.rate_limit_period_seconds,
        )

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
