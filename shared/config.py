"""
Shared configuration management for the cache pipeline layer.
"""

from datetime import timedelta
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="CACHE_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")


class CacheSettings(BaseConfig):
    """Cache pipeline configuration.

    Every field can be overridden with a ``CACHE_``-prefixed environment
    variable, e.g. ``CACHE_SERVICE_NAME=company-svc``.
    """

    # Key scoping
    service_name: str = Field(default="")
    cache_version: str = Field(default="v1", min_length=1)

    # Behaviour switches
    enabled: bool = Field(default=True)
    enable_logging: bool = Field(default=False)
    default_expiration_minutes: int = Field(default=60, ge=1, le=1440)

    # Write path
    invalidation_channel: str = Field(default="cache:invalidation")
    invalidation_timeout_seconds: float = Field(default=5.0, gt=0)
    enable_invalidation_publisher: bool = Field(default=True)

    # Stampede protection
    lock_expiry_seconds: float = Field(default=10.0, gt=0)
    lock_wait_ms: int = Field(default=150, ge=0)
    lock_retry_attempts: int = Field(default=1, ge=0)

    # Compression
    enable_compression: bool = Field(default=False)
    compression_threshold_bytes: int = Field(default=1024, ge=0)

    # Metrics
    enable_effectiveness_metrics: bool = Field(default=True)

    # Tag index and startup warm-up
    enable_tagging: bool = Field(default=False)
    enable_warmup: bool = Field(default=True)
    warmup_concurrency: int = Field(default=5, ge=1, le=50)

    # Circuit breaker
    circuit_breaker_enabled: bool = Field(default=True)
    circuit_breaker_failure_threshold: int = Field(default=5, ge=1, le=50)
    circuit_breaker_break_duration_seconds: int = Field(default=60, ge=5, le=600)

    # L1 memory tier
    memory_cache_enabled: bool = Field(default=False)
    memory_cache_expiration_seconds: int = Field(default=30, ge=1, le=300)
    memory_cache_size_limit: int = Field(default=1024, ge=10, le=100000)

    @model_validator(mode="after")
    def _check_lock_window(self) -> "CacheSettings":
        if self.lock_wait_ms / 1000.0 >= self.lock_expiry_seconds:
            raise ValueError("lock_wait_ms must be shorter than lock_expiry_seconds")
        return self

    @property
    def default_expiration(self) -> timedelta:
        return timedelta(minutes=self.default_expiration_minutes)

    @property
    def lock_expiry(self) -> timedelta:
        return timedelta(seconds=self.lock_expiry_seconds)

    @property
    def lock_wait(self) -> timedelta:
        return timedelta(milliseconds=self.lock_wait_ms)

    @property
    def invalidation_timeout(self) -> timedelta:
        return timedelta(seconds=self.invalidation_timeout_seconds)

    @property
    def memory_cache_expiration(self) -> timedelta:
        return timedelta(seconds=self.memory_cache_expiration_seconds)


def get_settings(service_name: Optional[str] = None, **overrides) -> CacheSettings:
    """Load cache settings from the environment, applying explicit overrides."""
    if service_name is not None:
        overrides["service_name"] = service_name
    return CacheSettings(**overrides)
