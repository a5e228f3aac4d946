"""
Centralized settings for the mapping runtime.

Manifesto:
    One validated, cached settings object instead of option dicts parsed
    differently by every component. Engine, retry, breaker, pool and
    optimizer defaults all resolve here, and every field can be overridden
    with a ``MAPFLOW_*`` environment variable or a ``.env`` file.

All durations are seconds.

Tags:
    configuration, settings, pydantic, mapflow
"""

from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class MapflowSettings(BaseSettings):
    """Runtime configuration.

    Example:
        ``MAPFLOW_MAX_CONCURRENCY=4 MAPFLOW_LOG_JSON=true mapflow run ...``
    """

    model_config = SettingsConfigDict(
        env_prefix="MAPFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_json: bool | None = Field(default=None, description="None auto-detects from TTY")

    # ── Engine ───────────────────────────────────────────────────
    enable_cache: bool = Field(default=True)
    cache_size: int = Field(default=1000, ge=1)
    default_timeout: float = Field(default=30.0, gt=0)
    max_concurrency: int = Field(default=10, ge=1)
    strict_mode: bool = Field(default=False)

    # ── Retry ────────────────────────────────────────────────────
    retry_max_retries: int = Field(default=3, ge=0)
    retry_initial_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)
    retry_factor: float = Field(default=2.0, ge=1.0)
    retry_jitter: bool = Field(default=True)

    # ── Circuit breaker ──────────────────────────────────────────
    breaker_failure_threshold: float = Field(default=50.0, gt=0, le=100)
    breaker_minimum_requests: int = Field(default=10, ge=1)
    breaker_reset_timeout: float = Field(default=30.0, gt=0)
    breaker_success_threshold: int = Field(default=3, ge=1)
    breaker_monitoring_period: float = Field(default=60.0, gt=0)
    breaker_window_size: int = Field(default=100, ge=1)

    # ── Connection pool ──────────────────────────────────────────
    pool_min_connections: int = Field(default=1, ge=0)
    pool_max_connections: int = Field(default=5, ge=1)
    pool_acquire_timeout: float = Field(default=30.0, gt=0)
    pool_idle_timeout: float = Field(default=300.0, gt=0)
    pool_health_check_interval: float = Field(default=60.0, gt=0)
    pool_max_retries: int = Field(default=3, ge=1)
    pool_retry_delay: float = Field(default=1.0, ge=0)

    # ── Performance ──────────────────────────────────────────────
    compression_threshold: int = Field(default=1024, ge=0, description="Bytes")
    memory_threshold: float = Field(default=0.8, gt=0, le=1)
    optimizer_cache_size: int = Field(default=100, ge=1)
    chunk_size: int = Field(default=1000, ge=1)

    # ── Workflow engine ──────────────────────────────────────────
    workflow_engine_url: str = Field(default="https://localhost:8443/nifi-api")
    workflow_engine_username: str | None = Field(default=None)
    workflow_engine_password: str | None = Field(default=None)
    workflow_engine_timeout: float = Field(default=30.0, gt=0)
    workflow_engine_verify_ssl: bool = Field(default=True)

    @model_validator(mode="after")
    def _check_pool_bounds(self) -> MapflowSettings:
        if self.pool_min_connections > self.pool_max_connections:
            raise ValueError("pool_min_connections cannot exceed pool_max_connections")
        if self.retry_initial_delay > self.retry_max_delay:
            raise ValueError("retry_initial_delay cannot exceed retry_max_delay")
        return self


_settings_cache: dict[str, MapflowSettings] = {}


def get_settings(*, _force_reload: bool = False) -> MapflowSettings:
    """Load, validate and cache the settings instance."""
    if _force_reload or "default" not in _settings_cache:
        _settings_cache["default"] = MapflowSettings()
    return _settings_cache["default"]


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()


__all__ = ["MapflowSettings", "get_settings", "clear_settings_cache"]
