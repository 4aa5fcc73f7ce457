"""
Configuration and settings for the MES integration backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service and worker."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")

    # Database (Postgres expected)
    database_url: Optional[str] = Field(default=None, env="DATABASE_URL")

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "MES_USE_IN_MEMORY_BACKENDS", "use_in_memory_backends"
        ),
    )

    # Admin bearer token. Unset means admin routes are open (local dev only).
    admin_api_token: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("MES_ADMIN_API_TOKEN", "admin_api_token"),
    )

    # Queue, dead letters, idempotency and rate limits (Redis)
    redis_url: Optional[str] = Field(default=None, env="REDIS_URL")
    redis_queue_key: str = Field(
        default="mes:webhook_deliveries", env="REDIS_QUEUE_KEY"
    )
    redis_dead_letter_key: str = Field(
        default="mes:dead_letters", env="REDIS_DEAD_LETTER_KEY"
    )
    redis_key_prefix: str = Field(default="mes", env="REDIS_KEY_PREFIX")

    # Outgoing webhook delivery
    webhook_timeout_seconds: float = Field(default=10.0)
    webhook_max_attempts: int = Field(default=3, ge=1, le=10)
    webhook_backoff_base_seconds: float = Field(default=2.0)
    webhook_require_https: bool = Field(default=True)
    webhook_user_agent: str = Field(default="MES-Webhook/1.0")
    webhook_auto_disable: bool = Field(default=False)

    # Health score / circuit breaking
    webhook_failure_threshold: int = Field(default=5, ge=1)
    circuit_min_health_score: int = Field(default=20, ge=0, le=100)
    circuit_min_calls: int = Field(default=5, ge=1)
    circuit_cooldown_seconds: float = Field(default=300.0)

    dead_letter_max_size: int = Field(default=1000, ge=1)
    idempotency_ttl_seconds: int = Field(default=24 * 60 * 60)

    # Incoming webhooks
    rate_limit_window_seconds: int = Field(default=60)
    rate_limit_max_requests: int = Field(default=100)
    max_payload_bytes: int = Field(default=1024 * 1024)

    # Serial numbers for new work order items
    serial_format: Literal["work_order", "sequential"] = Field(default="work_order")

    # Worker
    worker_poll_interval_seconds: float = Field(default=2.0)
    worker_lock_timeout_seconds: float = Field(default=900.0)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
