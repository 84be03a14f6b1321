"""
Configuration and settings for the marketplace service and sync client.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings, read from ``FULFILLME_*`` variables."""

    model_config = SettingsConfigDict(
        env_prefix="FULFILLME_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_prefix: str = Field(default="/api")
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    # Database (any SQLAlchemy URL; Postgres expected in production)
    database_url: Optional[str] = Field(default=None)

    # Development toggles
    use_in_memory_backends: bool = Field(default=False)

    # Auth
    jwt_secret: str = Field(default="change-me-in-production")
    jwt_algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=60 * 24 * 7)

    # Credits and needs
    unlock_price: int = Field(default=100, gt=0)
    payment_code_prefix: str = Field(default="MPS")
    need_ttl_days: int = Field(default=30, gt=0)
    sweep_interval_seconds: float = Field(default=300.0)

    # Offline sync client
    api_base_url: str = Field(default="http://localhost:8000/api")
    offline_queue_path: str = Field(default="data/offline_needs.db")
    redis_url: Optional[str] = Field(default=None)
    offline_queue_key: str = Field(default="fulfillme:offline-needs")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
