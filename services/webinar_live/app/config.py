from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from libs.env import get_database_url, get_redis_url


def _default_database_url() -> str:
    return get_database_url(env_var="WEBINAR_LIVE_DATABASE_URL")


def _default_redis_url() -> str:
    return get_redis_url(env_var="WEBINAR_LIVE_REDIS_URL")


class Settings(BaseSettings):
    """Configuration of the webinar live-session service."""

    model_config = SettingsConfigDict(env_prefix="WEBINAR_LIVE_", case_sensitive=False)

    app_name: str = "webinar-live"
    database_url: str = Field(default_factory=_default_database_url)
    cache_backend: Literal["memory", "redis"] = Field(
        "memory",
        description="Backend of the session-state mirror (Redis or process memory).",
    )
    redis_url: str = Field(default_factory=_default_redis_url)
    sync_interval_seconds: float = Field(1.0, gt=0, description="Period of the sync broadcast tick.")
    offset_persist_interval_seconds: float = Field(
        5.0,
        ge=0,
        description="Minimum delay between two durable writes of a session's last known offset.",
    )
    reconcile_interval_seconds: float = Field(
        5.0, gt=0, description="Period of the automation timeline reconciliation."
    )
    auto_start_interval_seconds: float = Field(
        30.0, gt=0, description="Period of the scheduled-webinar auto-start sweep."
    )
    cleanup_interval_seconds: float = Field(
        3600.0, gt=0, description="Period of the fired-flag reset for ended webinars."
    )
    keyword_reply_delay_seconds: float = Field(1.0, ge=0)
    chat_history_limit: int = Field(100, ge=1, le=1000)
    ended_redirect_template: str = "/webinar-ended/{webinar_id}"
    jwt_secret: str = Field("dev-secret-change-me", repr=False)
    jwt_algorithm: str = "HS256"
    auth_bypass: bool = Field(
        False,
        description="Skip operator token checks on the REST surface (local development only).",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()


__all__ = ["Settings", "get_settings"]
