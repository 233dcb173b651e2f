"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="Troxide", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    tvmaze_api_url: HttpUrl = Field(
        default="https://api.tvmaze.com", alias="TVMAZE_API_URL"
    )
    request_timeout_seconds: float = Field(
        default=20.0, alias="REQUEST_TIMEOUT", gt=0, le=300
    )
    fetch_retry_limit: int = Field(
        default=3, alias="FETCH_RETRY_LIMIT", ge=0, le=10
    )

    running_stale_seconds: int = Field(
        default=21_600, alias="RUNNING_STALE_SECONDS", ge=3_600
    )
    ended_stale_seconds: int | None = Field(
        default=None, alias="ENDED_STALE_SECONDS", ge=3_600
    )
    refresh_concurrency: int = Field(
        default=4, alias="REFRESH_CONCURRENCY", ge=1, le=32
    )
    refresh_interval_seconds: int = Field(
        default=21_600, alias="REFRESH_INTERVAL", ge=900
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./troxide.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @model_validator(mode="after")
    def _check_stale_windows(self) -> "Settings":
        """Ended series cannot expire faster than running ones."""

        if (
            self.ended_stale_seconds is not None
            and self.ended_stale_seconds < self.running_stale_seconds
        ):
            raise ValueError(
                "ENDED_STALE_SECONDS must not be shorter than RUNNING_STALE_SECONDS"
            )
        return self

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
