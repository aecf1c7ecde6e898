"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="StreamFeed", alias="APP_NAME")
    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./streamfeed.db", alias="DATABASE_URL"
    )

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    tmdb_timeout_seconds: float = Field(
        default=10.0, alias="TMDB_TIMEOUT", gt=0, le=120
    )
    default_region: str = Field(default="GB", alias="DEFAULT_REGION")

    tmdb_cache_ttl_hours: int = Field(
        default=24, alias="TMDB_CACHE_TTL_HOURS", ge=1
    )
    omdb_cache_ttl_days: int = Field(default=7, alias="OMDB_CACHE_TTL_DAYS", ge=1)
    watchmode_cache_ttl_hours: int = Field(
        default=24, alias="WATCHMODE_CACHE_TTL_HOURS", ge=1
    )
    cache_max_entries: int = Field(
        default=1_000, alias="CACHE_MAX_ENTRIES", ge=10
    )

    vector_index_max_size: int = Field(
        default=5_000, alias="VECTOR_INDEX_MAX_SIZE", ge=1
    )

    recommendation_ttl_hours: int = Field(
        default=6, alias="RECOMMENDATION_TTL_HOURS", ge=1
    )
    dismissed_ttl_days: int = Field(default=30, alias="DISMISSED_TTL_DAYS", ge=1)
    recommendation_count: int = Field(
        default=20, alias="RECOMMENDATION_COUNT", ge=1, le=100
    )
    diversity_max_per_genre: int = Field(
        default=3, alias="DIVERSITY_MAX_PER_GENRE", ge=1
    )
    diversity_window: int = Field(default=10, alias="DIVERSITY_WINDOW", ge=0)

    @field_validator("default_region", mode="before")
    @classmethod
    def _normalise_region(cls, value: object) -> str:
        """Accept region codes in any case, rejecting anything but two letters."""

        if value is None:
            return "GB"
        region = str(value).strip().upper()
        if len(region) != 2 or not region.isalpha():
            raise ValueError("DEFAULT_REGION must be a two-letter country code")
        return region

    @model_validator(mode="after")
    def _check_diversity_window(self) -> "Settings":
        if self.diversity_window > self.recommendation_count:
            raise ValueError(
                "DIVERSITY_WINDOW cannot exceed RECOMMENDATION_COUNT"
            )
        return self

    @property
    def cache_ttls(self) -> dict[str, int]:
        """Return default cache lifetimes in milliseconds keyed by namespace prefix."""

        return {
            "tmdb_": self.tmdb_cache_ttl_hours * HOUR_MS,
            "omdb_": self.omdb_cache_ttl_days * DAY_MS,
            "watchmode_": self.watchmode_cache_ttl_hours * HOUR_MS,
        }

    @property
    def recommendation_ttl_ms(self) -> int:
        return self.recommendation_ttl_hours * HOUR_MS

    @property
    def dismissed_ttl_ms(self) -> int:
        return self.dismissed_ttl_days * DAY_MS

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
