"""Configuration settings behaviour tests."""

from __future__ import annotations

import pytest

from streamfeed.config import DAY_MS, HOUR_MS, Settings


def test_defaults() -> None:
    settings = Settings(_env_file=None)

    assert settings.default_region == "GB"
    assert settings.recommendation_count == 20
    assert settings.vector_index_max_size == 5_000
    assert settings.recommendation_ttl_ms == 6 * HOUR_MS
    assert settings.dismissed_ttl_ms == 30 * DAY_MS
    assert settings.cache_ttls == {
        "tmdb_": 24 * HOUR_MS,
        "omdb_": 7 * DAY_MS,
        "watchmode_": 24 * HOUR_MS,
    }


def test_region_is_normalised() -> None:
    """Region codes should be accepted in any case."""

    settings = Settings(_env_file=None, DEFAULT_REGION=" us ")

    assert settings.default_region == "US"


def test_invalid_region_raises() -> None:
    with pytest.raises(ValueError, match="two-letter"):
        Settings(_env_file=None, DEFAULT_REGION="GBR")


def test_cache_ttls_follow_overrides() -> None:
    settings = Settings(
        _env_file=None, TMDB_CACHE_TTL_HOURS=2, OMDB_CACHE_TTL_DAYS=1
    )

    assert settings.cache_ttls["tmdb_"] == 2 * HOUR_MS
    assert settings.cache_ttls["omdb_"] == DAY_MS


def test_diversity_window_cannot_exceed_count() -> None:
    """The diversity window must fit inside the recommendation list."""

    with pytest.raises(ValueError, match="DIVERSITY_WINDOW"):
        Settings(_env_file=None, RECOMMENDATION_COUNT=5)

    settings = Settings(_env_file=None, RECOMMENDATION_COUNT=5, DIVERSITY_WINDOW=5)
    assert settings.diversity_window == 5


def test_settings_read_environment(monkeypatch) -> None:
    monkeypatch.setenv("TMDB_API_KEY", "from-env")
    monkeypatch.setenv("VECTOR_INDEX_MAX_SIZE", "42")

    settings = Settings(_env_file=None)

    assert settings.tmdb_api_key == "from-env"
    assert settings.vector_index_max_size == 42
