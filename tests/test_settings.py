"""Configuration settings behaviour tests."""

from __future__ import annotations

from datetime import timedelta

import pytest

from app.config import Settings
from app.services.freshness import FreshnessPolicy


def test_defaults_are_applied() -> None:
    settings = Settings(_env_file=None)

    assert settings.running_stale_seconds == 21_600
    assert settings.ended_stale_seconds is None
    assert settings.refresh_concurrency == 4
    assert settings.fetch_retry_limit == 3
    assert str(settings.tvmaze_api_url).startswith("https://api.tvmaze.com")


def test_environment_aliases_are_honoured(monkeypatch) -> None:
    """Settings should read the documented environment variable names."""

    monkeypatch.setenv("RUNNING_STALE_SECONDS", "7200")
    monkeypatch.setenv("ENDED_STALE_SECONDS", "604800")
    monkeypatch.setenv("REFRESH_CONCURRENCY", "8")

    settings = Settings(_env_file=None)

    assert settings.running_stale_seconds == 7200
    assert settings.ended_stale_seconds == 604_800
    assert settings.refresh_concurrency == 8


def test_policy_built_from_settings() -> None:
    settings = Settings(
        _env_file=None, RUNNING_STALE_SECONDS=3600, ENDED_STALE_SECONDS=86_400
    )

    policy = FreshnessPolicy.from_settings(settings)

    assert policy.running_ttl == timedelta(hours=1)
    assert policy.ended_ttl == timedelta(days=1)


def test_ended_window_shorter_than_running_rejected() -> None:
    with pytest.raises(ValueError, match="ENDED_STALE_SECONDS"):
        Settings(_env_file=None, RUNNING_STALE_SECONDS=7200, ENDED_STALE_SECONDS=3600)


@pytest.mark.parametrize(
    "overrides",
    [
        {"RUNNING_STALE_SECONDS": 60},
        {"REFRESH_CONCURRENCY": 0},
        {"REFRESH_CONCURRENCY": 64},
        {"REFRESH_INTERVAL": 10},
    ],
)
def test_out_of_range_values_rejected(overrides) -> None:
    with pytest.raises(ValueError):
        Settings(_env_file=None, **overrides)
