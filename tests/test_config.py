from __future__ import annotations

from datetime import timedelta

import pytest

from pygps51.config import EventSettings, Gps51Config, NormalizerSettings, RateLimitSettings
from pygps51.exceptions import Gps51ConfigError


def test_defaults() -> None:
    config = Gps51Config()
    assert config.rate_limit.min_interval == 0.2
    assert config.rate_limit.burst_calls == 5
    assert config.rate_limit.max_backoff == 30.0
    assert config.normalizer.max_plausible_speed_kmh == 200.0
    assert config.normalizer.offline_threshold == timedelta(minutes=10)
    assert config.trip_lookback == timedelta(days=30)
    assert config.events.cooldown_for("ignition_on") == timedelta(minutes=10)
    assert config.events.cooldown_for("something_else") == config.events.default_cooldown


def test_from_env_reads_gps51_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GPS51_DATABASE_URL", "sqlite://")
    monkeypatch.setenv("GPS51_TOKEN", "tok")
    monkeypatch.setenv("GPS51_USERNAME", "fleet")
    monkeypatch.setenv("GPS51_REQUEST_TIMEOUT", "12.5")
    monkeypatch.setenv("GPS51_TRIP_LOOKBACK_DAYS", "7")
    monkeypatch.setenv("GPS51_BACKFILL_WINDOW_MINUTES", "5")
    monkeypatch.setenv("GPS51_HISTORY_DAYS", "3")
    monkeypatch.setenv("GPS51_HISTORY_BUDGET", "120")
    monkeypatch.setenv("GPS51_API_TRACE_ENABLED", "yes")
    monkeypatch.setenv("GPS51_MAX_PLAUSIBLE_SPEED_KMH", "250")
    monkeypatch.setenv("GPS51_OVERSPEED_THRESHOLD_KMH", "90")

    config = Gps51Config.from_env()

    assert config.database_url == "sqlite://"
    assert config.token == "tok"
    assert config.username == "fleet"
    assert config.request_timeout == 12.5
    assert config.trip_lookback == timedelta(days=7)
    assert config.backfill_window == timedelta(minutes=5)
    assert config.history_lookback == timedelta(days=3)
    assert config.history_budget == 120.0
    assert config.api_trace_enabled is True
    assert config.normalizer.max_plausible_speed_kmh == 250.0
    assert config.events.overspeed_threshold_kmh == 90.0


def test_overrides_take_precedence(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GPS51_TOKEN", "from-env")
    monkeypatch.setenv("GPS51_SYNC_BUDGET", "60")

    config = Gps51Config.from_env(
        token="explicit",
        sync_budget=5.0,
        rate_limit={"max_retries": 0},
        normalizer=NormalizerSettings(stationary_threshold_kmh=2.0),
    )

    assert config.token == "explicit"
    assert config.sync_budget == 5.0
    assert config.rate_limit == RateLimitSettings(max_retries=0)
    assert config.normalizer.stationary_threshold_kmh == 2.0
    assert config.events == EventSettings()


def test_invalid_number_raises_config_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GPS51_INGEST_BUDGET", "soon")
    with pytest.raises(Gps51ConfigError, match="GPS51_INGEST_BUDGET"):
        Gps51Config.from_env()
