"""Client and pipeline configuration for pygps51."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from datetime import timedelta
from typing import Any

from pygps51._constants import BASE_URL
from pygps51.exceptions import Gps51ConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_number(env: Mapping[str, str], key: str, cast: type) -> Any:
    raw = env.get(key)
    if raw is None:
        return None
    try:
        return cast(raw)
    except ValueError as exc:
        raise Gps51ConfigError(f"{key} must be a {cast.__name__}, got {raw!r}") from exc


@dataclasses.dataclass(frozen=True)
class RateLimitSettings:
    """Upstream call budget.

    Pacing (``min_interval`` and the burst window) is enforced per client
    instance; only the backoff deadline is shared through the store.
    """

    min_interval: float = 0.2
    burst_calls: int = 5
    burst_window: float = 1.0
    max_retries: int = 3
    initial_backoff: float = 1.0
    max_backoff: float = 30.0
    backoff_multiplier: float = 2.0


@dataclasses.dataclass(frozen=True)
class NormalizerSettings:
    """Thresholds used by :func:`pygps51.ingestion.normalize.normalize`.

    Parameters
    ----------
    max_plausible_speed_kmh : float
        Speeds above this value are assumed to be reported in m/h and are
        divided by 1000.  Inferred from observed firmware behaviour, not a
        documented vendor contract.
    stationary_threshold_kmh : float
        Speeds below this value are zeroed (GPS drift).  ``0`` disables it.
    offline_threshold : timedelta
        A reading older than this, relative to the observation time, marks
        the device offline.
    vendor_utc_offset_hours : float
        Timezone of ``yyyy-MM-dd HH:mm:ss`` strings returned by GPS51.
    """

    max_plausible_speed_kmh: float = 200.0
    stationary_threshold_kmh: float = 0.0
    offline_threshold: timedelta = timedelta(minutes=10)
    vendor_utc_offset_hours: float = 8.0


@dataclasses.dataclass(frozen=True)
class EventSettings:
    """Event detector thresholds and per-type cooldown windows."""

    min_ignition_confidence: float = 0.3
    moving_speed_threshold_kmh: float = 0.0
    overspeed_threshold_kmh: float = 100.0
    overspeed_critical_kmh: float = 120.0
    low_battery_percent: int = 20
    critical_battery_percent: int = 10
    cooldowns: dict[str, timedelta] = dataclasses.field(
        default_factory=lambda: {
            "ignition_on": timedelta(minutes=10),
            "ignition_off": timedelta(minutes=10),
            "moving": timedelta(minutes=10),
            "overspeed": timedelta(minutes=5),
            "online": timedelta(minutes=10),
            "offline": timedelta(minutes=10),
            "low_battery": timedelta(minutes=5),
            "critical_battery": timedelta(minutes=5),
        }
    )
    default_cooldown: timedelta = timedelta(minutes=5)

    def cooldown_for(self, event_type: str) -> timedelta:
        return self.cooldowns.get(str(event_type), self.default_cooldown)


@dataclasses.dataclass(frozen=True)
class Gps51Config:
    """Pipeline configuration.

    Parameters
    ----------
    database_url : str
        SQLAlchemy URL of the relational store.
    base_url : str
        GPS51 API base URL.
    token : str or None
        Static vendor token.  When unset the token is read from the
        ``credentials`` table, where it is refreshed out-of-band.
    server_id : str
        GPS51 server id sent with every request.
    username : str
        GPS51 account name (required by ``querymonitorlist``).
    request_timeout : float
        Client-side timeout of a single upstream call, in seconds.
    statement_timeout : float
        Store statement timeout in seconds (PostgreSQL only).
    trip_lookback : timedelta
        Window fetched by a full trip sync, or when no cursor exists.
    backfill_window : timedelta
        Search radius around a trip boundary when reconciling coordinates.
    history_lookback : timedelta
        Default window of a track history backfill.
    ingest_budget, sync_budget, reconcile_budget, history_budget : float
        Wall-clock budget of each job in seconds.
    api_trace_enabled : bool
        Log redacted request/response bodies at DEBUG level.
    """

    database_url: str = "sqlite:///pygps51.db"
    base_url: str = BASE_URL
    token: str | None = None
    server_id: str = "1"
    username: str = ""
    request_timeout: float = 30.0
    statement_timeout: float = 15.0
    trip_lookback: timedelta = timedelta(days=30)
    backfill_window: timedelta = timedelta(minutes=15)
    history_lookback: timedelta = timedelta(days=7)
    ingest_budget: float = 120.0
    sync_budget: float = 600.0
    reconcile_budget: float = 600.0
    history_budget: float = 900.0
    api_trace_enabled: bool = False
    rate_limit: RateLimitSettings = dataclasses.field(default_factory=RateLimitSettings)
    normalizer: NormalizerSettings = dataclasses.field(default_factory=NormalizerSettings)
    events: EventSettings = dataclasses.field(default_factory=EventSettings)

    @classmethod
    def from_env(cls, **overrides: Any) -> Gps51Config:
        """Create configuration from ``GPS51_*`` environment variables.

        Explicit keyword arguments override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        Gps51Config
            Populated configuration.
        """
        env = os.environ

        _ENV_CONFIG_MAP = {
            "GPS51_DATABASE_URL": "database_url",
            "GPS51_BASE_URL": "base_url",
            "GPS51_TOKEN": "token",
            "GPS51_SERVER_ID": "server_id",
            "GPS51_USERNAME": "username",
        }
        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        for env_key, field_name in (
            ("GPS51_REQUEST_TIMEOUT", "request_timeout"),
            ("GPS51_STATEMENT_TIMEOUT", "statement_timeout"),
            ("GPS51_INGEST_BUDGET", "ingest_budget"),
            ("GPS51_SYNC_BUDGET", "sync_budget"),
            ("GPS51_RECONCILE_BUDGET", "reconcile_budget"),
            ("GPS51_HISTORY_BUDGET", "history_budget"),
        ):
            value = _env_number(env, env_key, float)
            if value is not None and field_name not in overrides:
                config_kwargs[field_name] = value

        lookback_days = _env_number(env, "GPS51_TRIP_LOOKBACK_DAYS", int)
        if lookback_days is not None and "trip_lookback" not in overrides:
            config_kwargs["trip_lookback"] = timedelta(days=lookback_days)

        window_minutes = _env_number(env, "GPS51_BACKFILL_WINDOW_MINUTES", int)
        if window_minutes is not None and "backfill_window" not in overrides:
            config_kwargs["backfill_window"] = timedelta(minutes=window_minutes)

        history_days = _env_number(env, "GPS51_HISTORY_DAYS", int)
        if history_days is not None and "history_lookback" not in overrides:
            config_kwargs["history_lookback"] = timedelta(days=history_days)

        if "api_trace_enabled" not in overrides:
            config_kwargs["api_trace_enabled"] = _env_bool(env.get("GPS51_API_TRACE_ENABLED"), False)

        # Allow overriding nested sections via plain dicts
        normalizer = overrides.pop("normalizer", None)
        max_speed = _env_number(env, "GPS51_MAX_PLAUSIBLE_SPEED_KMH", float)
        if isinstance(normalizer, dict):
            config_kwargs["normalizer"] = NormalizerSettings(**normalizer)
        elif isinstance(normalizer, NormalizerSettings):
            config_kwargs["normalizer"] = normalizer
        elif max_speed is not None:
            config_kwargs["normalizer"] = NormalizerSettings(max_plausible_speed_kmh=max_speed)

        rate_limit = overrides.pop("rate_limit", None)
        if isinstance(rate_limit, dict):
            config_kwargs["rate_limit"] = RateLimitSettings(**rate_limit)
        elif isinstance(rate_limit, RateLimitSettings):
            config_kwargs["rate_limit"] = rate_limit

        events = overrides.pop("events", None)
        overspeed = _env_number(env, "GPS51_OVERSPEED_THRESHOLD_KMH", float)
        if isinstance(events, dict):
            config_kwargs["events"] = EventSettings(**events)
        elif isinstance(events, EventSettings):
            config_kwargs["events"] = events
        elif overspeed is not None:
            config_kwargs["events"] = EventSettings(overspeed_threshold_kmh=overspeed)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
