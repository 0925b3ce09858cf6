"""Trip models: raw ``querytrips`` segments and the canonical trip record."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from pygps51._constants import TRIP_SOURCE_VENDOR
from pygps51.models._base import Gps51BaseModel, ensure_utc, safe_float


class RawTrip(Gps51BaseModel):
    """One trip segment from the ``querytrips`` action.

    Distances are metres and speeds metres per hour, as sent by GPS51.
    Timestamps are left unparsed because their timezone is a deployment
    setting.
    """

    start_time: Any = Field(
        default=None,
        validation_alias=AliasChoices("starttime", "starttime_str", "begintime", "start_time"),
    )
    end_time: Any = Field(default=None, validation_alias=AliasChoices("endtime", "endtime_str", "end_time"))
    start_lat: float | None = Field(
        default=None,
        validation_alias=AliasChoices("startlat", "startlatitude", "start_latitude"),
    )
    start_lon: float | None = Field(
        default=None,
        validation_alias=AliasChoices("startlon", "startlng", "startlongitude", "start_longitude"),
    )
    end_lat: float | None = Field(default=None, validation_alias=AliasChoices("endlat", "endlatitude", "end_latitude"))
    end_lon: float | None = Field(
        default=None,
        validation_alias=AliasChoices("endlon", "endlng", "endlongitude", "end_longitude"),
    )
    distance_m: float | None = Field(
        default=None,
        validation_alias=AliasChoices("distance", "totaldistance", "tripdistance"),
    )
    max_speed_mph: float | None = Field(default=None, validation_alias=AliasChoices("maxspeed", "max_speed"))
    avg_speed_mph: float | None = Field(default=None, validation_alias=AliasChoices("avgspeed", "averagespeed"))

    @field_validator(
        "start_lat",
        "start_lon",
        "end_lat",
        "end_lon",
        "distance_m",
        "max_speed_mph",
        "avg_speed_mph",
        mode="before",
    )
    @classmethod
    def _coerce_floats(cls, value: Any) -> float | None:
        return safe_float(value)


class TripRecord(BaseModel):
    """Canonical trip, ready to be written to the store.

    ``duration_seconds`` is always derived from the timestamps, never taken
    from the vendor, so it cannot drift from ``end_time - start_time``.
    Zero or ``None`` coordinates mean "unknown, pending reconciliation".
    """

    model_config = ConfigDict(frozen=True)

    device_id: str
    start_time: datetime
    end_time: datetime | None = None
    start_lat: float | None = None
    start_lon: float | None = None
    end_lat: float | None = None
    end_lon: float | None = None
    distance_km: float = 0.0
    avg_speed_kmh: float | None = None
    max_speed_kmh: float | None = None
    duration_seconds: int | None = None
    source: str = TRIP_SOURCE_VENDOR
    source_observed_at: datetime
    raw: dict[str, Any] = Field(default_factory=dict)

    @field_validator("start_time", "end_time", "source_observed_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return ensure_utc(value)

    @field_validator("distance_km", mode="before")
    @classmethod
    def _non_negative_distance(cls, value: Any) -> float:
        parsed = safe_float(value)
        if parsed is None or parsed < 0:
            return 0.0
        return parsed

    @model_validator(mode="after")
    def _derive_duration(self) -> TripRecord:
        if self.end_time is not None:
            if self.end_time < self.start_time:
                raise ValueError("trip ends before it starts")
            duration = int(round((self.end_time - self.start_time).total_seconds()))
            object.__setattr__(self, "duration_seconds", duration)
        else:
            object.__setattr__(self, "duration_seconds", None)
        return self
