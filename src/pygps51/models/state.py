"""Canonical vehicle state produced by the telemetry normalizer."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from pygps51.models._base import ensure_utc


class DetectionMethod(StrEnum):
    STATUS_BIT = "status_bit"
    STRING_PARSE = "string_parse"
    MULTI_SIGNAL = "multi_signal"
    SPEED_INFERENCE = "speed_inference"
    UNKNOWN = "unknown"


class TimestampSource(StrEnum):
    GPS = "gps"
    SERVER = "server"
    OBSERVED = "observed"


class DataQuality(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class IgnitionDetection(BaseModel):
    """Result of a single ignition detection pass."""

    model_config = ConfigDict(frozen=True)

    ignition_on: bool
    confidence: float = Field(ge=0.0, le=1.0)
    method: DetectionMethod


class CanonicalState(BaseModel):
    """Normalized, validated snapshot of one device at one instant.

    Parameters
    ----------
    device_id : str
        Vendor device id.
    timestamp : datetime
        Device-reported time (UTC), see ``timestamp_source``.
    latitude, longitude : float or None
        Both ``None`` when the fix is invalid or (0, 0).
    speed_kmh : float
        Never negative.
    speed_unit_corrected : bool
        ``True`` when the raw value was treated as m/h.
    ignition_on, ignition_confidence, ignition_method
        Outcome of the ignition detection tiers.
    battery_percent : int or None
        0-100.
    signal_strength : int or None
        0-100.
    is_online, is_moving : bool
        Derived flags.
    data_quality : DataQuality
        Coarse completeness rating.
    """

    model_config = ConfigDict(frozen=True)

    device_id: str
    timestamp: datetime
    timestamp_source: TimestampSource = TimestampSource.OBSERVED
    latitude: float | None = None
    longitude: float | None = None
    speed_kmh: float = Field(default=0.0, ge=0.0)
    speed_unit_corrected: bool = False
    heading: float | None = None
    altitude: float | None = None
    ignition_on: bool = False
    ignition_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    ignition_method: DetectionMethod = DetectionMethod.UNKNOWN
    battery_percent: int | None = Field(default=None, ge=0, le=100)
    signal_strength: int | None = Field(default=None, ge=0, le=100)
    is_online: bool = True
    is_moving: bool = False
    is_overspeeding: bool = False
    data_quality: DataQuality = DataQuality.LOW
    status_text: str | None = None
    total_mileage_m: float | None = None
    raw: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _coordinates_pair(self) -> CanonicalState:
        # A half-known position is treated as no position.
        if (self.latitude is None) != (self.longitude is None):
            object.__setattr__(self, "latitude", None)
            object.__setattr__(self, "longitude", None)
        return self

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None
