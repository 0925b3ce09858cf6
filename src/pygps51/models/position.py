"""Raw ``lastposition`` record model."""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, Field, field_validator

from pygps51.models._base import Gps51BaseModel, safe_float, safe_int, safe_str


class RawPosition(Gps51BaseModel):
    """One device record from the ``lastposition`` action.

    Only parsing happens here: values are coerced to numbers or ``None`` but
    not interpreted.  Unit handling, ignition detection and validity checks
    belong to :func:`pygps51.ingestion.normalize.normalize`.

    Parameters
    ----------
    device_id : str
        Vendor device id.
    latitude, longitude : float or None
        Calibrated coordinates when available (``callat``/``callon``),
        otherwise the plain GPS fix.
    speed : float or None
        Reported speed, usually km/h but m/h on some firmware.
    status : int or None
        32-bit status word.
    strstatus : str or None
        Human readable status text (may be Chinese).
    gps_time, server_time : Any
        Raw device/server timestamps (epoch or vendor-local string).
    """

    device_id: str = Field(validation_alias=AliasChoices("deviceid", "device_id", "deviceId"))
    latitude: float | None = Field(default=None, validation_alias=AliasChoices("callat", "lat", "latitude"))
    longitude: float | None = Field(
        default=None,
        validation_alias=AliasChoices("callon", "lon", "lng", "longitude"),
    )
    speed: float | None = None
    heading: float | None = Field(default=None, validation_alias=AliasChoices("course", "heading", "direction"))
    altitude: float | None = None
    status: int | None = None
    strstatus: str | None = None
    strstatusen: str | None = None
    moving: int | None = None
    voltage_percent: float | None = Field(
        default=None,
        validation_alias=AliasChoices("voltagepercent", "voltage_percent"),
    )
    voltage_v: float | None = Field(default=None, validation_alias=AliasChoices("voltagev", "voltage"))
    ex_voltage: float | None = Field(default=None, validation_alias=AliasChoices("exvoltage", "ex_voltage"))
    rxlevel: int | None = None
    gps_time: Any = Field(default=None, validation_alias=AliasChoices("gpstime", "devicetime"))
    server_time: Any = Field(default=None, validation_alias=AliasChoices("updatetime", "time"))
    total_distance_m: float | None = Field(default=None, validation_alias=AliasChoices("totaldistance"))
    overspeed_state: int | None = Field(default=None, validation_alias=AliasChoices("currentoverspeedstate"))

    @field_validator("device_id", mode="before")
    @classmethod
    def _coerce_device_id(cls, value: Any) -> str:
        text = safe_str(value)
        if text is None:
            raise ValueError("deviceid must be non-empty")
        return text

    @field_validator(
        "latitude",
        "longitude",
        "speed",
        "heading",
        "altitude",
        "voltage_percent",
        "voltage_v",
        "ex_voltage",
        "total_distance_m",
        mode="before",
    )
    @classmethod
    def _coerce_floats(cls, value: Any) -> float | None:
        return safe_float(value)

    @field_validator("status", "moving", "rxlevel", "overspeed_state", mode="before")
    @classmethod
    def _coerce_ints(cls, value: Any) -> int | None:
        return safe_int(value)

    @field_validator("strstatus", "strstatusen", mode="before")
    @classmethod
    def _coerce_strs(cls, value: Any) -> str | None:
        return safe_str(value)
