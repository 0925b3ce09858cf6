"""Data models for GPS51 payloads and canonical records."""

from pygps51.models._base import Gps51BaseModel, parse_vendor_timestamp, safe_float, safe_int, safe_str
from pygps51.models.device import DeviceInfo
from pygps51.models.position import RawPosition
from pygps51.models.state import (
    CanonicalState,
    DataQuality,
    DetectionMethod,
    IgnitionDetection,
    TimestampSource,
)
from pygps51.models.trip import RawTrip, TripRecord

__all__ = [
    "CanonicalState",
    "DataQuality",
    "DetectionMethod",
    "DeviceInfo",
    "Gps51BaseModel",
    "IgnitionDetection",
    "RawPosition",
    "RawTrip",
    "TimestampSource",
    "TripRecord",
    "parse_vendor_timestamp",
    "safe_float",
    "safe_int",
    "safe_str",
]
