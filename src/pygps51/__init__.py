"""pygps51 - GPS51 fleet telemetry ingestion, trips and vehicle events."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pygps51")
except PackageNotFoundError:
    __version__ = "0+local"
from pygps51._ratelimit import MemoryBackoffStore, SqlBackoffStore
from pygps51.client import Gps51Client, PositionBatch
from pygps51.config import EventSettings, Gps51Config, NormalizerSettings, RateLimitSettings
from pygps51.exceptions import (
    Gps51ApiError,
    Gps51AuthExpiredError,
    Gps51ConfigError,
    Gps51DataError,
    Gps51Error,
    Gps51RateLimitError,
    Gps51StoreError,
    Gps51TransportError,
)
from pygps51.ingestion.normalize import normalize
from pygps51.models import (
    CanonicalState,
    DataQuality,
    DetectionMethod,
    DeviceInfo,
    IgnitionDetection,
    RawPosition,
    RawTrip,
    TimestampSource,
    TripRecord,
)
from pygps51.session import Gps51Session, StaticCredentials, StoredCredentials
from pygps51.state.events import EventCandidate, EventDetector, EventRecorder, EventType, Severity

__all__ = [
    "__version__",
    "CanonicalState",
    "DataQuality",
    "DetectionMethod",
    "DeviceInfo",
    "EventCandidate",
    "EventDetector",
    "EventRecorder",
    "EventSettings",
    "EventType",
    "Gps51ApiError",
    "Gps51AuthExpiredError",
    "Gps51Client",
    "Gps51Config",
    "Gps51ConfigError",
    "Gps51DataError",
    "Gps51Error",
    "Gps51RateLimitError",
    "Gps51Session",
    "Gps51StoreError",
    "Gps51TransportError",
    "IgnitionDetection",
    "MemoryBackoffStore",
    "NormalizerSettings",
    "PositionBatch",
    "RateLimitSettings",
    "RawPosition",
    "RawTrip",
    "Severity",
    "SqlBackoffStore",
    "StaticCredentials",
    "StoredCredentials",
    "TimestampSource",
    "TripRecord",
    "normalize",
]
