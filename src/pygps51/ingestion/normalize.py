"""Telemetry normalizer.

Turns one raw ``lastposition`` record into a :class:`CanonicalState`.
Everything here is pure: no I/O, no clock, same input gives same output.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from pygps51.config import NormalizerSettings
from pygps51.exceptions import Gps51DataError
from pygps51.models._base import ensure_utc, parse_vendor_timestamp
from pygps51.models.position import RawPosition
from pygps51.models.state import (
    CanonicalState,
    DataQuality,
    DetectionMethod,
    IgnitionDetection,
    TimestampSource,
)

_logger = logging.getLogger(__name__)

_ACC_EN_RE = re.compile(r"ACC[\s:_=]*(ON|OFF)\b", re.IGNORECASE)
_ACC_ZH_ON_RE = re.compile(r"ACC\s*开")
_ACC_ZH_OFF_RE = re.compile(r"ACC\s*关")

# (min volts, max volts, curve exponent) per nominal pack voltage.
_BATTERY_CURVES: tuple[tuple[float, float, float, float], ...] = (
    (16.0, 11.0, 12.8, 1.5),  # 12 V lead-acid
    (30.0, 22.0, 25.6, 1.5),  # 24 V lead-acid
    (100.0, 40.0, 54.4, 1.0),  # 48 V lithium, close to linear
)

_MULTI_SIGNAL_ON_SPEED = 5.0
_SPEED_INFERENCE_ON_SPEED = 5.0
_SPEED_INFERENCE_WEAK_SPEED = 3.0
_STOPPED_SPEED = 3.0


# ----------------------------------------------------------------------
# Field normalizers
# ----------------------------------------------------------------------


def normalize_speed(value: float | None, settings: NormalizerSettings) -> tuple[float, bool]:
    """Return ``(speed_kmh, unit_corrected)``.

    Some GPS51 firmware reports metres per hour instead of km/h.  A value
    above ``max_plausible_speed_kmh`` is taken to be m/h and divided by 1000.
    """
    if value is None or value != value or value < 0:
        return 0.0, False

    speed = float(value)
    corrected = False
    if speed > settings.max_plausible_speed_kmh:
        speed /= 1000.0
        corrected = True

    if settings.stationary_threshold_kmh > 0 and speed < settings.stationary_threshold_kmh:
        speed = 0.0
    return speed, corrected


def valid_coordinates(lat: float | None, lon: float | None) -> bool:
    """``True`` for an in-range fix that is not (0, 0)."""
    if lat is None or lon is None:
        return False
    if lat != lat or lon != lon:
        return False
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        return False
    return not (lat == 0 and lon == 0)


def voltage_to_percent(volts: float | None) -> int | None:
    """Map a battery voltage to a charge percentage.

    The pack is identified by voltage band (12 V, 24 V, 48 V) and mapped with
    a non-linear discharge curve.
    """
    if volts is None or volts <= 0:
        return None
    for band_max, v_min, v_max, exponent in _BATTERY_CURVES:
        if volts <= band_max:
            if volts >= v_max:
                return 100
            if volts <= v_min:
                return 0
            ratio = (volts - v_min) / (v_max - v_min)
            return max(0, min(100, round((ratio**exponent) * 100)))
    return None


def normalize_battery(raw: RawPosition) -> int | None:
    """Battery percent from ``voltagepercent``, else ``voltagev``, else ``exvoltage``."""
    if raw.voltage_percent is not None and raw.voltage_percent > 0:
        return max(0, min(100, round(raw.voltage_percent)))
    if raw.voltage_v is not None and raw.voltage_v > 0:
        return voltage_to_percent(raw.voltage_v)
    if raw.ex_voltage is not None and raw.ex_voltage > 0:
        return voltage_to_percent(raw.ex_voltage)
    return None


def normalize_signal(rxlevel: int | None) -> int | None:
    """Map ``rxlevel`` (0-31 CSQ, 0-99, or already 0-100) to a percentage."""
    if rxlevel is None:
        return None
    level = max(0, rxlevel)
    if level <= 31:
        return round(level / 31 * 100)
    if level <= 99:
        return round(level / 99 * 100)
    return 100


def resolve_timestamp(
    raw: RawPosition,
    *,
    observed_at: datetime,
    settings: NormalizerSettings,
) -> tuple[datetime, TimestampSource]:
    offset = settings.vendor_utc_offset_hours
    gps_ts = parse_vendor_timestamp(raw.gps_time, utc_offset_hours=offset)
    if gps_ts is not None:
        return gps_ts, TimestampSource.GPS
    server_ts = parse_vendor_timestamp(raw.server_time, utc_offset_hours=offset)
    if server_ts is not None:
        return server_ts, TimestampSource.SERVER
    return ensure_utc(observed_at), TimestampSource.OBSERVED


# ----------------------------------------------------------------------
# Ignition detection
# ----------------------------------------------------------------------


def _acc_from_status(status: int) -> bool:
    # JT/T 808 puts ACC in bit 0; GPS51 mirrors it at bit 0 of the high word.
    low_word = status & 0xFFFF
    high_word = (status >> 16) & 0xFFFF
    return bool(low_word & 0x1) or bool(high_word & 0x1)


def parse_acc_text(*texts: str | None) -> bool | None:
    """Parse ACC state from status strings.

    Returns ``None`` when no ACC token is present.  When both ON and OFF
    appear, OFF wins.
    """
    seen_on = False
    seen_off = False
    for text in texts:
        if not text:
            continue
        if _ACC_ZH_OFF_RE.search(text):
            seen_off = True
        if _ACC_ZH_ON_RE.search(text):
            seen_on = True
        for match in _ACC_EN_RE.finditer(text):
            if match.group(1).upper() == "OFF":
                seen_off = True
            else:
                seen_on = True
    if seen_off:
        return False
    if seen_on:
        return True
    return None


def detect_ignition(
    raw: RawPosition,
    speed_kmh: float,
    previous_ignition: bool | None,
) -> IgnitionDetection:
    """Run the detection tiers, highest confidence first; first match wins."""
    if raw.status is not None:
        return IgnitionDetection(
            ignition_on=_acc_from_status(raw.status),
            confidence=1.0,
            method=DetectionMethod.STATUS_BIT,
        )

    parsed = parse_acc_text(raw.strstatus, raw.strstatusen)
    if parsed is not None:
        return IgnitionDetection(ignition_on=parsed, confidence=0.9, method=DetectionMethod.STRING_PARSE)

    if raw.moving == 1 and speed_kmh > _MULTI_SIGNAL_ON_SPEED:
        return IgnitionDetection(ignition_on=True, confidence=0.7, method=DetectionMethod.MULTI_SIGNAL)
    if raw.moving == 0 and speed_kmh <= _STOPPED_SPEED and previous_ignition is False:
        return IgnitionDetection(ignition_on=False, confidence=0.6, method=DetectionMethod.MULTI_SIGNAL)

    if speed_kmh > _SPEED_INFERENCE_ON_SPEED:
        return IgnitionDetection(ignition_on=True, confidence=0.4, method=DetectionMethod.SPEED_INFERENCE)
    if speed_kmh > _SPEED_INFERENCE_WEAK_SPEED:
        return IgnitionDetection(ignition_on=True, confidence=0.3, method=DetectionMethod.SPEED_INFERENCE)
    if previous_ignition is False:
        return IgnitionDetection(ignition_on=False, confidence=0.5, method=DetectionMethod.SPEED_INFERENCE)

    return IgnitionDetection(
        ignition_on=bool(previous_ignition),
        confidence=0.0,
        method=DetectionMethod.UNKNOWN,
    )


def score_data_quality(
    *,
    has_location: bool,
    speed_kmh: float,
    battery_percent: int | None,
    ignition_method: DetectionMethod,
    signal_strength: int | None,
) -> DataQuality:
    score = 0
    if has_location:
        score += 2
    if speed_kmh > 0:
        score += 1
    if battery_percent is not None:
        score += 1
    if ignition_method != DetectionMethod.UNKNOWN:
        score += 1
    if signal_strength is not None:
        score += 1
    if score >= 5:
        return DataQuality.HIGH
    if score >= 3:
        return DataQuality.MEDIUM
    return DataQuality.LOW


# ----------------------------------------------------------------------
# Entry point
# ----------------------------------------------------------------------


def normalize(
    raw: RawPosition | Mapping[str, Any],
    *,
    observed_at: datetime,
    previous_ignition: bool | None = None,
    config: NormalizerSettings | None = None,
) -> CanonicalState:
    """Normalize one raw position record.

    Parameters
    ----------
    raw : RawPosition or mapping
        A ``lastposition`` record, parsed or as received.
    observed_at : datetime
        When the record was fetched.  Used for the online flag and as the
        timestamp of last resort.
    previous_ignition : bool or None
        Last known ignition state of the device, used by the weaker tiers.
    config : NormalizerSettings, optional
        Thresholds; defaults are used when omitted.

    Returns
    -------
    CanonicalState
        The canonical reading.

    Raises
    ------
    Gps51DataError
        When the record has no device id or is not a mapping.
    """
    settings = config or NormalizerSettings()
    if isinstance(raw, RawPosition):
        record = raw
    else:
        try:
            record = RawPosition.model_validate(raw)
        except ValidationError as exc:
            raise Gps51DataError(f"Malformed position record: {exc.errors()[0]['msg']}", record=raw) from exc

    observed_at = ensure_utc(observed_at)
    speed_kmh, corrected = normalize_speed(record.speed, settings)
    if corrected:
        _logger.debug(
            "Speed unit corrected for device=%s raw=%s normalized=%.1f",
            record.device_id,
            record.speed,
            speed_kmh,
        )

    lat, lon = record.latitude, record.longitude
    if not valid_coordinates(lat, lon):
        lat = lon = None

    detection = detect_ignition(record, speed_kmh, previous_ignition)
    if detection.confidence < 0.5:
        _logger.debug(
            "Low ignition confidence %.2f for device=%s method=%s",
            detection.confidence,
            record.device_id,
            detection.method,
        )

    timestamp, ts_source = resolve_timestamp(record, observed_at=observed_at, settings=settings)
    battery = normalize_battery(record)
    signal = normalize_signal(record.rxlevel)

    return CanonicalState(
        device_id=record.device_id,
        timestamp=timestamp,
        timestamp_source=ts_source,
        latitude=lat,
        longitude=lon,
        speed_kmh=speed_kmh,
        speed_unit_corrected=corrected,
        heading=record.heading,
        altitude=record.altitude,
        ignition_on=detection.ignition_on,
        ignition_confidence=detection.confidence,
        ignition_method=detection.method,
        battery_percent=battery,
        signal_strength=signal,
        is_online=(observed_at - timestamp) <= settings.offline_threshold,
        is_moving=speed_kmh > 0,
        is_overspeeding=record.overspeed_state == 1,
        data_quality=score_data_quality(
            has_location=lat is not None,
            speed_kmh=speed_kmh,
            battery_percent=battery,
            ignition_method=detection.method,
            signal_strength=signal,
        ),
        status_text=record.strstatus or record.strstatusen,
        total_mileage_m=record.total_distance_m,
        raw=dict(record.raw),
    )
