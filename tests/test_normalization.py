from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from pygps51.config import NormalizerSettings
from pygps51.exceptions import Gps51DataError
from pygps51.ingestion.normalize import (
    normalize,
    normalize_signal,
    normalize_speed,
    parse_acc_text,
    valid_coordinates,
    voltage_to_percent,
)
from pygps51.models.state import DataQuality, DetectionMethod, TimestampSource

_OBSERVED = datetime(2026, 3, 1, 8, 0, tzinfo=UTC)


def _epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _record(**fields: object) -> dict[str, object]:
    return {"deviceid": "DEV-1", "gpstime": _epoch_ms(_OBSERVED - timedelta(seconds=30)), **fields}


# ----------------------------------------------------------------------
# Field normalizers
# ----------------------------------------------------------------------


def test_speed_in_metres_per_hour_is_corrected() -> None:
    assert normalize_speed(300000, NormalizerSettings()) == (300.0, True)


def test_plausible_speed_is_kept() -> None:
    assert normalize_speed(120, NormalizerSettings()) == (120.0, False)


def test_negative_or_missing_speed_is_zero() -> None:
    assert normalize_speed(-5, NormalizerSettings()) == (0.0, False)
    assert normalize_speed(None, NormalizerSettings()) == (0.0, False)


def test_stationary_threshold_zeroes_gps_drift() -> None:
    settings = NormalizerSettings(stationary_threshold_kmh=2.0)
    assert normalize_speed(1.5, settings) == (0.0, False)
    assert normalize_speed(2.5, settings) == (2.5, False)


@pytest.mark.parametrize(("lat", "lon"), [(0.0, 0.0), (91.0, 0.0), (0.0, 181.0), (None, 3.3)])
def test_invalid_coordinates_rejected(lat: float | None, lon: float | None) -> None:
    assert not valid_coordinates(lat, lon)


def test_valid_coordinates_accepted() -> None:
    assert valid_coordinates(6.5, 3.3)
    assert valid_coordinates(-33.9, 18.4)


def test_voltage_curves_per_pack() -> None:
    assert voltage_to_percent(12.8) == 100
    assert voltage_to_percent(11.0) == 0
    assert voltage_to_percent(25.6) == 100
    # 48 V packs map linearly.
    assert voltage_to_percent(47.2) == 50
    assert voltage_to_percent(0) is None
    assert voltage_to_percent(150) is None


def test_voltage_curve_is_non_linear_for_lead_acid() -> None:
    midpoint = voltage_to_percent(11.9)
    assert midpoint is not None
    assert midpoint < 50


def test_signal_scales() -> None:
    assert normalize_signal(31) == 100
    assert normalize_signal(0) == 0
    assert normalize_signal(62) == 63
    assert normalize_signal(150) == 100
    assert normalize_signal(None) is None


def test_parse_acc_text_variants() -> None:
    assert parse_acc_text("ACC ON, GPS fixed") is True
    assert parse_acc_text(None, "acc:off") is False
    assert parse_acc_text("ACC开,定位") is True
    assert parse_acc_text("ACC关") is False
    assert parse_acc_text("ACC ON", "ACC OFF") is False
    assert parse_acc_text("GPS fixed") is None


# ----------------------------------------------------------------------
# Ignition tiers
# ----------------------------------------------------------------------


def test_status_bit_wins_over_text() -> None:
    state = normalize(_record(status=1, strstatusen="ACC OFF", speed=0), observed_at=_OBSERVED)
    assert state.ignition_on is True
    assert state.ignition_confidence == 1.0
    assert state.ignition_method == DetectionMethod.STATUS_BIT


def test_status_bit_in_high_word() -> None:
    state = normalize(_record(status=0x10000), observed_at=_OBSERVED)
    assert state.ignition_on is True


def test_status_bit_off() -> None:
    state = normalize(_record(status=2), observed_at=_OBSERVED)
    assert state.ignition_on is False
    assert state.ignition_confidence == 1.0


def test_string_parse_tier() -> None:
    state = normalize(_record(strstatus="ACC开,静止"), observed_at=_OBSERVED)
    assert state.ignition_on is True
    assert state.ignition_confidence == 0.9
    assert state.ignition_method == DetectionMethod.STRING_PARSE


def test_multi_signal_tier() -> None:
    on = normalize(_record(moving=1, speed=40), observed_at=_OBSERVED)
    assert (on.ignition_on, on.ignition_confidence, on.ignition_method) == (True, 0.7, DetectionMethod.MULTI_SIGNAL)

    off = normalize(_record(moving=0, speed=0), observed_at=_OBSERVED, previous_ignition=False)
    assert (off.ignition_on, off.ignition_confidence) == (False, 0.6)


@pytest.mark.parametrize(
    ("speed", "previous", "expected_on"),
    [(40, None, True), (4, None, True), (0, False, False)],
)
def test_speed_inference_tier(speed: float, previous: bool | None, expected_on: bool) -> None:
    state = normalize(_record(speed=speed), observed_at=_OBSERVED, previous_ignition=previous)
    assert state.ignition_method == DetectionMethod.SPEED_INFERENCE
    assert state.ignition_on is expected_on
    assert 0.3 <= state.ignition_confidence <= 0.5


def test_unknown_tier_keeps_previous_state() -> None:
    state = normalize(_record(speed=0), observed_at=_OBSERVED, previous_ignition=True)
    assert state.ignition_method == DetectionMethod.UNKNOWN
    assert state.ignition_confidence == 0.0
    assert state.ignition_on is True


# ----------------------------------------------------------------------
# Whole record
# ----------------------------------------------------------------------


def test_full_record_normalization() -> None:
    state = normalize(
        _record(
            callat=22.54,
            callon=114.05,
            speed=300000,
            course=90,
            status=1,
            voltagepercent=85,
            rxlevel=31,
            totaldistance=123456,
        ),
        observed_at=_OBSERVED,
    )
    assert state.device_id == "DEV-1"
    assert state.timestamp == _OBSERVED - timedelta(seconds=30)
    assert state.timestamp_source == TimestampSource.GPS
    assert state.speed_kmh == 300.0
    assert state.speed_unit_corrected is True
    assert (state.latitude, state.longitude) == (22.54, 114.05)
    assert state.battery_percent == 85
    assert state.signal_strength == 100
    assert state.is_online is True
    assert state.is_moving is True
    assert state.data_quality == DataQuality.HIGH
    assert state.raw["totaldistance"] == 123456


def test_invalid_coordinates_are_dropped() -> None:
    state = normalize(_record(callat=0, callon=0), observed_at=_OBSERVED)
    assert state.latitude is None
    assert state.longitude is None
    assert not state.has_location


def test_vendor_local_string_timestamp() -> None:
    state = normalize(
        {"deviceid": "DEV-1", "updatetime": "2026-03-01 15:59:00"},
        observed_at=_OBSERVED,
    )
    assert state.timestamp == datetime(2026, 3, 1, 7, 59, tzinfo=UTC)
    assert state.timestamp_source == TimestampSource.SERVER


def test_missing_timestamps_fall_back_to_observed() -> None:
    state = normalize({"deviceid": "DEV-1", "gpstime": "--"}, observed_at=_OBSERVED)
    assert state.timestamp == _OBSERVED
    assert state.timestamp_source == TimestampSource.OBSERVED


def test_stale_reading_is_offline() -> None:
    state = normalize(
        {"deviceid": "DEV-1", "gpstime": _epoch_ms(_OBSERVED - timedelta(minutes=20))},
        observed_at=_OBSERVED,
    )
    assert state.is_online is False


def test_sparse_record_is_low_quality() -> None:
    state = normalize({"deviceid": "DEV-1"}, observed_at=_OBSERVED)
    assert state.data_quality == DataQuality.LOW


def test_missing_device_id_raises_data_error() -> None:
    with pytest.raises(Gps51DataError) as exc_info:
        normalize({"callat": 1.0, "callon": 2.0}, observed_at=_OBSERVED)
    assert exc_info.value.record == {"callat": 1.0, "callon": 2.0}
