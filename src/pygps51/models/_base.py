"""Base model and parsing helpers for GPS51 payloads.

Every raw GPS51 model inherits from :class:`Gps51BaseModel` which
provides:

* A ``model_validator(mode="before")`` that strips GPS51 sentinel
  values (``""``, ``"--"``, ``"null"``, NaN) so the field default is used.
* A ``raw`` dict that captures the original payload.

GPS51 keys are already lower-case and flat (``callat``, ``gpstime``,
``strstatus``), so no alias generator is needed; fields declare their
alternatives explicitly with ``AliasChoices``.
"""

from __future__ import annotations

import math
from datetime import UTC, datetime, timedelta, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Sentinel strings GPS51 uses for "not available".
_SENTINELS = frozenset({"", "--", "NaN", "nan", "null", "NULL"})

# Threshold to distinguish seconds from milliseconds.
_MS_THRESHOLD = 100_000_000_000

_VENDOR_DATETIME_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M", "%Y-%m-%dT%H:%M:%S")


def safe_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str) and value.strip() in _SENTINELS:
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def safe_int(value: Any) -> int | None:
    parsed = safe_float(value)
    if parsed is None:
        return None
    return int(parsed)


def safe_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_vendor_timestamp(value: Any, *, utc_offset_hours: float = 8.0) -> datetime | None:
    """Convert a GPS51 timestamp to an aware UTC datetime.

    GPS51 mixes three encodings across endpoints:

    * epoch milliseconds (``lastposition``, most ``querytrips`` responses)
    * epoch seconds (older firmware)
    * ``yyyy-MM-dd HH:mm:ss`` strings in the platform timezone (GMT+8)

    Returns ``None`` when the value is missing, non-positive or unparseable.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)

    numeric = safe_float(value)
    if numeric is not None:
        if numeric <= 0:
            return None
        if numeric >= _MS_THRESHOLD:
            numeric /= 1000.0
        try:
            return datetime.fromtimestamp(numeric, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None

    text = safe_str(value)
    if text is None:
        return None
    vendor_tz = timezone(timedelta(hours=utc_offset_hours))
    for fmt in _VENDOR_DATETIME_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        return parsed.replace(tzinfo=vendor_tz).astimezone(UTC)
    return None


class Gps51BaseModel(BaseModel):
    """Base for raw GPS51 payload models.

    Handles:
    * GPS51 sentinel values → dropped so the field default is used instead
    * Stashes the original API dict in ``raw``
    """

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
    )

    raw: dict[str, Any] = Field(default_factory=dict)
    """Original API record."""

    @staticmethod
    def _clean_dict(values: dict[str, Any]) -> dict[str, Any]:
        cleaned: dict[str, Any] = {}
        for key, value in values.items():
            if value is None:
                continue
            if isinstance(value, str) and value.strip() in _SENTINELS:
                continue
            if isinstance(value, float) and math.isnan(value):
                continue
            cleaned[key] = value
        return cleaned

    @model_validator(mode="before")
    @classmethod
    def _clean_vendor_values(cls, values: Any) -> Any:
        """Strip sentinel values and stash the raw payload."""
        if not isinstance(values, dict):
            return values
        cleaned = Gps51BaseModel._clean_dict(values)
        # Keep an explicit raw= from keyword construction.
        if "raw" not in values:
            cleaned["raw"] = dict(values)
        return cleaned
