"""Deterministic trip merge policy.

This module contains *no* payload parsing and no I/O.  The ingestion layer
produces canonical :class:`TripRecord` objects; this module only decides
whether an incoming record should replace what is stored.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol


class TripLike(Protocol):
    start_lat: float | None
    start_lon: float | None
    end_lat: float | None
    end_lon: float | None
    distance_km: float
    duration_seconds: int | None
    avg_speed_kmh: float | None
    max_speed_kmh: float | None
    source: str


def _known(value: float | None) -> bool:
    return value is not None and value != 0


def quality_score(trip: TripLike) -> int:
    """Completeness score in ``[0, 4]``.

    +1 known start coordinates, +1 known end coordinates, +1 positive
    distance, +1 positive duration.
    """
    score = 0
    if _known(trip.start_lat) and _known(trip.start_lon):
        score += 1
    if _known(trip.end_lat) and _known(trip.end_lon):
        score += 1
    if trip.distance_km and trip.distance_km > 0:
        score += 1
    if trip.duration_seconds and trip.duration_seconds > 0:
        score += 1
    return score


def content_differs(existing: TripLike, incoming: TripLike) -> bool:
    """Whether two records for the same natural key carry different data."""
    fields = (
        "start_lat",
        "start_lon",
        "end_lat",
        "end_lon",
        "distance_km",
        "duration_seconds",
        "avg_speed_kmh",
        "max_speed_kmh",
        "source",
    )
    return any(getattr(existing, name) != getattr(incoming, name) for name in fields)


def should_replace(
    *,
    existing: TripLike,
    existing_observed_at: datetime,
    incoming: TripLike,
    incoming_observed_at: datetime,
) -> bool:
    """Decide whether *incoming* replaces *existing*.

    Policy:
    - Higher quality score wins.
    - On equal score, the fresher fetch wins, but only if the content
      actually differs (identical re-delivery is a no-op).
    - Otherwise keep what is stored.
    """
    existing_score = quality_score(existing)
    incoming_score = quality_score(incoming)
    if incoming_score != existing_score:
        return incoming_score > existing_score
    if incoming_observed_at <= existing_observed_at:
        return False
    return content_differs(existing, incoming)
