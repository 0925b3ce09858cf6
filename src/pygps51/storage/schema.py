"""Relational schema of the position/state store."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def _utcnow() -> datetime:
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware UTC datetime on every backend.

    SQLite drops tzinfo on the way back; this re-attaches UTC so values
    compare cleanly with aware datetimes in Python.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    type_annotation_map = {datetime: UTCDateTime()}


class Device(Base):
    """A tracked device.  Never hard-deleted; see ``is_active``."""

    __tablename__ = "devices"

    device_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(255))
    group_id: Mapped[str | None] = mapped_column(String(64))
    group_name: Mapped[str | None] = mapped_column(String(255))
    device_type: Mapped[str | None] = mapped_column(String(64))
    sim_number: Mapped[str | None] = mapped_column(String(32))
    owner: Mapped[str | None] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)
    last_synced_at: Mapped[datetime | None] = mapped_column()


class _PositionColumns:
    latitude: Mapped[float | None] = mapped_column(Float)
    longitude: Mapped[float | None] = mapped_column(Float)
    speed_kmh: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    heading: Mapped[float | None] = mapped_column(Float)
    battery_percent: Mapped[int | None] = mapped_column(Integer)
    ignition_on: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    ignition_confidence: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    ignition_method: Mapped[str] = mapped_column(String(32), default="unknown", nullable=False)


class CurrentPosition(_PositionColumns, Base):
    """Latest known reading per device; only ever moves forward in time."""

    __tablename__ = "current_positions"

    device_id: Mapped[str] = mapped_column(ForeignKey("devices.device_id"), primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(nullable=False)
    timestamp_source: Mapped[str] = mapped_column(String(16), nullable=False)
    speed_unit_corrected: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    altitude: Mapped[float | None] = mapped_column(Float)
    signal_strength: Mapped[int | None] = mapped_column(Integer)
    is_online: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_moving: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_overspeeding: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    data_quality: Mapped[str] = mapped_column(String(16), nullable=False)
    status_text: Mapped[str | None] = mapped_column(Text)
    total_mileage_m: Mapped[float | None] = mapped_column(Float)
    observed_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)


class PositionHistory(_PositionColumns, Base):
    """Append-only reading log."""

    __tablename__ = "position_history"
    __table_args__ = (
        UniqueConstraint("device_id", "timestamp", name="uq_position_history_device_ts"),
        Index("ix_position_history_device_ts", "device_id", "timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(ForeignKey("devices.device_id"), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)


class Trip(Base):
    __tablename__ = "trips"
    __table_args__ = (
        UniqueConstraint("device_id", "start_time", "end_time", name="uq_trips_natural_key"),
        # NULLs are distinct in a unique constraint; open trips need their own index.
        Index(
            "uq_trips_open_key",
            "device_id",
            "start_time",
            unique=True,
            sqlite_where=text("end_time IS NULL"),
            postgresql_where=text("end_time IS NULL"),
        ),
        Index("ix_trips_device_start", "device_id", "start_time"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(ForeignKey("devices.device_id"), nullable=False)
    start_time: Mapped[datetime] = mapped_column(nullable=False)
    end_time: Mapped[datetime | None] = mapped_column()
    start_lat: Mapped[float | None] = mapped_column(Float)
    start_lon: Mapped[float | None] = mapped_column(Float)
    end_lat: Mapped[float | None] = mapped_column(Float)
    end_lon: Mapped[float | None] = mapped_column(Float)
    distance_km: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    duration_seconds: Mapped[int | None] = mapped_column(Integer)
    avg_speed_kmh: Mapped[float | None] = mapped_column(Float)
    max_speed_kmh: Mapped[float | None] = mapped_column(Float)
    source: Mapped[str] = mapped_column(String(16), nullable=False)
    source_observed_at: Mapped[datetime] = mapped_column(nullable=False)
    raw: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)


class DomainEvent(Base):
    __tablename__ = "domain_events"
    __table_args__ = (Index("ix_domain_events_cooldown", "cooldown_key", "event_time"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(ForeignKey("devices.device_id"), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    event_time: Mapped[datetime] = mapped_column(nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON)
    latitude: Mapped[float | None] = mapped_column(Float)
    longitude: Mapped[float | None] = mapped_column(Float)
    cooldown_key: Mapped[str] = mapped_column(String(128), nullable=False)
    notified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    notified_at: Mapped[datetime | None] = mapped_column()
    created_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)


class RateLimitState(Base):
    """Shared upstream backoff record, one row per rate-limit key."""

    __tablename__ = "rate_limit_state"

    key: Mapped[str] = mapped_column(String(32), primary_key=True)
    backoff_until: Mapped[datetime | None] = mapped_column()
    last_call_at: Mapped[datetime | None] = mapped_column()
    updated_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)


class TripSyncCursor(Base):
    __tablename__ = "trip_sync_status"

    device_id: Mapped[str] = mapped_column(ForeignKey("devices.device_id"), primary_key=True)
    last_trip_end: Mapped[datetime | None] = mapped_column()
    last_sync_at: Mapped[datetime | None] = mapped_column()
    sync_status: Mapped[str] = mapped_column(String(16), default="idle", nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text)
    trips_synced: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class TripReviewFlag(Base):
    """Near-duplicate trip pair awaiting operator review."""

    __tablename__ = "trip_review"
    __table_args__ = (UniqueConstraint("trip_id", "conflicting_trip_id", name="uq_trip_review_pair"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(ForeignKey("devices.device_id"), nullable=False)
    trip_id: Mapped[int] = mapped_column(ForeignKey("trips.id"), nullable=False)
    conflicting_trip_id: Mapped[int] = mapped_column(ForeignKey("trips.id"), nullable=False)
    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)


class Credential(Base):
    """Vendor token, refreshed out-of-band."""

    __tablename__ = "credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token: Mapped[str] = mapped_column(Text, nullable=False)
    server_id: Mapped[str] = mapped_column(String(32), default="1", nullable=False)
    username: Mapped[str | None] = mapped_column(String(255))
    expires_at: Mapped[datetime | None] = mapped_column()
    created_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)
