"""Domain event queries."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from pygps51.storage.schema import DomainEvent


def cooldown_key(device_id: str, event_type: str) -> str:
    return f"{device_id}:{event_type}"


def nearest_event_time(session: Session, key: str, *, around: datetime) -> datetime | None:
    """Event time under *key* closest to *around*, looking both ways.

    Readings may be replayed out of order, so the cooldown is checked against
    the nearest recorded event rather than only the latest one.
    """
    same_key = DomainEvent.cooldown_key == key
    before = session.scalar(select(func.max(DomainEvent.event_time)).where(same_key, DomainEvent.event_time <= around))
    after = session.scalar(select(func.min(DomainEvent.event_time)).where(same_key, DomainEvent.event_time > around))
    candidates = [value for value in (before, after) if value is not None]
    if not candidates:
        return None
    return min(candidates, key=lambda value: abs((value - around).total_seconds()))


def insert_event(
    session: Session,
    *,
    device_id: str,
    event_type: str,
    severity: str,
    event_time: datetime,
    title: str,
    message: str,
    metadata: dict[str, Any] | None,
    latitude: float | None,
    longitude: float | None,
    created_at: datetime,
) -> DomainEvent:
    row = DomainEvent(
        device_id=device_id,
        event_type=event_type,
        severity=severity,
        event_time=event_time,
        title=title,
        message=message,
        metadata_json=metadata,
        latitude=latitude,
        longitude=longitude,
        cooldown_key=cooldown_key(device_id, event_type),
        notified=False,
        created_at=created_at,
    )
    session.add(row)
    session.flush()
    return row


def events_for_device(session: Session, device_id: str) -> list[DomainEvent]:
    stmt = (
        select(DomainEvent)
        .where(DomainEvent.device_id == device_id)
        .order_by(DomainEvent.event_time, DomainEvent.id)
    )
    return list(session.scalars(stmt))


def pending_notifications(session: Session, *, limit: int = 100) -> list[DomainEvent]:
    stmt = (
        select(DomainEvent)
        .where(DomainEvent.notified.is_(False))
        .order_by(DomainEvent.event_time, DomainEvent.id)
        .limit(limit)
    )
    return list(session.scalars(stmt))


def mark_notified(session: Session, event_id: int, *, at: datetime) -> bool:
    """Set ``notified``/``notified_at`` once.  Returns ``False`` if already set."""
    result = session.execute(
        update(DomainEvent)
        .where(DomainEvent.id == event_id, DomainEvent.notified.is_(False))
        .values(notified=True, notified_at=at)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)
