"""Device registry queries."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pygps51.models.device import DeviceInfo
from pygps51.storage.schema import Device


def ensure_device(session: Session, device_id: str, *, now: datetime) -> Device:
    """Return the device row, creating a placeholder on first sight."""
    device = session.get(Device, device_id)
    if device is not None:
        return device
    try:
        with session.begin_nested():
            device = Device(device_id=device_id, is_active=True, created_at=now)
            session.add(device)
    except IntegrityError:
        # Another worker created it first.
        device = session.get(Device, device_id)
        if device is None:
            raise
    return device


def sync_device_list(session: Session, devices: Iterable[DeviceInfo], *, now: datetime) -> tuple[int, int, int]:
    """Upsert the vendor device list and soft-deactivate devices no longer listed.

    Returns ``(created, updated, deactivated)``.
    """
    created = updated = 0
    seen: set[str] = set()
    for info in devices:
        seen.add(info.device_id)
        device = session.get(Device, info.device_id)
        if device is None:
            session.add(
                Device(
                    device_id=info.device_id,
                    name=info.name,
                    group_id=info.group_id,
                    group_name=info.group_name,
                    device_type=info.device_type,
                    sim_number=info.sim_number,
                    owner=info.owner,
                    is_active=True,
                    created_at=now,
                    last_synced_at=now,
                )
            )
            created += 1
            continue
        device.name = info.name or device.name
        device.group_id = info.group_id or device.group_id
        device.group_name = info.group_name or device.group_name
        device.device_type = info.device_type or device.device_type
        device.sim_number = info.sim_number or device.sim_number
        device.owner = info.owner or device.owner
        device.is_active = True
        device.last_synced_at = now
        updated += 1

    deactivated = 0
    if seen:
        result = session.execute(
            update(Device)
            .where(Device.device_id.not_in(seen), Device.is_active.is_(True))
            .values(is_active=False, last_synced_at=now)
        )
        deactivated = result.rowcount or 0
    return created, updated, deactivated


def active_device_ids(session: Session) -> list[str]:
    rows = session.scalars(select(Device.device_id).where(Device.is_active.is_(True)).order_by(Device.device_id))
    return list(rows)


def all_device_ids(session: Session) -> list[str]:
    return list(session.scalars(select(Device.device_id).order_by(Device.device_id)))
