"""
Per-device old-event operations used by retention sweeps.

Both operations end their own transaction so a sweep never holds a
connection while it sleeps between devices.
"""
from typing import List, Optional

from sqlalchemy import delete, func
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from config import config
from errors import StorageUnavailableError
from models import Device, EventData

# Returned when the engine cannot report an exact figure
UNKNOWN_COUNT = -1


class EventStore:
    """Counts and deletes a device's events older than a cutoff (epoch seconds)."""

    def _filter(self, device: Device, cutoff: int) -> list:
        return [
            EventData.account_id == device.account_id,
            EventData.device_id == device.device_id,
            EventData.timestamp < cutoff,
        ]

    def count_events_before(self, db: Session, device: Device, cutoff: int,
                            messages: Optional[List[str]] = None) -> int:
        """
        Number of events of `device` with timestamp < cutoff.

        Returns -1 when exact counts are disabled for this engine.
        """
        if not config.event_counts_exact:
            if messages is not None:
                messages.append("exact event counts unavailable for this engine")
            return UNKNOWN_COUNT

        try:
            count = db.query(func.count(EventData.id)).filter(*self._filter(device, cutoff)).scalar()
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageUnavailableError(
                f"Unable to count events: {device.account_id}/{device.device_id}"
            ) from e
        return count or 0

    def delete_events_before(self, db: Session, device: Device, cutoff: int,
                             messages: Optional[List[str]] = None) -> int:
        """
        Delete events of `device` with timestamp < cutoff.

        Returns the driver row count, which is -1 when the driver cannot
        report it.
        """
        try:
            result = db.execute(
                delete(EventData).where(*self._filter(device, cutoff)),
                execution_options={"synchronize_session": False}
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageUnavailableError(
                f"Unable to delete events: {device.account_id}/{device.device_id}"
            ) from e

        deleted = result.rowcount
        if deleted is None or deleted < 0:
            if messages is not None:
                messages.append("driver did not report deleted row count")
            return UNKNOWN_COUNT
        return deleted


event_store = EventStore()
