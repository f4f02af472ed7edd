"""
Tests for per-device old-event count/delete.
"""
import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from conftest import NOW, OLD, add_events
from errors import StorageUnavailableError
from event_store import EventStore
from models import Device, EventData


@pytest.fixture
def device(fleet: Session) -> Device:
    add_events(fleet, "acme", "d1", [OLD, OLD + 1, NOW])
    add_events(fleet, "acme", "d2", [OLD])
    return fleet.get(Device, ("acme", "d1"))


class TestCountEvents:

    def test_counts_only_older_events_of_device(self, fleet: Session, device: Device):
        assert EventStore().count_events_before(fleet, device, NOW, []) == 2

    def test_cutoff_is_exclusive(self, fleet: Session, device: Device):
        assert EventStore().count_events_before(fleet, device, OLD, []) == 0

    def test_inexact_engine_reports_unknown(self, fleet: Session, device: Device, monkeypatch):
        monkeypatch.setenv("EVENT_COUNTS_EXACT", "false")
        messages = []

        assert EventStore().count_events_before(fleet, device, NOW, messages) == -1
        assert messages


class TestDeleteEvents:

    def test_deletes_only_older_events_of_device(self, fleet: Session, device: Device):
        assert EventStore().delete_events_before(fleet, device, NOW, []) == 2

        remaining = sorted((e.device_id, e.timestamp) for e in fleet.query(EventData).all())
        assert remaining == [("d1", NOW), ("d2", OLD)]

    def test_unreported_rowcount_is_unknown(self, fleet: Session, device: Device, monkeypatch):
        class NoRowcount:
            rowcount = -1

        monkeypatch.setattr(fleet, "execute", lambda *args, **kwargs: NoRowcount())
        messages = []

        assert EventStore().delete_events_before(fleet, device, NOW, messages) == -1
        assert messages == ["driver did not report deleted row count"]

    def test_failure_rolls_back_and_raises(self, fleet: Session, device: Device, monkeypatch):
        def broken(*args, **kwargs):
            raise OperationalError("DELETE", {}, Exception("database is down"))
        monkeypatch.setattr(fleet, "execute", broken)

        with pytest.raises(StorageUnavailableError):
            EventStore().delete_events_before(fleet, device, NOW, [])
