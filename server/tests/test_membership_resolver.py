"""
Tests for group membership resolution: normal, universal and the virtual "all" group.
"""
import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from auth import DeviceAuthorization
from errors import StorageUnavailableError
from group_membership import (
    get_all_devices_for_group,
    get_device_ids_for_group,
    get_members_as_pairs,
    is_device_in_group,
    is_device_in_universal_group,
)
from models import Device, DeviceList


def _fail_queries(monkeypatch, db: Session):
    def broken_query(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database is down"))
    monkeypatch.setattr(db, "query", broken_query)


class TestAllGroup:
    """The virtual "all" group"""

    def test_all_returns_every_account_device(self, fleet: Session):
        """All devices of the account, inactive included, ignoring membership rows"""
        assert get_device_ids_for_group(fleet, "acme", "all") == ["d1", "d2", "d3", "d4"]

    def test_all_is_case_insensitive(self, fleet: Session):
        assert get_device_ids_for_group(fleet, "ACME", "ALL") == ["d1", "d2", "d3", "d4"]

    def test_all_skips_inactive_when_asked(self, fleet: Session):
        assert get_device_ids_for_group(fleet, "acme", "all", include_inactive=False) == ["d1", "d2", "d4"]

    def test_all_applies_authorization(self, fleet: Session):
        auth = DeviceAuthorization("acme", ["d2", "d4"])
        assert get_device_ids_for_group(fleet, "acme", "all", auth=auth) == ["d2", "d4"]

    def test_all_universal_returns_pairs(self, fleet: Session):
        assert get_all_devices_for_group(fleet, "beta", "all") == [("beta", "d9")]

    def test_all_honors_limit(self, fleet: Session):
        assert get_device_ids_for_group(fleet, "acme", "all", limit=2) == ["d1", "d2"]


class TestNormalGroups:
    """Normal membership resolution"""

    def test_resolves_members_in_device_order(self, fleet: Session):
        fleet.add(DeviceList(account_id="acme", group_id="fleet1", device_id="d4"))
        fleet.commit()

        assert get_device_ids_for_group(fleet, "acme", "fleet1") == ["d1", "d2", "d4"]

    def test_ids_are_case_insensitive(self, fleet: Session):
        assert get_device_ids_for_group(fleet, "Acme", "FLEET1") == ["d1", "d2"]

    def test_blank_ids_resolve_to_empty(self, fleet: Session):
        assert get_device_ids_for_group(fleet, "", "fleet1") == []
        assert get_device_ids_for_group(fleet, "acme", "  ") == []
        assert get_device_ids_for_group(fleet, None, None) == []

    def test_unknown_group_resolves_to_empty(self, fleet: Session):
        assert get_device_ids_for_group(fleet, "acme", "nope") == []

    def test_limit_caps_scan(self, fleet: Session):
        assert get_device_ids_for_group(fleet, "acme", "fleet1", limit=1) == ["d1"]

    def test_inactive_trim(self, fleet: Session):
        fleet.add(DeviceList(account_id="acme", group_id="fleet1", device_id="d3"))
        fleet.commit()

        assert get_device_ids_for_group(fleet, "acme", "fleet1") == ["d1", "d2", "d3"]
        assert get_device_ids_for_group(fleet, "acme", "fleet1", include_inactive=False) == ["d1", "d2"]

    def test_missing_device_dropped_only_by_inactive_trim(self, fleet: Session):
        """A membership row whose device was deleted is kept unless inactive devices are trimmed"""
        fleet.delete(fleet.get(Device, ("acme", "d2")))
        fleet.commit()

        assert get_device_ids_for_group(fleet, "acme", "fleet1") == ["d1", "d2"]
        assert get_device_ids_for_group(fleet, "acme", "fleet1", include_inactive=False) == ["d1"]

    def test_authorization_trim(self, fleet: Session):
        auth = DeviceAuthorization("acme", ["d2"])
        assert get_device_ids_for_group(fleet, "acme", "fleet1", auth=auth) == ["d2"]

    def test_authorization_from_group(self, fleet: Session):
        auth = DeviceAuthorization.for_group(fleet, "acme", "fleet1")
        assert get_device_ids_for_group(fleet, "acme", "all", auth=auth) == ["d1", "d2"]

    def test_missing_account_with_inactive_trim_is_empty(self, fleet: Session, caplog):
        """Rows for an unknown account resolve to nothing when devices must be checked"""
        fleet.add(DeviceList(account_id="ghost", group_id="g", device_id="x1"))
        fleet.commit()

        assert get_device_ids_for_group(fleet, "ghost", "g") == ["x1"]
        with caplog.at_level("WARNING"):
            assert get_device_ids_for_group(fleet, "ghost", "g", include_inactive=False) == []
        assert "Account not found? ghost" in caplog.text

    def test_members_as_pairs(self, fleet: Session):
        assert get_members_as_pairs(fleet, "acme", "fleet1") == [("acme", "d1"), ("acme", "d2")]

    def test_storage_failure_propagates(self, fleet: Session, monkeypatch):
        _fail_queries(monkeypatch, fleet)

        with pytest.raises(StorageUnavailableError):
            get_device_ids_for_group(fleet, "acme", "fleet1")
        with pytest.raises(StorageUnavailableError):
            get_device_ids_for_group(fleet, "acme", "all")


class TestUniversalGroups:
    """Universal membership resolution"""

    def test_cross_account_member(self, fleet: Session):
        assert get_all_devices_for_group(fleet, "acme", "shared", None, True, -1) == [("beta", "d9")]

    def test_ordered_by_device_account_then_device(self, fleet: Session):
        from models import DeviceUList

        fleet.add_all([
            DeviceUList(account_id="acme", group_id="shared", device_account_id="acme", device_id="d4"),
            DeviceUList(account_id="acme", group_id="shared", device_account_id="acme", device_id="d1"),
        ])
        fleet.commit()

        assert get_all_devices_for_group(fleet, "acme", "shared") == [
            ("acme", "d1"), ("acme", "d4"), ("beta", "d9")
        ]

    def test_normal_resolution_ignores_universal_rows(self, fleet: Session):
        assert get_device_ids_for_group(fleet, "acme", "shared") == []

    def test_foreign_devices_not_authorized(self, fleet: Session):
        auth = DeviceAuthorization("acme")
        assert get_all_devices_for_group(fleet, "acme", "shared", auth=auth) == []

    def test_inactive_trim_checks_owning_account(self, fleet: Session):
        fleet.get(Device, ("beta", "d9")).is_active = False
        fleet.commit()

        assert get_all_devices_for_group(fleet, "acme", "shared", include_inactive=False) == []


class TestMembershipChecks:
    """is_device_in_group / is_device_in_universal_group"""

    def test_member_and_non_member(self, fleet: Session):
        assert is_device_in_group(fleet, "acme", "fleet1", "d1") is True
        assert is_device_in_group(fleet, "acme", "fleet1", "D1") is True
        assert is_device_in_group(fleet, "acme", "fleet1", "d4") is False

    def test_all_group_always_contains(self, fleet: Session):
        assert is_device_in_group(fleet, "acme", "all", "anything") is True

    def test_none_ids_are_false(self, fleet: Session):
        assert is_device_in_group(fleet, None, "fleet1", "d1") is False
        assert is_device_in_universal_group(fleet, "acme", "shared", None, "d9") is False

    def test_universal_membership(self, fleet: Session):
        assert is_device_in_universal_group(fleet, "acme", "shared", "beta", "d9") is True
        assert is_device_in_universal_group(fleet, "acme", "shared", "acme", "d9") is False

    def test_storage_failure_reads_as_false(self, fleet: Session, monkeypatch):
        _fail_queries(monkeypatch, fleet)

        assert is_device_in_group(fleet, "acme", "fleet1", "d1") is False
        assert is_device_in_universal_group(fleet, "acme", "shared", "beta", "d9") is False
