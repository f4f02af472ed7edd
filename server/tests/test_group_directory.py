"""
Tests for group records, directory listings and account retention policy.
"""
import pytest
from sqlalchemy.orm import Session

from errors import DeviceGroupError, StorageUnavailableError
from group_directory import (
    all_group_description,
    create_device_group,
    delete_device_group,
    get_all_device_count,
    get_device_count,
    get_device_group,
    group_exists,
    list_groups_for_account,
    list_groups_for_device,
    update_device_group,
)
from models import Account, DeviceGroup, DeviceList, DeviceUList

from conftest import NOW


class TestGroupExists:

    def test_stored_and_virtual_groups(self, fleet: Session):
        assert group_exists(fleet, "acme", "fleet1") is True
        assert group_exists(fleet, "ACME", "Fleet1") is True
        assert group_exists(fleet, "acme", "all") is True
        assert group_exists(fleet, "acme", "nope") is False

    def test_blank_ids(self, fleet: Session):
        assert group_exists(fleet, "", "fleet1") is False
        assert group_exists(fleet, "acme", None) is False


class TestGetOrCreate:

    def test_existing_group(self, fleet: Session):
        account = fleet.get(Account, "acme")
        group = get_device_group(fleet, account, "fleet1")
        assert group.group_id == "fleet1"

    def test_missing_group_without_create(self, fleet: Session):
        account = fleet.get(Account, "acme")
        assert get_device_group(fleet, account, "nope") is None

    def test_create_ok_returns_unsaved_group_with_defaults(self, fleet: Session):
        account = fleet.get(Account, "acme")
        group = get_device_group(fleet, account, "NewGroup", create_ok=True)

        assert group.group_id == "newgroup"
        assert group.description == ""
        assert group_exists(fleet, "acme", "newgroup") is False

    def test_account_required(self, fleet: Session):
        with pytest.raises(DeviceGroupError):
            get_device_group(fleet, None, "fleet1")

    def test_group_id_required(self, fleet: Session):
        with pytest.raises(DeviceGroupError):
            get_device_group(fleet, fleet.get(Account, "acme"), " ")


class TestCreateUpdateDelete:

    def test_create_group(self, fleet: Session, capture_logs):
        account = fleet.get(Account, "acme")
        group = create_device_group(fleet, account, "Fleet2", display_name="Fleet Two")

        assert group.group_id == "fleet2"
        assert group.display_name == "Fleet Two"
        assert group_exists(fleet, "acme", "fleet2")
        assert any(log["event"] == "group.created" for log in capture_logs)

    def test_create_duplicate_rejected(self, fleet: Session):
        with pytest.raises(DeviceGroupError):
            create_device_group(fleet, fleet.get(Account, "acme"), "fleet1")

    @pytest.mark.parametrize("group_id", ["all", "ALL", "none"])
    def test_reserved_ids_rejected(self, fleet: Session, group_id):
        with pytest.raises(DeviceGroupError):
            create_device_group(fleet, fleet.get(Account, "acme"), group_id)

    def test_unknown_field_rejected(self, fleet: Session):
        with pytest.raises(DeviceGroupError):
            create_device_group(fleet, fleet.get(Account, "acme"), "fleet3", color="red")

    def test_update_trims_notify_fields(self, fleet: Session):
        group = fleet.get(DeviceGroup, ("acme", "fleet1"))
        update_device_group(fleet, group, notes="night shift", work_order_id="  wo-17 ", notify_email=" ops@acme.test ")

        group = fleet.get(DeviceGroup, ("acme", "fleet1"))
        assert group.notes == "night shift"
        assert group.work_order_id == "wo-17"
        assert group.notify_email == "ops@acme.test"

    def test_delete_cascades_to_both_relations(self, fleet: Session, capture_logs):
        fleet.add(DeviceUList(account_id="acme", group_id="fleet1", device_account_id="beta", device_id="d9"))
        fleet.commit()

        assert delete_device_group(fleet, "acme", "fleet1") is True

        assert group_exists(fleet, "acme", "fleet1") is False
        assert fleet.query(DeviceList).filter(DeviceList.group_id == "fleet1").count() == 0
        assert fleet.query(DeviceUList).filter(DeviceUList.group_id == "fleet1").count() == 0
        # other groups untouched
        assert fleet.query(DeviceUList).filter(DeviceUList.group_id == "shared").count() == 1

        deleted = [log for log in capture_logs if log["event"] == "group.deleted"]
        assert deleted[0]["normal_members_removed"] == 2
        assert deleted[0]["universal_members_removed"] == 1

    def test_delete_missing_group_still_clears_rows(self, fleet: Session):
        fleet.add(DeviceList(account_id="acme", group_id="ghost", device_id="d1"))
        fleet.commit()

        assert delete_device_group(fleet, "acme", "ghost") is False
        assert fleet.query(DeviceList).filter(DeviceList.group_id == "ghost").count() == 0

    def test_delete_all_rejected(self, fleet: Session):
        with pytest.raises(DeviceGroupError):
            delete_device_group(fleet, "acme", "all")


class TestListings:

    def test_groups_for_account(self, fleet: Session):
        assert list_groups_for_account(fleet, "acme") == ["all", "fleet1", "shared", "spare"]
        assert list_groups_for_account(fleet, "acme", include_all=False) == ["fleet1", "shared", "spare"]

    def test_groups_for_account_without_groups(self, fleet: Session):
        assert list_groups_for_account(fleet, "beta") == ["all"]
        assert list_groups_for_account(fleet, "") == ["all"]

    def test_groups_for_device(self, fleet: Session):
        assert list_groups_for_device(fleet, "acme", "d1") == ["all", "fleet1"]
        assert list_groups_for_device(fleet, "acme", "d1", include_all=False) == ["fleet1"]

    def test_groups_for_device_excludes_universal(self, fleet: Session):
        """beta/d9 is a universal member of acme/shared, which is not listed"""
        assert list_groups_for_device(fleet, "beta", "d9") == ["all"]

    def test_groups_for_missing_device(self, fleet: Session):
        assert list_groups_for_device(fleet, "acme", "nope") is None
        assert list_groups_for_device(fleet, None, "d1") is None


class TestCountsAndDisplay:

    def test_member_counts(self, fleet: Session):
        assert get_device_count(fleet, fleet.get(DeviceGroup, ("acme", "fleet1"))) == 2
        assert get_all_device_count(fleet, fleet.get(DeviceGroup, ("acme", "shared"))) == 1
        assert get_device_count(fleet, fleet.get(DeviceGroup, ("acme", "spare"))) == 0

    def test_count_failure_reads_as_zero(self, fleet: Session, monkeypatch):
        import group_directory

        def broken(*args, **kwargs):
            raise StorageUnavailableError("down")
        monkeypatch.setattr(group_directory.normal_members, "count_members", broken)

        assert get_device_count(fleet, fleet.get(DeviceGroup, ("acme", "fleet1"))) == 0

    def test_all_group_description(self, fleet: Session):
        assert all_group_description(fleet.get(Account, "acme")) == "All Vehicles"
        assert all_group_description(None) == "All Devices"

    def test_allow_notify_from_group(self, fleet: Session):
        group = fleet.get(DeviceGroup, ("acme", "fleet1"))
        assert group.get_allow_notify() is False
        group.allow_notify = True
        assert group.get_allow_notify() is True

    def test_allow_notify_deferred_to_account(self, fleet: Session, monkeypatch):
        account = fleet.get(Account, "acme")
        account.allow_notify = True
        group = fleet.get(DeviceGroup, ("acme", "fleet1"))

        # setting disabled: the group's own flag decides
        assert group.get_allow_notify(True, account) is False

        monkeypatch.setenv("DEVICE_GROUP_CHECK_ACCOUNT_ALLOW_NOTIFY", "true")
        assert group.get_allow_notify(True, account) is True


class TestRetentionPolicy:

    def test_no_policy_keeps_cutoff(self):
        account = Account(account_id="acme", retained_event_age=0)
        assert account.adjust_retained_event_time(NOW - 10, now=NOW) == NOW - 10

    def test_policy_protects_recent_events(self):
        account = Account(account_id="acme", retained_event_age=30 * 86400)

        assert account.adjust_retained_event_time(NOW, now=NOW) == NOW - 30 * 86400
        # older cutoffs are already outside the retention window
        assert account.adjust_retained_event_time(NOW - 60 * 86400, now=NOW) == NOW - 60 * 86400
