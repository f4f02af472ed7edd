"""
Device group records and directory listings.

Covers group existence, get-or-create, create/update/delete, the list of
groups owned by an account, and the reverse lookup of the groups a device
belongs to.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from device_lookup import device_exists
from errors import DeviceGroupError, GroupNotFoundError, StorageUnavailableError
from membership_store import normal_members, universal_members
from models import Account, DeviceGroup, DEVICE_GROUP_ALL, DEVICE_GROUP_NONE, normalize_id, is_blank, is_all_group
from observability import structured_logger, metrics

logger = logging.getLogger(__name__)

RESERVED_GROUP_IDS = (DEVICE_GROUP_ALL, DEVICE_GROUP_NONE)

EDITABLE_FIELDS = ("display_name", "description", "notes", "allow_notify", "notify_email", "work_order_id")


def get_group_titles() -> tuple[str, str]:
    """Singular and plural title for device groups"""
    return ("Group", "Groups")


def all_group_description(account: Optional[Account]) -> str:
    """Description of the virtual "all" group, e.g. "All Vehicles" """
    plural = account.device_title_plural if account is not None and account.device_title_plural else "Devices"
    return f"All {plural}"


def get_group_record(db: Session, account_id: str, group_id: str) -> Optional[DeviceGroup]:
    """Stored group record; None for blank ids, the virtual "all" group, or a missing row"""
    if is_blank(account_id) or is_blank(group_id) or is_all_group(group_id):
        return None
    try:
        return db.get(DeviceGroup, (normalize_id(account_id), normalize_id(group_id)))
    except SQLAlchemyError as e:
        raise StorageUnavailableError(f"Unable to read DeviceGroup: {account_id}/{group_id}") from e


def group_exists(db: Session, account_id: Optional[str], group_id: Optional[str]) -> bool:
    """True if the group exists in the account; "all" always exists"""
    if is_blank(account_id) or is_blank(group_id):
        return False
    if is_all_group(group_id):
        return True
    return get_group_record(db, account_id, group_id) is not None


def get_device_group(db: Session, account: Optional[Account], group_id: Optional[str],
                     create_ok: bool = False) -> Optional[DeviceGroup]:
    """
    Return the specified group, or a new unsaved group when create_ok.

    Returns None when the group does not exist and create_ok is False.
    """
    if account is None:
        raise DeviceGroupError("Account not specified.")
    if is_blank(group_id):
        raise DeviceGroupError("Device Group-ID not specified.")

    group = get_group_record(db, account.account_id, group_id)
    if group is not None:
        return group
    if not create_ok:
        return None

    group = DeviceGroup(account_id=account.account_id, group_id=group_id)
    group.set_creation_default_values()
    return group


def create_device_group(db: Session, account: Optional[Account], group_id: Optional[str], **fields) -> DeviceGroup:
    """
    Create and save a new device group.

    Raises DeviceGroupError for a missing account, blank or reserved group id,
    or a group that already exists.
    """
    if account is None or is_blank(group_id):
        raise DeviceGroupError("Invalid Account/GroupID specified")
    if normalize_id(group_id) in RESERVED_GROUP_IDS:
        raise DeviceGroupError(f"Reserved DeviceGroup ID: {normalize_id(group_id)}")
    if group_exists(db, account.account_id, group_id):
        raise DeviceGroupError(f"DeviceGroup already exists: {account.account_id}/{normalize_id(group_id)}")

    group = get_device_group(db, account, group_id, create_ok=True)
    _apply_fields(group, fields)
    try:
        db.add(group)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageUnavailableError(f"Unable to create DeviceGroup: {account.account_id}/{group_id}") from e

    structured_logger.log_event(
        "group.created",
        account_id=group.account_id,
        group_id=group.group_id
    )
    metrics.inc_counter("groups_created_total")
    return group


def _apply_fields(group: DeviceGroup, fields: dict) -> None:
    unknown = set(fields) - set(EDITABLE_FIELDS)
    if unknown:
        raise DeviceGroupError(f"Unknown DeviceGroup fields: {', '.join(sorted(unknown))}")
    for name, value in fields.items():
        setattr(group, name, value)


def update_device_group(db: Session, group: DeviceGroup, **fields) -> DeviceGroup:
    """Edit display metadata and the optional notify/work-order fields"""
    _apply_fields(group, fields)
    group.last_update_time = datetime.now(timezone.utc)
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageUnavailableError(f"Unable to update DeviceGroup: {group.account_id}/{group.group_id}") from e

    structured_logger.log_event(
        "group.updated",
        account_id=group.account_id,
        group_id=group.group_id,
        fields=sorted(fields)
    )
    return group


def delete_device_group(db: Session, account_id: str, group_id: str) -> bool:
    """
    Delete a group along with its normal and universal membership rows.

    Returns False if the group row did not exist (membership rows are
    removed regardless).
    """
    if is_blank(account_id) or is_blank(group_id):
        raise DeviceGroupError("Invalid Account/GroupID specified")
    if is_all_group(group_id):
        raise DeviceGroupError("The 'all' DeviceGroup cannot be deleted")

    account_id = normalize_id(account_id)
    group_id = normalize_id(group_id)
    try:
        normal_removed = normal_members.delete_group(db, account_id, group_id)
        universal_removed = universal_members.delete_group(db, account_id, group_id)
        deleted = db.query(DeviceGroup).filter(
            DeviceGroup.account_id == account_id,
            DeviceGroup.group_id == group_id
        ).delete()
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageUnavailableError(f"Unable to delete DeviceGroup: {account_id}/{group_id}") from e
    except StorageUnavailableError:
        db.rollback()
        raise

    structured_logger.log_event(
        "group.deleted",
        account_id=account_id,
        group_id=group_id,
        existed=bool(deleted),
        normal_members_removed=normal_removed,
        universal_members_removed=universal_removed
    )
    if deleted:
        metrics.inc_counter("groups_deleted_total")
    return bool(deleted)


def list_groups_for_account(db: Session, account_id: Optional[str], include_all: bool = True) -> List[str]:
    """
    Return the group ids owned by the account, ordered by group id.

    "all" is prepended when include_all. Not intended for accounts with a
    very large number of groups.
    """
    groups = [DEVICE_GROUP_ALL] if include_all else []
    if is_blank(account_id):
        return groups

    try:
        rows = db.query(DeviceGroup.group_id).filter(
            DeviceGroup.account_id == normalize_id(account_id)
        ).order_by(DeviceGroup.group_id).all()
    except SQLAlchemyError as e:
        raise StorageUnavailableError(f"Getting Account DeviceGroup List: {account_id}") from e

    for (group_id,) in rows:
        if group_id not in groups:
            groups.append(group_id)
    return groups


def list_groups_for_device(db: Session, account_id: Optional[str], device_id: Optional[str],
                           include_all: bool = True) -> Optional[List[str]]:
    """
    Return the groups of the account in which the device is a normal member.

    Returns None when the device does not exist. Universal memberships are
    not included.
    """
    if account_id is None or device_id is None:
        return None
    if not device_exists(db, account_id, device_id):
        return None

    groups = [DEVICE_GROUP_ALL] if include_all else []
    groups.extend(normal_members.groups_for_device(db, account_id, device_id))
    return groups


def get_device_count(db: Session, group: DeviceGroup) -> int:
    """Number of normal members; 0 if the count cannot be read"""
    try:
        return normal_members.count_members(db, group.account_id, group.group_id)
    except StorageUnavailableError:
        logger.exception(f"Unable to retrieve DeviceList count: {group.account_id}/{group.group_id}")
        return 0


def get_all_device_count(db: Session, group: DeviceGroup) -> int:
    """Number of universal members; 0 if the count cannot be read"""
    try:
        return universal_members.count_members(db, group.account_id, group.group_id)
    except StorageUnavailableError:
        logger.exception(f"Unable to retrieve DeviceUList count: {group.account_id}/{group.group_id}")
        return 0


def require_group(db: Session, account_id: str, group_id: str) -> DeviceGroup:
    """Stored group or GroupNotFoundError (the virtual "all" group never qualifies)"""
    group = get_group_record(db, account_id, group_id)
    if group is None:
        raise GroupNotFoundError(normalize_id(account_id), normalize_id(group_id))
    return group
