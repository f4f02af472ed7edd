"""
Device group membership: resolution and mutation.

Resolution turns (account, group) into an ordered, duplicate-free member
list. The reserved "all" group is answered from the account's devices and
never touches the membership tables.

Resolution materialises the whole filtered member set in memory; it is not
meant for groups beyond a few thousand devices.
"""
import logging
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from device_lookup import get_account, device_exists, is_active_device, get_device_ids_for_account
from errors import DeviceNotFoundError, GroupNotFoundError, StorageUnavailableError
from group_directory import get_group_record, require_group
from membership_store import MemberRef, MembershipKind, membership_store, normal_members, universal_members
from models import normalize_id, is_blank, is_all_group
from observability import structured_logger, metrics

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Resolution

def _resolve(
    db: Session,
    kind: MembershipKind,
    account_id: Optional[str],
    group_id: Optional[str],
    auth,
    include_inactive: bool,
    limit: int
) -> List[MemberRef]:
    if is_blank(account_id) or is_blank(group_id):
        return []
    account_id = normalize_id(account_id)
    group_id = normalize_id(group_id)

    if is_all_group(group_id):
        device_ids = get_device_ids_for_account(db, account_id, auth, include_inactive, limit)
        return [(account_id, device_id) for device_id in device_ids]

    rows = membership_store(kind).select_members(db, account_id, group_id, limit)

    if not include_inactive and get_account(db, account_id) is None:
        logger.warning(f"Account not found? {account_id}")
        return []

    members = []
    seen = set()
    for device_account_id, device_id in rows:
        if (device_account_id, device_id) in seen:
            continue
        if not include_inactive and not is_active_device(db, device_account_id, device_id):
            continue
        if auth is not None and not auth.is_authorized_device(device_id, device_account_id):
            continue
        seen.add((device_account_id, device_id))
        members.append((device_account_id, device_id))
    return members


def get_device_ids_for_group(
    db: Session,
    account_id: Optional[str],
    group_id: Optional[str],
    auth=None,
    include_inactive: bool = True,
    limit: int = -1
) -> List[str]:
    """
    Return device ids of a normal group, ordered by device id.

    Args:
        db: Database session
        account_id: Account owning the group
        group_id: Group id, or "all" for every device of the account
        auth: Optional authorization context (is_authorized_device)
        include_inactive: Keep inactive devices
        limit: Row cap on the membership scan (-1 = unbounded)
    """
    refs = _resolve(db, MembershipKind.NORMAL, account_id, group_id, auth, include_inactive, limit)
    return [device_id for _, device_id in refs]


def get_all_devices_for_group(
    db: Session,
    account_id: Optional[str],
    group_id: Optional[str],
    auth=None,
    include_inactive: bool = True,
    limit: int = -1
) -> List[MemberRef]:
    """
    Return (device_account_id, device_id) pairs of a universal group,
    ordered by device account then device id.
    """
    return _resolve(db, MembershipKind.UNIVERSAL, account_id, group_id, auth, include_inactive, limit)


def get_members_as_pairs(
    db: Session,
    account_id: Optional[str],
    group_id: Optional[str],
    auth=None,
    include_inactive: bool = True
) -> List[MemberRef]:
    """Normal membership expressed as (account_id, device_id) pairs"""
    return _resolve(db, MembershipKind.NORMAL, account_id, group_id, auth, include_inactive, -1)


def is_device_in_group(db: Session, account_id: Optional[str], group_id: Optional[str],
                       device_id: Optional[str]) -> bool:
    if account_id is None or group_id is None or device_id is None:
        return False
    if is_all_group(group_id):
        return True
    try:
        return normal_members.exists(db, account_id, group_id, device_id)
    except StorageUnavailableError:
        logger.exception(f"Membership check failed: {account_id}/{group_id}/{device_id}")
        return False


def is_device_in_universal_group(db: Session, account_id: Optional[str], group_id: Optional[str],
                                 device_account_id: Optional[str], device_id: Optional[str]) -> bool:
    if None in (account_id, group_id, device_account_id, device_id):
        return False
    if is_all_group(group_id):
        return True
    try:
        return universal_members.exists(db, account_id, group_id, device_id, device_account_id)
    except StorageUnavailableError:
        logger.exception(f"Membership check failed: {account_id}/{group_id}/{device_account_id}/{device_id}")
        return False


# ---------------------------------------------------------------------------
# Mutation

def _require_device(db: Session, account_id: str, device_id: str) -> None:
    if not device_exists(db, account_id, device_id):
        raise DeviceNotFoundError(normalize_id(account_id), normalize_id(device_id))


def _require_group(db: Session, account_id: str, group_id: str) -> None:
    # The virtual "all" group is never a mutation target
    require_group(db, account_id, group_id)


def _finish(db: Session, commit: bool) -> None:
    if commit:
        db.commit()


def _add_member(db: Session, kind: MembershipKind, account_id: str, group_id: str,
                device_account_id: str, device_id: str, commit: bool) -> bool:
    store = membership_store(kind)
    try:
        _require_device(db, device_account_id, device_id)
        _require_group(db, account_id, group_id)

        if store.exists(db, account_id, group_id, device_id, device_account_id):
            structured_logger.log_event(
                "group.member.add_noop",
                level="DEBUG",
                kind=kind.value,
                account_id=normalize_id(account_id),
                group_id=normalize_id(group_id),
                device_account_id=normalize_id(device_account_id),
                device_id=normalize_id(device_id)
            )
            return False

        store.insert(db, account_id, group_id, device_id, device_account_id)
        _touch_group(db, account_id, group_id)
        _finish(db, commit)
    except Exception:
        if commit:
            db.rollback()
        raise

    structured_logger.log_event(
        "group.member.added",
        kind=kind.value,
        account_id=normalize_id(account_id),
        group_id=normalize_id(group_id),
        device_account_id=normalize_id(device_account_id),
        device_id=normalize_id(device_id)
    )
    metrics.inc_counter("group_members_added_total", {"kind": kind.value})
    return True


def _remove_member(db: Session, kind: MembershipKind, account_id: str, group_id: str,
                   device_account_id: str, device_id: str, commit: bool) -> bool:
    store = membership_store(kind)
    try:
        # Group existence is not checked, so stale memberships can be cleaned up
        _require_device(db, device_account_id, device_id)
        removed = store.delete(db, account_id, group_id, device_id, device_account_id)
        if removed:
            _touch_group(db, account_id, group_id)
        _finish(db, commit)
    except Exception:
        if commit:
            db.rollback()
        raise

    if removed:
        structured_logger.log_event(
            "group.member.removed",
            kind=kind.value,
            account_id=normalize_id(account_id),
            group_id=normalize_id(group_id),
            device_account_id=normalize_id(device_account_id),
            device_id=normalize_id(device_id)
        )
        metrics.inc_counter("group_members_removed_total", {"kind": kind.value})
    return removed > 0


def _touch_group(db: Session, account_id: str, group_id: str) -> None:
    group = get_group_record(db, account_id, group_id)
    if group is not None:
        group.last_update_time = datetime.now(timezone.utc)


def add_device_to_group(db: Session, account_id: str, group_id: str, device_id: str,
                        commit: bool = True) -> bool:
    """
    Add a device to a normal group.

    Raises DeviceNotFoundError / GroupNotFoundError when either endpoint is
    missing. Re-adding an existing member is a no-op and returns False.
    """
    return _add_member(db, MembershipKind.NORMAL, account_id, group_id, account_id, device_id, commit)


def add_device_to_universal_group(db: Session, account_id: str, group_id: str,
                                  device_account_id: Optional[str], device_id: str,
                                  commit: bool = True) -> bool:
    """Add a device owned by `device_account_id` to a universal group of `account_id`"""
    device_account_id = device_account_id or account_id
    return _add_member(db, MembershipKind.UNIVERSAL, account_id, group_id, device_account_id, device_id, commit)


def remove_device_from_group(db: Session, account_id: str, group_id: str, device_id: str,
                             commit: bool = True) -> bool:
    """
    Remove a device from a normal group.

    Removing a non-member is not an error; a non-existent device is.
    Returns True if a membership row was deleted.
    """
    return _remove_member(db, MembershipKind.NORMAL, account_id, group_id, account_id, device_id, commit)


def remove_device_from_universal_group(db: Session, account_id: str, group_id: str,
                                       device_account_id: Optional[str], device_id: str,
                                       commit: bool = True) -> bool:
    device_account_id = device_account_id or account_id
    return _remove_member(db, MembershipKind.UNIVERSAL, account_id, group_id, device_account_id, device_id, commit)


def _clear(db: Session, kind: MembershipKind, account_id: str, group_id: str, commit: bool) -> int:
    store = membership_store(kind)
    current = _resolve(db, kind, account_id, group_id, None, True, -1)
    removed = 0
    try:
        for device_account_id, device_id in current:
            # Rows come from the table itself, so stale rows of deleted devices are cleared too
            removed += store.delete(db, account_id, group_id, device_id, device_account_id)
        _finish(db, commit)
    except Exception:
        if commit:
            db.rollback()
        raise
    structured_logger.log_event(
        "group.members.cleared",
        kind=kind.value,
        account_id=normalize_id(account_id),
        group_id=normalize_id(group_id),
        removed=removed
    )
    return removed


def clear_members(db: Session, account_id: str, group_id: str, commit: bool = True) -> int:
    """Remove every member of a normal group. Returns rows removed."""
    if is_all_group(group_id):
        raise GroupNotFoundError(normalize_id(account_id), normalize_id(group_id))
    return _clear(db, MembershipKind.NORMAL, account_id, group_id, commit)


def clear_all_members(db: Session, account_id: str, group_id: str, commit: bool = True) -> int:
    """Remove every member of a universal group. Returns rows removed."""
    if is_all_group(group_id):
        raise GroupNotFoundError(normalize_id(account_id), normalize_id(group_id))
    return _clear(db, MembershipKind.UNIVERSAL, account_id, group_id, commit)


def _replace(db: Session, kind: MembershipKind, account_id: str, group_id: str,
             members: List[Tuple[str, str]], atomic: bool) -> int:
    commit = not atomic
    try:
        _clear(db, kind, account_id, group_id, commit)
        added = 0
        for device_account_id, device_id in members:
            if _add_member(db, kind, account_id, group_id, device_account_id, device_id, commit):
                added += 1
        if atomic:
            db.commit()
    except Exception as e:
        if atomic:
            db.rollback()
        structured_logger.log_event(
            "group.members.replace_failed",
            level="ERROR",
            kind=kind.value,
            account_id=normalize_id(account_id),
            group_id=normalize_id(group_id),
            atomic=atomic,
            error=str(e),
            error_type=type(e).__name__
        )
        raise

    structured_logger.log_event(
        "group.members.replaced",
        kind=kind.value,
        account_id=normalize_id(account_id),
        group_id=normalize_id(group_id),
        count=added,
        atomic=atomic
    )
    return added


def set_group_members(db: Session, account_id: str, group_id: str,
                      device_ids: Optional[Iterable[str]], atomic: bool = False) -> int:
    """
    Replace the members of a normal group.

    ATTENTION: an empty or None `device_ids` removes ALL members.

    By default this is best-effort: each removal and insert commits on its
    own, so a failure midway leaves the group partially updated. With
    atomic=True the whole replacement is one transaction.

    Returns the number of members added.
    """
    if is_all_group(group_id):
        raise GroupNotFoundError(normalize_id(account_id), normalize_id(group_id))
    members = [(account_id, device_id) for device_id in (device_ids or [])]
    return _replace(db, MembershipKind.NORMAL, account_id, group_id, members, atomic)


def set_all_group_members(db: Session, account_id: str, group_id: str,
                          members: Optional[Iterable[MemberRef]], atomic: bool = False) -> int:
    """
    Replace the members of a universal group with (device_account_id, device_id) pairs.

    ATTENTION: an empty or None `members` removes ALL members.
    """
    if is_all_group(group_id):
        raise GroupNotFoundError(normalize_id(account_id), normalize_id(group_id))
    pairs = [(device_account_id or account_id, device_id) for device_account_id, device_id in (members or [])]
    return _replace(db, MembershipKind.UNIVERSAL, account_id, group_id, pairs, atomic)
