"""
Account and device lookups used by group resolution, mutation and sweeps.

Storage failures are raised as StorageUnavailableError; a missing record
is reported as None/False, never as an error.
"""
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from typing import List, Optional

from errors import StorageUnavailableError
from models import Account, Device, normalize_id, is_blank


def get_account(db: Session, account_id: Optional[str]) -> Optional[Account]:
    if is_blank(account_id):
        return None
    try:
        return db.get(Account, normalize_id(account_id))
    except SQLAlchemyError as e:
        raise StorageUnavailableError(f"Unable to read account: {account_id}") from e


def get_device(db: Session, account_id: Optional[str], device_id: Optional[str]) -> Optional[Device]:
    if is_blank(account_id) or is_blank(device_id):
        return None
    try:
        return db.get(Device, (normalize_id(account_id), normalize_id(device_id)))
    except SQLAlchemyError as e:
        raise StorageUnavailableError(f"Unable to read device: {account_id}/{device_id}") from e


def device_exists(db: Session, account_id: Optional[str], device_id: Optional[str]) -> bool:
    return get_device(db, account_id, device_id) is not None


def is_active_device(db: Session, account_id: str, device_id: str) -> bool:
    """False for a missing or inactive device"""
    device = get_device(db, account_id, device_id)
    return device is not None and bool(device.is_active)


def get_device_ids_for_account(
    db: Session,
    account_id: str,
    auth=None,
    include_inactive: bool = True,
    limit: int = -1
) -> List[str]:
    """
    Return ids of every device owned by the account, ordered by device id.

    Backs the virtual "all" group. Inactive devices are dropped unless
    include_inactive; devices the auth context does not grant are dropped.
    """
    if is_blank(account_id):
        return []
    account_id = normalize_id(account_id)

    try:
        query = db.query(Device.device_id).filter(Device.account_id == account_id)
        if not include_inactive:
            query = query.filter(Device.is_active.is_(True))
        query = query.order_by(Device.device_id)
        if limit is not None and limit >= 0:
            query = query.limit(limit)
        rows = query.all()
    except SQLAlchemyError as e:
        raise StorageUnavailableError(f"Unable to list devices for account: {account_id}") from e

    device_ids = []
    for (device_id,) in rows:
        if auth is not None and not auth.is_authorized_device(device_id, account_id):
            continue
        device_ids.append(device_id)
    return device_ids
