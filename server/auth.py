from typing import Iterable, Optional

from fastapi import HTTPException, Header
from sqlalchemy.orm import Session

from config import config
from group_membership import get_device_ids_for_group
from models import normalize_id, is_blank
from observability import structured_logger


def verify_admin_key(admin_key: str) -> bool:
    expected_key = config.get_admin_key() or "admin"
    return admin_key == expected_key


async def require_admin(x_admin: str = Header(None)):
    """
    Verify admin key from X-Admin header
    """
    if not verify_admin_key(x_admin or ""):
        structured_logger.log_event("auth.admin.rejected", level="WARN")
        raise HTTPException(status_code=401, detail="Admin key required")
    return {"admin_key_verified": True}


class DeviceAuthorization:
    """
    Device access granted to a caller within one account.

    device_ids=None grants every device of the account. Devices owned by
    other accounts are never granted.
    """

    def __init__(self, account_id: str, device_ids: Optional[Iterable[str]] = None):
        self.account_id = normalize_id(account_id)
        self.device_ids = None if device_ids is None else {normalize_id(d) for d in device_ids}

    @classmethod
    def for_group(cls, db: Session, account_id: str, group_id: str) -> "DeviceAuthorization":
        """Grant exactly the devices resolved for a group (users are authorized per group)"""
        return cls(account_id, get_device_ids_for_group(db, account_id, group_id, include_inactive=True))

    def is_authorized_device(self, device_id: Optional[str], account_id: Optional[str] = None) -> bool:
        if is_blank(device_id):
            return False
        if account_id is not None and normalize_id(account_id) != self.account_id:
            return False
        if self.device_ids is None:
            return True
        return normalize_id(device_id) in self.device_ids

    def __repr__(self):
        scope = "all" if self.device_ids is None else len(self.device_ids)
        return f"DeviceAuthorization({self.account_id}, devices={scope})"
