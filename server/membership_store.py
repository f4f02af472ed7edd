"""
Storage access for the two group membership relations.

Normal membership (device_list) relates a group to devices of the same
account. Universal membership (device_ulist) may reference devices owned
by other accounts. Both are exposed through the same MembershipStore
interface so resolution and mutation code is shared; the tables stay
physically separate and nothing here touches both at once.

Rows carry no payload: existence of the row is membership. Methods do not
commit; callers own the transaction.
"""
from enum import Enum
from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from errors import StorageUnavailableError
from models import DeviceList, DeviceUList, normalize_id

# (device_account_id, device_id)
MemberRef = Tuple[str, str]


class MembershipKind(str, Enum):
    NORMAL = "normal"
    UNIVERSAL = "universal"


class MembershipStore:
    """Shared scan/exists/insert/delete logic over one membership table."""

    kind: MembershipKind
    model = None

    def _device_account(self, account_id: str, device_account_id: Optional[str]) -> str:
        raise NotImplementedError

    def _key_filter(self, account_id: str, group_id: str, device_account_id: str, device_id: str) -> list:
        raise NotImplementedError

    def _order_by(self) -> list:
        raise NotImplementedError

    def _ref_columns(self) -> list:
        raise NotImplementedError

    def _to_ref(self, row) -> MemberRef:
        raise NotImplementedError

    def _new_row(self, account_id: str, group_id: str, device_account_id: str, device_id: str):
        raise NotImplementedError

    def _group_filter(self, account_id: str, group_id: str) -> list:
        return [
            self.model.account_id == normalize_id(account_id),
            self.model.group_id == normalize_id(group_id),
        ]

    def select_members(self, db: Session, account_id: str, group_id: str, limit: int = -1) -> List[MemberRef]:
        """Ordered scan of one group's rows, capped at `limit` rows (-1 = unbounded)"""
        try:
            query = db.query(*self._ref_columns()).filter(*self._group_filter(account_id, group_id))
            query = query.order_by(*self._order_by())
            if limit is not None and limit >= 0:
                query = query.limit(limit)
            return [self._to_ref(row) for row in query.all()]
        except SQLAlchemyError as e:
            raise StorageUnavailableError(
                f"Get group {self.kind.value} device list: {account_id}/{group_id}"
            ) from e

    def count_members(self, db: Session, account_id: str, group_id: str) -> int:
        try:
            return db.query(func.count()).select_from(self.model).filter(
                *self._group_filter(account_id, group_id)
            ).scalar() or 0
        except SQLAlchemyError as e:
            raise StorageUnavailableError(
                f"Count group {self.kind.value} device list: {account_id}/{group_id}"
            ) from e

    def exists(self, db: Session, account_id: str, group_id: str, device_id: str,
               device_account_id: Optional[str] = None) -> bool:
        device_account_id = self._device_account(account_id, device_account_id)
        try:
            row = db.query(self.model.device_id).filter(
                *self._key_filter(account_id, group_id, device_account_id, device_id)
            ).first()
        except SQLAlchemyError as e:
            raise StorageUnavailableError(
                f"Check {self.kind.value} membership: {account_id}/{group_id}/{device_id}"
            ) from e
        return row is not None

    def insert(self, db: Session, account_id: str, group_id: str, device_id: str,
               device_account_id: Optional[str] = None) -> None:
        device_account_id = self._device_account(account_id, device_account_id)
        try:
            db.add(self._new_row(account_id, group_id, device_account_id, device_id))
            db.flush()
        except SQLAlchemyError as e:
            raise StorageUnavailableError(
                f"Insert {self.kind.value} membership: {account_id}/{group_id}/{device_id}"
            ) from e

    def delete(self, db: Session, account_id: str, group_id: str, device_id: str,
               device_account_id: Optional[str] = None) -> int:
        """Delete a single membership row; never cascades. Returns rows removed."""
        device_account_id = self._device_account(account_id, device_account_id)
        try:
            return db.query(self.model).filter(
                *self._key_filter(account_id, group_id, device_account_id, device_id)
            ).delete()
        except SQLAlchemyError as e:
            raise StorageUnavailableError(
                f"Delete {self.kind.value} membership: {account_id}/{group_id}/{device_id}"
            ) from e

    def delete_group(self, db: Session, account_id: str, group_id: str) -> int:
        """Delete every row of a group (used when the group itself is deleted)"""
        try:
            return db.query(self.model).filter(
                *self._group_filter(account_id, group_id)
            ).delete()
        except SQLAlchemyError as e:
            raise StorageUnavailableError(
                f"Delete {self.kind.value} group members: {account_id}/{group_id}"
            ) from e


class NormalMembershipStore(MembershipStore):
    kind = MembershipKind.NORMAL
    model = DeviceList

    def _device_account(self, account_id, device_account_id):
        return normalize_id(account_id)

    def _key_filter(self, account_id, group_id, device_account_id, device_id):
        return self._group_filter(account_id, group_id) + [
            DeviceList.device_id == normalize_id(device_id),
        ]

    def _order_by(self):
        return [DeviceList.device_id]

    def _ref_columns(self):
        return [DeviceList.account_id, DeviceList.device_id]

    def _to_ref(self, row):
        return (row.account_id, row.device_id)

    def _new_row(self, account_id, group_id, device_account_id, device_id):
        return DeviceList(account_id=account_id, group_id=group_id, device_id=device_id)

    def groups_for_device(self, db: Session, account_id: str, device_id: str) -> List[str]:
        """Group ids with a normal membership row for the device, ordered by group id"""
        try:
            rows = db.query(DeviceList.group_id).filter(
                DeviceList.account_id == normalize_id(account_id),
                DeviceList.device_id == normalize_id(device_id),
            ).order_by(DeviceList.group_id).all()
        except SQLAlchemyError as e:
            raise StorageUnavailableError(
                f"Get device group list: {account_id}/{device_id}"
            ) from e
        return [group_id for (group_id,) in rows]


class UniversalMembershipStore(MembershipStore):
    kind = MembershipKind.UNIVERSAL
    model = DeviceUList

    def _device_account(self, account_id, device_account_id):
        return normalize_id(device_account_id or account_id)

    def _key_filter(self, account_id, group_id, device_account_id, device_id):
        return self._group_filter(account_id, group_id) + [
            DeviceUList.device_account_id == normalize_id(device_account_id),
            DeviceUList.device_id == normalize_id(device_id),
        ]

    def _order_by(self):
        return [DeviceUList.device_account_id, DeviceUList.device_id]

    def _ref_columns(self):
        return [DeviceUList.device_account_id, DeviceUList.device_id]

    def _to_ref(self, row):
        return (row.device_account_id, row.device_id)

    def _new_row(self, account_id, group_id, device_account_id, device_id):
        return DeviceUList(
            account_id=account_id,
            group_id=group_id,
            device_account_id=device_account_id,
            device_id=device_id,
        )


normal_members = NormalMembershipStore()
universal_members = UniversalMembershipStore()


def membership_store(kind: MembershipKind) -> MembershipStore:
    return universal_members if kind == MembershipKind.UNIVERSAL else normal_members
