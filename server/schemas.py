from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime

ID_MAX_LENGTH = 32


def _validate_id(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    value = value.strip().lower()
    if not value:
        raise ValueError("id must not be blank")
    return value


class GroupCreate(BaseModel):
    group_id: str = Field(..., min_length=1, max_length=ID_MAX_LENGTH)
    display_name: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=500)
    notes: Optional[str] = None
    allow_notify: Optional[bool] = None
    notify_email: Optional[str] = Field(None, max_length=500)
    work_order_id: Optional[str] = Field(None, max_length=512)

    @field_validator("group_id")
    @classmethod
    def normalize_group_id(cls, v: str) -> str:
        return _validate_id(v)


class GroupUpdate(BaseModel):
    display_name: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=500)
    notes: Optional[str] = None
    allow_notify: Optional[bool] = None
    notify_email: Optional[str] = Field(None, max_length=500)
    work_order_id: Optional[str] = Field(None, max_length=512)


class GroupSummary(BaseModel):
    account_id: str
    group_id: str
    display_name: str = ""
    description: str = ""
    notes: Optional[str] = None
    allow_notify: bool = False
    notify_email: Optional[str] = None
    work_order_id: Optional[str] = None
    device_count: int = 0
    universal_device_count: int = 0
    last_update_time: Optional[datetime] = None
    creation_time: Optional[datetime] = None
    is_virtual: bool = False


class GroupListResponse(BaseModel):
    account_id: str
    title: str
    title_plural: str
    groups: List[str]


class MemberRef(BaseModel):
    device_account_id: str
    device_id: str


class GroupMembersResponse(BaseModel):
    account_id: str
    group_id: str
    universal: bool = False
    device_ids: List[str] = []
    members: List[MemberRef] = []
    count: int = 0


class UniversalMember(BaseModel):
    device_account_id: Optional[str] = Field(None, max_length=ID_MAX_LENGTH)
    device_id: str = Field(..., min_length=1, max_length=ID_MAX_LENGTH)


class SetMembersRequest(BaseModel):
    """
    Replace a group's membership.

    members=None (or an empty list) clears the group.
    """
    members: Optional[List[str]] = None
    universal_members: Optional[List[UniversalMember]] = None
    universal: bool = False
    atomic: bool = False


class SetMembersResponse(BaseModel):
    ok: bool
    added: int
    cleared: bool = False


class MembershipChangeResponse(BaseModel):
    ok: bool
    changed: bool


class DeviceGroupsResponse(BaseModel):
    account_id: str
    device_id: str
    groups: List[str]


class SweepRequest(BaseModel):
    cutoff: int = Field(..., description="Epoch seconds; events strictly older are swept")
    confirm: bool = False
    verbose: bool = False


class DeviceSweepSummary(BaseModel):
    device_id: str
    count: Optional[int] = None
    unknown: bool = False
    elapsed_ms: int = 0
    message: str = ""
    skipped: bool = False
    error: Optional[str] = None


class SweepResponse(BaseModel):
    mode: str
    account_id: str
    group_id: str
    cutoff: int
    total: int
    unknown: bool
    aborted: bool = False
    error: Optional[str] = None
    used_retained_date: bool = False
    devices: List[DeviceSweepSummary] = []
    output: List[str] = []
